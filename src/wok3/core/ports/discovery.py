"""
Port discovery.

Runs the project's start command once in the primary checkout, lets it
settle, then asks the OS which TCP ports the resulting process tree is
listening on. The result seeds ``ports.discovered`` in the project config.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, Field

from wok3.core.supervisor.process import IS_UNIX, run_process, signal_process_group

logger = logging.getLogger(__name__)

DISCOVERY_STABILIZE_SECONDS = 15.0

# Matches lsof lines like: node 12345 user 23u IPv4 ... TCP *:3000 (LISTEN)
_LISTEN_RE = re.compile(r":(\d+)\s+\(LISTEN\)")


class DiscoveryResult(BaseModel):
    """Outcome of a discovery run."""

    ports: list[int] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and len(self.ports) > 0


def parse_lsof_listening(output: str, exclude: set[int] | None = None) -> list[int]:
    """Extract sorted unique listening ports from ``lsof -iTCP -sTCP:LISTEN`` output."""
    exclude = exclude or set()
    ports: set[int] = set()
    for line in output.splitlines():
        match = _LISTEN_RE.search(line)
        if match:
            port = int(match.group(1))
            if port not in exclude:
                ports.add(port)
    return sorted(ports)


async def get_process_tree(root_pid: int) -> list[int]:
    """Return ``root_pid`` and all of its descendants (via ``pgrep -P``)."""
    pids = [root_pid]
    seen = {root_pid}
    queue = [root_pid]

    while queue:
        parent = queue.pop(0)
        result = await run_process(["pgrep", "-P", str(parent)], timeout=5.0)
        # pgrep exits non-zero when there are no children
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line.isdigit():
                continue
            child = int(line)
            if child not in seen:
                seen.add(child)
                pids.append(child)
                queue.append(child)

    return pids


async def get_listening_ports(pids: list[int], exclude: set[int] | None = None) -> list[int]:
    """List TCP ports any of ``pids`` is listening on."""
    if not pids:
        return []
    result = await run_process(
        ["lsof", "-P", "-n", "-iTCP", "-sTCP:LISTEN", "-a", "-p", ",".join(str(p) for p in pids)],
        timeout=10.0,
    )
    return parse_lsof_listening(result.stdout, exclude)


async def discover_ports(
    start_command: str,
    working_dir: Path,
    *,
    exclude: set[int] | None = None,
    stabilize_seconds: float = DISCOVERY_STABILIZE_SECONDS,
    on_log: Callable[[str], None] | None = None,
) -> DiscoveryResult:
    """
    Run ``start_command`` and report the TCP ports its process tree listens on.

    Args:
        start_command: The dev-server command
        working_dir: Directory to run it in
        exclude: Ports to ignore (the manager's own port)
        stabilize_seconds: How long to let the dev stack settle
        on_log: Optional callback receiving progress lines

    Returns:
        DiscoveryResult with the sorted ports and the collected log lines
    """
    result = DiscoveryResult()

    def log(message: str) -> None:
        result.logs.append(message)
        logger.info(message)
        if on_log is not None:
            on_log(message)

    if not working_dir.is_dir():
        result.error = f'Project directory "{working_dir}" not found'
        return result

    log(f"[port-discovery] Running: {start_command}")
    kwargs = {"start_new_session": True} if IS_UNIX else {}
    try:
        process = await asyncio.create_subprocess_shell(
            start_command,
            cwd=str(working_dir),
            env={**os.environ, "FORCE_COLOR": "0"},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            **kwargs,
        )
    except OSError as e:
        result.error = f"Failed to spawn discovery process: {e}"
        return result

    async def pump() -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                log(f"[port-discovery:output] {line}")

    reader = asyncio.create_task(pump())
    log(f"[port-discovery] Spawned process (PID: {process.pid}), waiting for stabilization...")

    try:
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=stabilize_seconds)
            log(f"[port-discovery] Process exited early with code {process.returncode}")
        except asyncio.TimeoutError:
            pass

        log("[port-discovery] Scanning for listening ports...")
        pids = await get_process_tree(process.pid)
        log(f"[port-discovery] Process tree PIDs: {', '.join(str(p) for p in pids)}")
        result.ports = await get_listening_ports(pids, exclude)
        log(f"[port-discovery] Discovered ports: {', '.join(map(str, result.ports)) or '(none)'}")
    finally:
        log("[port-discovery] Cleaning up discovery process...")
        signal_process_group(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            signal_process_group(process.pid, signal.SIGKILL if IS_UNIX else signal.SIGTERM)
            await process.wait()
        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass

    return result

