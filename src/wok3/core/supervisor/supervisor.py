"""
Dev-server process supervision.

The supervisor owns at most one process tree per worktree. It captures the
tree's output into a bounded ring buffer, probes readiness over HTTP and
tells its owner when a process exits, flagging whether the exit was
requested through stop().
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional

import httpx

from wok3.core.errors import ProcessSpawnError

from .models import StopOutcome, SupervisedProcess
from .process import IS_UNIX, process_group_members, terminate_process_tree

logger = logging.getLogger(__name__)

# Upper bound on collecting output after a process exits
READER_DRAIN_SECONDS = 1.0

ExitCallback = Callable[[str, Optional[int], bool], Optional[Awaitable[None]]]


class ProcessSupervisor:
    """
    Spawns, watches and stops one dev-server process per worktree.

    Example:
        >>> supervisor = ProcessSupervisor(on_exit=handle_exit, log_buffer_lines=200)
        >>> pid = await supervisor.spawn("auth-fix", "pnpm dev", Path("/repo/.wok3/worktrees/auth-fix"))
        >>> await supervisor.wait_until_live("auth-fix", "http://127.0.0.1:3010/")
        >>> await supervisor.stop("auth-fix", grace_seconds=5)
        <StopOutcome.GRACEFUL: 'graceful'>
    """

    def __init__(
        self,
        on_exit: ExitCallback | None = None,
        log_buffer_lines: int = 100,
        exit_grace_seconds: float = 2.0,
    ):
        self._on_exit = on_exit
        self._log_buffer_lines = log_buffer_lines
        self._exit_grace_seconds = exit_grace_seconds
        self._processes: dict[str, SupervisedProcess] = {}

    def set_exit_handler(self, on_exit: ExitCallback | None) -> None:
        self._on_exit = on_exit

    def set_log_buffer_lines(self, lines: int) -> None:
        """Applies to processes spawned after the call."""
        self._log_buffer_lines = lines

    async def spawn(
        self,
        worktree_id: str,
        command: str,
        cwd: Path,
        env: dict[str, str] | None = None,
    ) -> int:
        """
        Spawn ``command`` through the shell in its own process group.

        Args:
            worktree_id: Key the process is tracked under
            command: Shell command line
            cwd: Working directory
            env: Variables overlaid on the inherited environment

        Returns:
            The pid of the process group leader

        Raises:
            ProcessSpawnError: If a process is already running for the id,
                the directory is missing or the shell cannot be started
        """
        existing = self._processes.get(worktree_id)
        if existing is not None and existing.is_running:
            raise ProcessSpawnError(
                f'A process is already running for "{worktree_id}" (PID {existing.pid})'
            )
        if existing is not None and existing.watcher is not None:
            # Let the previous run finish cleaning up its process group
            await existing.watcher
        if not cwd.is_dir():
            raise ProcessSpawnError(f"Working directory does not exist: {cwd}")

        process_env = os.environ.copy()
        process_env.update(env or {})
        process_env["FORCE_COLOR"] = "1"

        kwargs: dict[str, Any] = {"start_new_session": True} if IS_UNIX else {}
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env=process_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to spawn '{command}': {e}") from e

        entry = SupervisedProcess(
            worktree_id=worktree_id,
            command=command,
            process=process,
            output=deque(maxlen=self._log_buffer_lines),
        )
        assert process.stdout is not None and process.stderr is not None
        entry.readers = [
            asyncio.create_task(self._pump(entry, process.stdout)),
            asyncio.create_task(self._pump(entry, process.stderr)),
        ]
        entry.watcher = asyncio.create_task(self._watch(entry))
        self._processes[worktree_id] = entry

        logger.info("Spawned '%s' for %s (PID %d) in %s", command, worktree_id, process.pid, cwd)
        return process.pid

    async def _pump(self, entry: SupervisedProcess, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the chunk is discarded
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            entry.output.append(line)
            logger.debug("[%s] %s", entry.worktree_id, line)

    async def _watch(self, entry: SupervisedProcess) -> None:
        returncode = await entry.process.wait()
        if not entry.stop_requested and IS_UNIX:
            # Children left behind by the leader would keep holding the ports
            await terminate_process_tree(entry.process, self._exit_grace_seconds)

        _, pending = await asyncio.wait(entry.readers, timeout=READER_DRAIN_SECONDS)
        for reader in pending:
            # A process outside the group still has the pipe open
            reader.cancel()

        if entry.stop_requested:
            logger.info("Process for %s stopped (exit code %s)", entry.worktree_id, returncode)
        else:
            logger.warning(
                "Process for %s exited unexpectedly (exit code %s)", entry.worktree_id, returncode
            )

        if self._on_exit is None:
            return
        try:
            result = self._on_exit(entry.worktree_id, returncode, entry.stop_requested)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Exit handler failed for %s", entry.worktree_id)

    async def stop(self, worktree_id: str, grace_seconds: float = 5.0) -> StopOutcome:
        """
        Stop the worktree's process tree and forget it.

        SIGTERM goes to the whole process group; SIGKILL follows if any
        member is still alive after ``grace_seconds``. The group is signalled
        even when its leader has already exited. The exit callback has run
        by the time this returns.
        """
        entry = self._processes.get(worktree_id)
        if entry is None:
            return StopOutcome.NOT_RUNNING
        if not entry.is_running and not process_group_members(entry.pid):
            if entry.watcher is not None:
                await entry.watcher
            self.forget(worktree_id)
            return StopOutcome.NOT_RUNNING

        entry.stop_requested = True
        forced = await terminate_process_tree(entry.process, grace_seconds)
        if entry.watcher is not None:
            await entry.watcher

        if self._processes.get(worktree_id) is entry:
            del self._processes[worktree_id]
        return StopOutcome.FORCED if forced else StopOutcome.GRACEFUL

    async def wait_until_live(
        self,
        worktree_id: str,
        url: str,
        interval_seconds: float = 0.5,
        timeout_seconds: float = 30.0,
    ) -> bool:
        """
        Poll ``url`` until it answers with a status below 500.

        Returns:
            True once the endpoint answered; False on timeout or if the
            process exited while waiting
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        async with httpx.AsyncClient(timeout=min(interval_seconds * 4, 5.0)) as client:
            while True:
                if not self.is_running(worktree_id):
                    return False
                try:
                    response = await client.get(url)
                    if response.status_code < 500:
                        logger.debug("%s answered %d at %s", worktree_id, response.status_code, url)
                        return True
                except httpx.HTTPError:
                    pass

                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.info("Liveness probe for %s timed out after %.1fs", worktree_id, timeout_seconds)
                    return False
                await asyncio.sleep(min(interval_seconds, remaining))

    async def wait_for_exit(self, worktree_id: str) -> None:
        """Wait until an exited process has been cleaned up and reported."""
        entry = self._processes.get(worktree_id)
        if entry is not None and entry.watcher is not None and not entry.is_running:
            await asyncio.shield(entry.watcher)

    def is_running(self, worktree_id: str) -> bool:
        entry = self._processes.get(worktree_id)
        return entry is not None and entry.is_running

    def pid(self, worktree_id: str) -> int | None:
        entry = self._processes.get(worktree_id)
        if entry is None or not entry.is_running:
            return None
        return entry.pid

    def logs(self, worktree_id: str) -> list[str]:
        """Recent output lines, oldest first. Empty when nothing is tracked."""
        entry = self._processes.get(worktree_id)
        return list(entry.output) if entry is not None else []

    def forget(self, worktree_id: str) -> None:
        """Drop a finished process and its output buffer."""
        entry = self._processes.get(worktree_id)
        if entry is not None and not entry.is_running:
            del self._processes[worktree_id]

    async def stop_all(self, grace_seconds: float = 5.0) -> None:
        """Stop every tracked process concurrently."""
        ids = list(self._processes)
        if ids:
            await asyncio.gather(*(self.stop(wid, grace_seconds) for wid in ids))
