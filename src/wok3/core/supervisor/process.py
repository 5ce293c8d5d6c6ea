"""
Process management utilities for safe subprocess spawning and cleanup.

This module provides utilities for:
- One-shot command execution with timeout support (install commands, probes)
- Process group management for clean termination of whole process trees
- Graceful shutdown with escalating termination
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any

import psutil
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_UNIX = not IS_WINDOWS


class ProcessResult(BaseModel):
    """Structured result from process execution."""

    success: bool
    """Whether the process completed successfully (exit code 0)."""

    exit_code: int | None
    """Process exit code, or None if killed/timed out."""

    stdout: str
    """Standard output from the process."""

    stderr: str
    """Standard error from the process."""

    duration_ms: int
    """Execution duration in milliseconds."""

    timed_out: bool = False
    """Whether the process was terminated due to timeout."""

    error: str | None = None
    """Error message if execution failed."""


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


async def run_process(
    command: list[str] | str,
    *,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> ProcessResult:
    """
    Run a subprocess to completion with timeout and automatic cleanup.

    Args:
        command: Argument list, or a string to run through the shell
        timeout: Optional timeout in seconds. None means no timeout.
        env: Optional environment additions, merged over os.environ.
        cwd: Optional working directory for the process.

    Returns:
        ProcessResult with output, exit code, and timing information.

    Example:
        >>> result = await run_process("pnpm install", cwd="/path/to/worktree")
        >>> if not result.success:
        ...     print(result.stderr)
    """
    started_at = datetime.now(timezone.utc)
    process: asyncio.subprocess.Process | None = None
    display = command if isinstance(command, str) else " ".join(command)

    process_env = None
    if env is not None:
        process_env = os.environ.copy()
        process_env.update(env)

    kwargs: dict[str, Any] = {
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.DEVNULL,
        "cwd": cwd,
        "env": process_env,
    }
    if IS_UNIX:
        kwargs["start_new_session"] = True

    try:
        logger.debug("Running process: %s", display)
        if isinstance(command, str):
            process = await asyncio.create_subprocess_shell(command, **kwargs)
        else:
            process = await asyncio.create_subprocess_exec(*command, **kwargs)

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            await kill_process_group(process)
            return ProcessResult(
                success=False,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_at),
                timed_out=True,
                error=f"Process timed out after {timeout}s",
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        return ProcessResult(
            success=process.returncode == 0,
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=_elapsed_ms(started_at),
            error=None if process.returncode == 0 else f"Exited with code {process.returncode}",
        )

    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        return ProcessResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started_at),
            error=f"Could not run {display}: {e}",
        )

    finally:
        if process is not None:
            await ensure_process_terminated(process)


def signal_process_group(pid: int, sig: int) -> bool:
    """
    Send ``sig`` to the process group led by ``pid`` (or to ``pid`` on Windows).

    Returns:
        False if the process no longer exists
    """
    try:
        if IS_UNIX:
            # start_new_session=True makes the leader's pid the group id, and
            # the group outlives its leader
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
        return True
    except (ProcessLookupError, PermissionError, OSError) as e:
        logger.debug("Signal %s to %d failed (process may be dead): %s", sig, pid, e)
        return False


async def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """
    Kill the process group to ensure all child processes are terminated.

    Args:
        process: The subprocess to kill along with its children.
    """
    if process.returncode is not None:
        return

    signal_process_group(process.pid, signal.SIGKILL if IS_UNIX else signal.SIGTERM)

    try:
        await asyncio.wait_for(process.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Process %d survived SIGKILL of its group", process.pid)
        try:
            process.kill()
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except (asyncio.TimeoutError, ProcessLookupError, OSError):
            pass


async def terminate_process_tree(process: asyncio.subprocess.Process, grace: float) -> bool:
    """
    Terminate a process tree: SIGTERM to the group, SIGKILL after ``grace``.

    Members of the group that outlive the leader get the same treatment, so
    this also cleans up after a leader that has already exited.

    Args:
        process: Leader of the process group.
        grace: Seconds to wait for a graceful exit.

    Returns:
        True if the forceful path was needed.
    """
    if not IS_UNIX:
        if process.returncode is not None:
            return False
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
            return False
        except asyncio.TimeoutError:
            await kill_process_group(process)
            return True

    if process.returncode is not None and not process_group_members(process.pid):
        return False

    logger.debug("Terminating process group %d gracefully", process.pid)
    signal_process_group(process.pid, signal.SIGTERM)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace
    while process.returncode is None or process_group_members(process.pid):
        if loop.time() >= deadline:
            logger.debug(
                "Process group %d still alive after %.1fs, force killing", process.pid, grace
            )
            signal_process_group(process.pid, signal.SIGKILL)
            await kill_process_group(process)
            return True
        await asyncio.sleep(0.05)
    return False


async def ensure_process_terminated(process: asyncio.subprocess.Process) -> None:
    """
    Ensure the process is fully terminated using graceful shutdown.

    Should be called in finally blocks to guarantee cleanup.
    """
    if process.returncode is not None:
        return
    await terminate_process_tree(process, grace=2.0)


def process_group_members(pgid: int) -> list[int]:
    """
    Pids of the live processes in process group ``pgid``.

    Zombies are left out: they hold no ports and cannot be signalled away.
    """
    if not IS_UNIX:
        return []
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return []
    except PermissionError:
        pass
    except OSError:
        return []

    members = []
    for proc in psutil.process_iter(["status"]):
        if proc.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc.pid)
        except OSError:
            continue
    return members


def is_pid_alive(pid: int) -> bool:
    """Check whether a process with ``pid`` exists and has not exited."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
