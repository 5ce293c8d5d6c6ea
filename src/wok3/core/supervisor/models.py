"""
Data models for the process supervisor.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class StopOutcome(str, Enum):
    """How a stop request ended."""

    NOT_RUNNING = "not_running"
    GRACEFUL = "graceful"
    FORCED = "forced"


@dataclass
class SupervisedProcess:
    """
    One dev-server process tree owned by the supervisor.

    Attributes:
        worktree_id: Worktree the process belongs to
        command: Shell command that was spawned
        process: The asyncio process (leader of its own process group)
        output: Most recent output lines, oldest first
        started_at: When the process was spawned
        stop_requested: Set by stop() before signalling, so the exit watcher
            can tell an operator stop from a crash
    """

    worktree_id: str
    command: str
    process: asyncio.subprocess.Process
    output: deque[str]
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stop_requested: bool = False
    readers: list[asyncio.Task[None]] = field(default_factory=list)
    watcher: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None
