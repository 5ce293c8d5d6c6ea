"""
Worktree data models.

These models describe worktrees as the lifecycle manager tracks them and as
the control surface returns them (camelCase on the wire).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
)


class WorktreeStatus(str, Enum):
    """
    Lifecycle state of a worktree.

    creating -> stopped <-> (starting -> running) -> stopped; any state may
    go to error; removed is terminal.
    """

    CREATING = "creating"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    REMOVED = "removed"

    @property
    def is_active(self) -> bool:
        """Whether a dev-server process (and an offset) belongs to this state."""
        return self in (WorktreeStatus.STARTING, WorktreeStatus.RUNNING)


class GitStatus(BaseModel):
    """Snapshot of a worktree's git state, refreshed by reconcile()."""

    model_config = _MODEL_CONFIG

    has_uncommitted: bool = False
    ahead: int = 0
    behind: int = 0
    no_upstream: bool = False
    ahead_of_base: int = 0

    @property
    def has_unpushed(self) -> bool:
        return self.no_upstream or self.ahead > 0


class IssueLink(BaseModel):
    """Issue linked to a worktree by an integration (.wok3/tasks/<id>/task.json)."""

    model_config = _MODEL_CONFIG

    source: str = Field(default="jira", description="Tracker the issue comes from")
    key: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    title: Optional[str] = None


class PullRequestLink(BaseModel):
    """Pull request linked to a worktree's branch by a code-host integration."""

    model_config = _MODEL_CONFIG

    url: str
    state: str = Field(default="open", description="open, draft, merged or closed")
    number: Optional[int] = None


class Worktree(BaseModel):
    """
    A worktree as tracked by the lifecycle manager.

    ``offset`` is only set while the worktree is starting or running, and
    ``ports`` then lists the concrete (offset) ports.
    """

    model_config = _MODEL_CONFIG

    id: str
    branch: str
    path: str
    status: WorktreeStatus = WorktreeStatus.STOPPED
    status_message: Optional[str] = None
    offset: Optional[int] = None
    pid: Optional[int] = None
    ports: list[int] = Field(default_factory=list)
    git_status: Optional[GitStatus] = None
    linked_issue: Optional[IssueLink] = None
    linked_pull_request: Optional[PullRequestLink] = None
    last_activity: Optional[datetime] = None


class OperationResult(BaseModel):
    """Outcome of a lifecycle operation, as returned to the control surface."""

    model_config = _MODEL_CONFIG

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    worktree: Optional[Worktree] = None
    ports: list[int] = Field(default_factory=list)
    pid: Optional[int] = None

    @classmethod
    def ok(
        cls,
        message: str | None = None,
        worktree: Worktree | None = None,
    ) -> "OperationResult":
        return cls(
            success=True,
            message=message,
            worktree=worktree,
            ports=list(worktree.ports) if worktree else [],
            pid=worktree.pid if worktree else None,
        )

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str,
        worktree: Worktree | None = None,
    ) -> "OperationResult":
        return cls(success=False, error=error, error_code=error_code, worktree=worktree)
