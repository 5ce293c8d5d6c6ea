"""
Activity event models.

Events are immutable once appended. On disk and on the wire they use
camelCase keys, one JSON object per line in .wok3/activity.jsonl.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ActivityCategory(str, Enum):
    """Which part of the system an event comes from."""

    AGENT = "agent"
    WORKTREE = "worktree"
    SYSTEM = "system"


class ActivitySeverity(str, Enum):
    """How an event should be presented."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ActivityType:
    """Well-known event types. The type field is open, so these are plain strings."""

    # Worktree lifecycle
    CREATION_STARTED = "creation_started"
    CREATION_COMPLETED = "creation_completed"
    CREATION_FAILED = "creation_failed"
    STARTED = "started"
    START_FAILED = "start_failed"
    LIVENESS_TIMEOUT = "liveness_timeout"
    STOPPED = "stopped"
    CRASHED = "crashed"
    REMOVED = "removed"
    RENAMED = "renamed"
    RECOVERED = "recovered"
    INSTALL_FAILED = "install_failed"
    GIT_STATUS_FAILED = "git_status_failed"

    # System
    PORTS_DISCOVERED = "ports_discovered"
    CONFIG_UPDATED = "config_updated"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_RESTORED = "connection_restored"

    # Agent
    AGENT_CONNECTED = "agent_connected"
    AGENT_DISCONNECTED = "agent_disconnected"
    NOTIFY = "notify"
    SKILL_FAILED = "skill_failed"


def _new_event_id() -> str:
    return uuid.uuid4().hex[:21]


class ActivityEvent(BaseModel):
    """One immutable record of a lifecycle or subsystem state change."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(default_factory=_new_event_id, description="Unique event id")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)",
    )
    category: ActivityCategory
    type: str = Field(..., description="Event type, e.g. 'creation_completed'")
    severity: ActivitySeverity = ActivitySeverity.INFO
    title: str
    detail: Optional[str] = None
    worktree_id: Optional[str] = None
    project_name: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
