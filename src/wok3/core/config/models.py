"""
Configuration data models for wok3.

These models define the structure of .wok3/config.json, with validation and
type safety via Pydantic. Keys are camelCase on disk and snake_case in Python.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class PortConfig(BaseModel):
    """
    Port virtualization settings.

    An ``offset_step`` of 0 or an empty ``discovered`` list disables
    virtualization: children bind the literal configured ports.
    """

    model_config = _MODEL_CONFIG

    discovered: list[int] = Field(
        default_factory=list,
        description="Base ports the dev stack is known to use, before offsetting",
    )
    offset_step: int = Field(
        default=1,
        ge=0,
        description="How much to increment ports per running worktree",
    )

    @field_validator("discovered")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        """Ports must be valid TCP ports; duplicates are dropped, order kept."""
        seen: list[int] = []
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid port: {port}")
            if port not in seen:
                seen.append(port)
        return seen

    @property
    def virtualization_enabled(self) -> bool:
        """Whether offsets are applied at all."""
        return self.offset_step > 0 and len(self.discovered) > 0


class LivenessConfig(BaseModel):
    """
    Readiness probe used to promote a worktree from starting to running.

    The probe is best-effort: when it times out the worktree is still marked
    running.
    """

    model_config = _MODEL_CONFIG

    port_index: int = Field(
        default=0,
        ge=0,
        description="Index into the discovered ports of the port to probe",
    )
    path: str = Field(default="/", description="HTTP path to request")
    interval_seconds: float = Field(default=0.5, gt=0, description="Delay between attempts")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Overall probe budget")


class ProcessConfig(BaseModel):
    """Dev-server process supervision settings."""

    model_config = _MODEL_CONFIG

    stop_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time between SIGTERM and SIGKILL when stopping",
    )
    log_buffer_lines: int = Field(
        default=100,
        ge=1,
        description="Number of recent output lines kept per worktree",
    )


class ActivityConfig(BaseModel):
    """Activity feed retention and notification routing."""

    model_config = _MODEL_CONFIG

    retention_days: int = Field(default=7, ge=1, description="Days of history kept on disk")
    categories: dict[str, bool] = Field(
        default_factory=lambda: {"agent": True, "worktree": True, "system": True},
        description="Which event categories are recorded",
    )
    toast_events: list[str] = Field(
        default_factory=lambda: [
            "creation_completed",
            "creation_failed",
            "crashed",
            "skill_failed",
            "connection_lost",
        ],
        description="Event types surfaced as in-app toasts",
    )
    os_notification_events: list[str] = Field(
        default_factory=lambda: ["creation_completed", "skill_failed", "crashed"],
        description="Event types surfaced as desktop notifications",
    )


class ProjectConfig(BaseModel):
    """
    Main wok3 configuration model.

    Loaded once per run from .wok3/config.json and mutated only through the
    explicit update operations in the loader.

    Example:
        >>> config = ProjectConfig(start_command="pnpm dev")
        >>> config.ports.offset_step
        1
    """

    model_config = _MODEL_CONFIG

    project_dir: str = Field(
        default=".",
        description="Subdirectory to run commands in (e.g. 'apps/web')",
    )
    start_command: str = Field(default="npm run dev", description="Dev-server command")
    install_command: str = Field(default="npm install", description="Dependency install command")
    base_branch: str = Field(default="origin/main", description="Ref new branches start from")
    auto_install: bool = Field(
        default=True,
        description="Run the install command after creating a worktree",
    )
    ports: PortConfig = Field(default_factory=PortConfig)
    env_mapping: dict[str, str] = Field(
        default_factory=dict,
        description="Env var templates referencing discovered ports by index, e.g. '${0}'",
    )
    server_port: int = Field(
        default=6969,
        ge=1,
        le=65535,
        description="Port the manager listens on",
    )
    liveness: Optional[LivenessConfig] = Field(
        default=None,
        description="Readiness probe; when unset worktrees are running as soon as spawned",
    )
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    reconcile_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="How often git status and linkage are refreshed",
    )
    activity: ActivityConfig = Field(default_factory=ActivityConfig)

    @field_validator("start_command", "install_command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        return v.strip()

    def to_file_dict(self) -> dict[str, object]:
        """Serialize with camelCase keys, as stored on disk."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
