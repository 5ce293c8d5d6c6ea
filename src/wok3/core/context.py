"""
Process-wide wok3 context.

One Wok3Context owns the configuration, the offset allocator, the process
supervisor, the activity log and the worktree manager for a project. It is
built explicitly with Wok3Context.open(), started with start() and torn
down with shutdown(); nothing in the core reaches for global state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from wok3.core.activity import ActivityCategory, ActivityLog, ActivitySeverity, ActivityType
from wok3.core.config.loader import (
    get_state_dir,
    get_worktrees_dir,
    load_config,
    persist_env_mapping,
    persist_ports,
    update_config,
)
from wok3.core.config.models import ProjectConfig
from wok3.core.ports import DiscoveryResult, OffsetAllocator, detect_env_mapping, discover_ports
from wok3.core.supervisor import ProcessSupervisor
from wok3.core.worktree import GitWorktrees, WorktreeManager

logger = logging.getLogger(__name__)

ACTIVITY_PRUNE_INTERVAL_SECONDS = 60 * 60


def detect_project_name(project_root: Path) -> str:
    """The package.json name if there is one, else the directory name."""
    package_json = project_root / "package.json"
    try:
        name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
        if isinstance(name, str) and name:
            return name
    except (OSError, json.JSONDecodeError, AttributeError):
        pass
    return project_root.name


class Wok3Context:
    """
    Owns every core component for one project.

    Example:
        >>> async with Wok3Context.open(Path("/repo")) as ctx:
        ...     await ctx.manager.start("auth-fix")
    """

    def __init__(
        self,
        project_root: Path,
        config: ProjectConfig,
        git: GitWorktrees,
        supervisor: ProcessSupervisor,
        allocator: OffsetAllocator,
        activity: ActivityLog,
        manager: WorktreeManager,
    ):
        self.project_root = project_root
        self.config = config
        self.git = git
        self.supervisor = supervisor
        self.allocator = allocator
        self.activity = activity
        self.manager = manager
        self.project_name = activity.project_name or project_root.name
        self._tasks: list[asyncio.Task[Any]] = []
        self._started = False

    @classmethod
    def open(cls, project_root: Path, config: ProjectConfig | None = None) -> Wok3Context:
        """
        Build a context for the project at ``project_root``.

        Raises:
            ConfigurationError: If the config is missing or invalid
            GitOperationError: If the project is not inside a git repository
        """
        project_root = project_root.resolve()
        if config is None:
            config = load_config(project_root)

        get_worktrees_dir(project_root).mkdir(parents=True, exist_ok=True)
        git = GitWorktrees(project_root)
        supervisor = ProcessSupervisor(
            log_buffer_lines=config.process.log_buffer_lines,
            exit_grace_seconds=config.process.stop_grace_seconds,
        )
        allocator = OffsetAllocator(config.ports)
        activity = ActivityLog(
            get_state_dir(project_root),
            config.activity,
            project_name=detect_project_name(project_root),
        )
        manager = WorktreeManager(project_root, config, git, supervisor, allocator, activity)
        return cls(project_root, config, git, supervisor, allocator, activity, manager)

    @property
    def project_dir(self) -> Path:
        """Directory (inside the primary checkout) commands run in."""
        if self.config.project_dir and self.config.project_dir != ".":
            return self.project_root / self.config.project_dir
        return self.project_root

    async def start(self) -> None:
        """Load existing worktrees and start the periodic reconcile and prune tasks."""
        if self._started:
            return
        self._started = True
        await self.manager.load_existing()
        self._tasks.append(asyncio.create_task(self.manager.run_reconcile_loop()))
        self._tasks.append(asyncio.create_task(self._prune_loop()))
        logger.info("wok3 context started for %s", self.project_root)

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(ACTIVITY_PRUNE_INTERVAL_SECONDS)
            try:
                self.activity.prune()
            except OSError:
                logger.exception("Activity prune failed")

    async def shutdown(self) -> None:
        """Stop background tasks and every dev server, then close streams."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.manager.shutdown()
        self.activity.close()
        self._started = False
        logger.info("wok3 context shut down")

    async def __aenter__(self) -> Wok3Context:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    def _apply_config(self, config: ProjectConfig) -> None:
        self.config = config
        self.allocator.reconfigure(config.ports)
        self.supervisor.set_log_buffer_lines(config.process.log_buffer_lines)
        self.activity.update_config(config.activity)
        self.manager.update_config(config)

    def update_config(self, changes: dict[str, Any]) -> ProjectConfig:
        """
        Apply and persist an explicit config update.

        Raises:
            ConfigurationError: If the update is invalid
        """
        updated = update_config(self.project_root, self.config, changes)
        self._apply_config(updated)
        self.activity.record(
            ActivityCategory.SYSTEM,
            ActivityType.CONFIG_UPDATED,
            ActivitySeverity.INFO,
            "Configuration updated",
            metadata={"keys": sorted(changes)},
        )
        return updated

    async def discover_ports(self, on_log: Callable[[str], None] | None = None) -> DiscoveryResult:
        """
        Run the start command once, persist the ports it listens on and the
        env mapping detected for them.
        """
        result = await discover_ports(
            self.config.start_command,
            self.project_dir,
            exclude={self.config.server_port},
            on_log=on_log,
        )
        if not result.ports:
            return result

        config = persist_ports(self.project_root, self.config, result.ports)
        mapping = detect_env_mapping(self.project_dir, result.ports)
        if mapping:
            config = persist_env_mapping(self.project_root, config, mapping)
        self._apply_config(config)

        self.activity.record(
            ActivityCategory.SYSTEM,
            ActivityType.PORTS_DISCOVERED,
            ActivitySeverity.SUCCESS,
            f"Discovered ports {', '.join(map(str, result.ports))}",
            metadata={"ports": result.ports, "envMapping": mapping},
        )
        return result

    def detect_env(self) -> dict[str, str]:
        """Detect the env mapping for the discovered ports and persist it if non-empty."""
        mapping = detect_env_mapping(self.project_dir, list(self.config.ports.discovered))
        if mapping:
            self._apply_config(persist_env_mapping(self.project_root, self.config, mapping))
        return mapping
