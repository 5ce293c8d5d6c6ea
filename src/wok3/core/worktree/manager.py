"""
Worktree lifecycle manager.

The manager is the state machine over a project's worktrees. It drives git
worktree creation, rename and removal through GitWorktrees, starts and stops
dev servers through the ProcessSupervisor, holds port offsets from the
OffsetAllocator while a worktree runs, and reports every transition to the
ActivityLog.

Every lifecycle operation returns an OperationResult; wok3 errors raised
inside an operation are turned into failed results and never escape.
"""

import asyncio
import builtins
import json
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from wok3.core.activity import ActivityCategory, ActivityLog, ActivitySeverity, ActivityType
from wok3.core.config.loader import get_tasks_dir, get_worktrees_dir
from wok3.core.config.models import ProjectConfig
from wok3.core.errors import (
    ConfigurationError,
    ExternalCollaboratorError,
    GitOperationError,
    InvalidNameError,
    InvalidStateError,
    OperationInProgressError,
    ProcessSpawnError,
    Wok3Error,
    WorktreeExistsError,
    WorktreeNotFoundError,
)
from wok3.core.ports import OffsetAllocator, build_child_environment
from wok3.core.supervisor import ProcessSupervisor, run_process

from .env_files import copy_env_files
from .git import GitWorktrees
from .models import IssueLink, OperationResult, PullRequestLink, Worktree, WorktreeStatus
from .naming import derive_worktree_id, validate_branch_name, validate_worktree_name

logger = logging.getLogger(__name__)

RECOVER_ACTIONS = ("reuse", "recreate")

_TRANSITIONS: dict[WorktreeStatus, set[WorktreeStatus]] = {
    WorktreeStatus.CREATING: {WorktreeStatus.STOPPED, WorktreeStatus.ERROR, WorktreeStatus.REMOVED},
    WorktreeStatus.STOPPED: {WorktreeStatus.STARTING, WorktreeStatus.ERROR, WorktreeStatus.REMOVED},
    WorktreeStatus.STARTING: {WorktreeStatus.RUNNING, WorktreeStatus.STOPPED, WorktreeStatus.ERROR},
    WorktreeStatus.RUNNING: {WorktreeStatus.STOPPED, WorktreeStatus.ERROR},
    WorktreeStatus.ERROR: {
        WorktreeStatus.STOPPED,
        WorktreeStatus.STARTING,
        WorktreeStatus.ERROR,
        WorktreeStatus.REMOVED,
    },
    WorktreeStatus.REMOVED: set(),
}


class WorktreeSubscription:
    """
    Stream of worktree list snapshots, one per registry change.

    Only the latest snapshots matter, so when the consumer falls behind the
    oldest queued snapshot is dropped.
    """

    def __init__(self, manager: "WorktreeManager", maxsize: int = 16):
        self._manager = manager
        self._queue: asyncio.Queue[Optional[list[Worktree]]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def publish(self, snapshot: list[Worktree]) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(snapshot)

    async def get(self, timeout: float | None = None) -> list[Worktree] | None:
        if self._closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._manager.unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "WorktreeSubscription":
        return self

    async def __anext__(self) -> list[Worktree]:
        snapshot = await self.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    def __enter__(self) -> "WorktreeSubscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class WorktreeManager:
    """
    Lifecycle state machine over a project's git worktrees.

    States: creating -> stopped <-> (starting -> running) -> stopped; any
    state may go to error; removed is terminal. Exactly one lifecycle
    operation may be in flight per worktree id.

    Example:
        >>> manager = WorktreeManager(root, config, git, supervisor, allocator, activity)
        >>> result = await manager.create("feature/auth-fix")
        >>> result.worktree.id
        'auth-fix'
        >>> (await manager.start("auth-fix")).ports
        [3010, 5183]
        >>> await manager.stop("auth-fix")
    """

    def __init__(
        self,
        project_root: Path,
        config: ProjectConfig,
        git: GitWorktrees,
        supervisor: ProcessSupervisor,
        allocator: OffsetAllocator,
        activity: ActivityLog,
        worktrees_dir: Path | None = None,
    ):
        self.project_root = project_root
        self.config = config
        self.git = git
        self.supervisor = supervisor
        self.allocator = allocator
        self.activity = activity
        self.worktrees_dir = worktrees_dir or get_worktrees_dir(project_root)
        self.tasks_dir = get_tasks_dir(project_root)

        self._worktrees: dict[str, Worktree] = {}
        self._in_flight: dict[str, str] = {}
        self._subscribers: set[WorktreeSubscription] = set()
        self._linked_prs: dict[str, PullRequestLink] = {}
        self._linked_issues: dict[str, IssueLink] = {}
        self._git_probe_failing: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()

        self.supervisor.set_exit_handler(self._handle_exit)

    # ------------------------------------------------------------------
    # Queries (never await)
    # ------------------------------------------------------------------

    def list(self) -> builtins.list[Worktree]:
        """Snapshot of every known worktree, in registration order."""
        return [wt.model_copy(deep=True) for wt in self._worktrees.values()]

    def get(self, worktree_id: str) -> Worktree | None:
        wt = self._worktrees.get(worktree_id)
        return wt.model_copy(deep=True) if wt is not None else None

    def logs(self, worktree_id: str) -> builtins.list[str]:
        """Recent dev-server output for a worktree, oldest first."""
        return self.supervisor.logs(worktree_id)

    def is_busy(self, worktree_id: str) -> bool:
        return worktree_id in self._in_flight

    def subscribe(self) -> WorktreeSubscription:
        """Attach a subscriber that receives a snapshot after every change."""
        subscription = WorktreeSubscription(self)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: WorktreeSubscription) -> None:
        self._subscribers.discard(subscription)

    def update_config(self, config: ProjectConfig) -> None:
        """Use ``config`` for subsequent operations."""
        self.config = config

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.list()
        for subscription in builtins.list(self._subscribers):
            subscription.publish(snapshot)

    def _require(self, worktree_id: str) -> Worktree:
        wt = self._worktrees.get(worktree_id)
        if wt is None:
            raise WorktreeNotFoundError(f'Worktree "{worktree_id}" not found')
        return wt

    def _set_status(
        self, wt: Worktree, status: WorktreeStatus, message: str | None = None
    ) -> None:
        if status not in _TRANSITIONS[wt.status]:
            raise InvalidStateError(
                f'Worktree "{wt.id}" cannot go from {wt.status.value} to {status.value}'
            )
        logger.debug("%s: %s -> %s", wt.id, wt.status.value, status.value)
        wt.status = status
        wt.status_message = message
        wt.last_activity = datetime.now(timezone.utc)
        self._notify()

    def _set_message(self, worktree_id: str, message: str) -> None:
        wt = self._worktrees.get(worktree_id)
        if wt is not None:
            wt.status_message = message
            self._notify()

    def _clear_process(self, wt: Worktree) -> None:
        self.allocator.release(wt.offset)
        wt.offset = None
        wt.pid = None
        wt.ports = []

    def _record(
        self,
        type: str,
        severity: ActivitySeverity,
        title: str,
        worktree_id: str | None = None,
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.activity.record(
            ActivityCategory.WORKTREE,
            type,
            severity,
            title,
            detail=detail,
            worktree_id=worktree_id,
            metadata=metadata,
        )

    def _working_dir(self, worktree_path: Path) -> Path:
        project_dir = self.config.project_dir
        if project_dir and project_dir != ".":
            return worktree_path / project_dir
        return worktree_path

    def _taken_ids(self) -> set[str]:
        taken = set(self._worktrees) | set(self._in_flight)
        if self.worktrees_dir.is_dir():
            taken.update(p.name for p in self.worktrees_dir.iterdir())
        return taken

    @contextmanager
    def _exclusive(self, worktree_id: str, operation: str) -> Iterator[None]:
        # Check-and-add happens without an intervening await
        current = self._in_flight.get(worktree_id)
        if current is not None:
            raise OperationInProgressError(worktree_id, current)
        self._in_flight[worktree_id] = operation
        try:
            yield
        finally:
            if self._in_flight.get(worktree_id) == operation:
                del self._in_flight[worktree_id]

    async def _guarded(
        self,
        worktree_id: str,
        operation: str,
        action: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        try:
            with self._exclusive(worktree_id, operation):
                return await action()
        except Wok3Error as e:
            logger.info("%s of %s failed: %s", operation, worktree_id, e)
            return OperationResult.fail(str(e), e.error_code, self.get(worktree_id))
        except Exception as e:
            logger.exception("Unexpected error during %s of %s", operation, worktree_id)
            return OperationResult.fail(f"{operation} failed: {e}", "INTERNAL_ERROR", self.get(worktree_id))

    def _spawn_background(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(
        self, branch: str, name: str | None = None, background: bool = False
    ) -> OperationResult:
        """
        Create a worktree for ``branch``.

        Args:
            branch: Branch to check out (created from the base branch if new)
            name: Worktree id; derived from the branch when omitted
            background: Return the ``creating`` placeholder immediately and
                finish the work in a task

        Returns:
            OperationResult; on success ``worktree`` is the stopped worktree
            (or the placeholder when ``background`` is set)
        """
        try:
            validate_branch_name(branch)
            if name is not None:
                validate_worktree_name(name)
            if not await asyncio.to_thread(self.git.has_commits):
                raise GitOperationError(
                    "Repository has no commits yet. Create an initial commit first: "
                    'git add . && git commit -m "Initial commit"'
                )

            taken = self._taken_ids()
            if name is not None:
                if name in self._in_flight:
                    raise OperationInProgressError(name, self._in_flight[name])
                if name in taken:
                    raise WorktreeExistsError(f'Worktree "{name}" already exists')
                worktree_id = name
            else:
                worktree_id = derive_worktree_id(branch, taken)
        except Wok3Error as e:
            return OperationResult.fail(str(e), e.error_code)

        path = self.worktrees_dir / worktree_id
        placeholder = Worktree(
            id=worktree_id,
            branch=branch,
            path=str(path),
            status=WorktreeStatus.CREATING,
            status_message="Fetching branch...",
            last_activity=datetime.now(timezone.utc),
        )
        self._worktrees[worktree_id] = placeholder
        self._in_flight[worktree_id] = "create"
        self._notify()
        self._record(
            ActivityType.CREATION_STARTED,
            ActivitySeverity.INFO,
            f'Creating worktree "{worktree_id}"',
            worktree_id,
            branch=branch,
        )

        if background:
            self._spawn_background(self._run_create(worktree_id, branch, path))
            return OperationResult.ok(f'Creating worktree "{worktree_id}"', self.get(worktree_id))
        return await self._run_create(worktree_id, branch, path)

    async def _run_create(self, worktree_id: str, branch: str, path: Path) -> OperationResult:
        try:
            try:
                await asyncio.to_thread(self.git.fetch_branch, branch)
                self._set_message(worktree_id, "Creating worktree...")
                base_ref = await asyncio.to_thread(self.git.resolve_base_ref, self.config.base_branch)
                await asyncio.to_thread(self.git.prune)
                tier = await asyncio.to_thread(self.git.add, path, branch, base_ref)
            except Exception as e:
                self._worktrees.pop(worktree_id, None)
                self._notify()
                if isinstance(e, Wok3Error):
                    error_code = e.error_code
                    logger.error("Failed to create %s: %s", worktree_id, e)
                else:
                    error_code = "INTERNAL_ERROR"
                    logger.exception("Unexpected error creating %s", worktree_id)
                self._record(
                    ActivityType.CREATION_FAILED,
                    ActivitySeverity.ERROR,
                    f'Failed to create worktree "{worktree_id}"',
                    worktree_id,
                    detail=str(e),
                    branch=branch,
                )
                return OperationResult.fail(str(e), error_code)

            logger.info("Created worktree %s at %s (strategy %d)", worktree_id, path, tier)
            await asyncio.to_thread(copy_env_files, self.project_root, path, self.worktrees_dir)

            warning = None
            if self.config.auto_install and self.config.install_command:
                warning = await self._install(worktree_id, path)

            wt = self._worktrees[worktree_id]
            self._set_status(wt, WorktreeStatus.STOPPED, warning)
            self._record(
                ActivityType.CREATION_COMPLETED,
                ActivitySeverity.SUCCESS,
                f'Worktree "{worktree_id}" is ready',
                worktree_id,
                branch=branch,
                strategy=tier,
            )
            return OperationResult.ok(f'Created worktree "{worktree_id}"', self.get(worktree_id))
        finally:
            self._in_flight.pop(worktree_id, None)

    async def _install(self, worktree_id: str, path: Path) -> str | None:
        """Run the install command. Returns a warning message on failure."""
        self._set_message(worktree_id, "Installing dependencies...")
        working_dir = self._working_dir(path)
        if not working_dir.is_dir():
            working_dir = path

        logger.info("Installing dependencies in %s...", worktree_id)
        result = await run_process(self.config.install_command, cwd=str(working_dir))
        if result.success:
            return None

        error = ExternalCollaboratorError(
            f"Install command '{self.config.install_command}' failed: {result.error}"
        )
        logger.warning("%s: %s", worktree_id, error)
        tail = (result.stderr or result.stdout).strip().splitlines()[-20:]
        self._record(
            ActivityType.INSTALL_FAILED,
            ActivitySeverity.WARNING,
            f'Dependency install failed in "{worktree_id}"',
            worktree_id,
            detail="\n".join(tail) or str(error),
            exit_code=result.exit_code,
        )
        return str(error)

    # ------------------------------------------------------------------
    # start / stop
    # ------------------------------------------------------------------

    async def start(self, worktree_id: str) -> OperationResult:
        """
        Start the worktree's dev server with its own port offset.

        Starting a running worktree succeeds and reports its current ports.
        """
        return await self._guarded(worktree_id, "start", lambda: self._start(worktree_id))

    async def _start(self, worktree_id: str) -> OperationResult:
        wt = self._require(worktree_id)
        if wt.status.is_active and self.supervisor.is_running(worktree_id):
            return OperationResult.ok(f'"{worktree_id}" is already running', self.get(worktree_id))
        if wt.status not in (WorktreeStatus.STOPPED, WorktreeStatus.ERROR):
            raise InvalidStateError(f'Cannot start "{worktree_id}" while {wt.status.value}')

        path = Path(wt.path)
        if not path.is_dir():
            message = f"Worktree directory is missing: {path}"
            self._set_status(wt, WorktreeStatus.ERROR, message)
            self._record(
                ActivityType.START_FAILED,
                ActivitySeverity.ERROR,
                f'Failed to start "{worktree_id}"',
                worktree_id,
                detail=message,
            )
            raise GitOperationError(message)

        working_dir = self._working_dir(path)
        if not working_dir.is_dir():
            raise ConfigurationError(
                f'Project directory "{self.config.project_dir}" not found in worktree'
            )

        offset = self.allocator.allocate(worktree_id) if self.allocator.enabled else None
        env = build_child_environment(offset, self.config.ports, self.config.env_mapping)
        ports = self.allocator.ports_for_offset(offset)

        try:
            wt.offset = offset
            wt.ports = ports
            self._set_status(wt, WorktreeStatus.STARTING, "Starting dev server...")
            logger.info(
                "Starting %s at %s (ports: %s)",
                worktree_id,
                working_dir,
                ", ".join(map(str, ports)) or f"offset={offset}",
            )
            wt.pid = await self.supervisor.spawn(
                worktree_id, self.config.start_command, working_dir, env
            )
        except ProcessSpawnError as e:
            self._clear_process(wt)
            self._set_status(wt, WorktreeStatus.ERROR, str(e))
            self._record(
                ActivityType.START_FAILED,
                ActivitySeverity.ERROR,
                f'Failed to start "{worktree_id}"',
                worktree_id,
                detail=str(e),
            )
            raise
        except BaseException:
            self._clear_process(wt)
            if wt.status == WorktreeStatus.STARTING:
                self._set_status(wt, WorktreeStatus.STOPPED)
            raise

        live = True
        liveness = self.config.liveness
        if liveness is not None and ports:
            port = ports[liveness.port_index] if liveness.port_index < len(ports) else ports[0]
            url_path = liveness.path if liveness.path.startswith("/") else f"/{liveness.path}"
            try:
                live = await self.supervisor.wait_until_live(
                    worktree_id,
                    f"http://127.0.0.1:{port}{url_path}",
                    liveness.interval_seconds,
                    liveness.timeout_seconds,
                )
            except asyncio.CancelledError:
                await self.supervisor.stop(worktree_id, self.config.process.stop_grace_seconds)
                self._clear_process(wt)
                self._set_status(wt, WorktreeStatus.STOPPED)
                raise

        if not self.supervisor.is_running(worktree_id):
            # The exit handler moves the worktree to error
            await self.supervisor.wait_for_exit(worktree_id)
            raise ProcessSpawnError(f'Dev server for "{worktree_id}" exited during startup')

        if not live and liveness is not None:
            self._record(
                ActivityType.LIVENESS_TIMEOUT,
                ActivitySeverity.WARNING,
                f'"{worktree_id}" did not answer its liveness probe',
                worktree_id,
                detail=f"No response within {liveness.timeout_seconds:g}s; marked running anyway",
            )

        self._set_status(wt, WorktreeStatus.RUNNING)
        self._record(
            ActivityType.STARTED,
            ActivitySeverity.SUCCESS,
            f'Started "{worktree_id}"',
            worktree_id,
            ports=ports,
            offset=offset,
            pid=wt.pid,
        )
        return OperationResult.ok(f'Started "{worktree_id}"', self.get(worktree_id))

    async def stop(self, worktree_id: str) -> OperationResult:
        """
        Stop the worktree's dev server and release its offset.

        Stopping a worktree that is not running succeeds without side effects.
        """
        return await self._guarded(worktree_id, "stop", lambda: self._stop(worktree_id))

    async def _stop(self, worktree_id: str) -> OperationResult:
        wt = self._require(worktree_id)
        if not wt.status.is_active and not self.supervisor.is_running(worktree_id):
            return OperationResult.ok(f'"{worktree_id}" is not running', self.get(worktree_id))

        outcome = await self.supervisor.stop(worktree_id, self.config.process.stop_grace_seconds)
        self._clear_process(wt)
        self._set_status(wt, WorktreeStatus.STOPPED)
        self._record(
            ActivityType.STOPPED,
            ActivitySeverity.INFO,
            f'Stopped "{worktree_id}"',
            worktree_id,
            outcome=outcome.value,
        )
        return OperationResult.ok(f'Stopped "{worktree_id}"', self.get(worktree_id))

    def _handle_exit(self, worktree_id: str, returncode: int | None, requested: bool) -> None:
        """Supervisor callback: an unrequested exit is a crash."""
        if requested:
            return
        wt = self._worktrees.get(worktree_id)
        if wt is None or not wt.status.is_active:
            return

        self._clear_process(wt)
        message = f"Process exited unexpectedly with code {returncode}"
        self._set_status(wt, WorktreeStatus.ERROR, message)
        tail = self.supervisor.logs(worktree_id)[-20:]
        self._record(
            ActivityType.CRASHED,
            ActivitySeverity.ERROR,
            f'"{worktree_id}" crashed',
            worktree_id,
            detail="\n".join(tail) or message,
            exit_code=returncode,
        )

    # ------------------------------------------------------------------
    # remove / rename / recover
    # ------------------------------------------------------------------

    async def remove(self, worktree_id: str) -> OperationResult:
        """Stop (if running) and delete a worktree. Terminal."""
        return await self._guarded(worktree_id, "remove", lambda: self._remove(worktree_id))

    async def _remove(self, worktree_id: str) -> OperationResult:
        wt = self._require(worktree_id)
        if wt.status == WorktreeStatus.CREATING:
            raise InvalidStateError(f'Cannot remove "{worktree_id}" while it is being created')

        if wt.status.is_active or self.supervisor.is_running(worktree_id):
            await self._stop(worktree_id)

        await asyncio.to_thread(self.git.remove, Path(wt.path))
        self.supervisor.forget(worktree_id)

        self._set_status(wt, WorktreeStatus.REMOVED)
        removed = wt.model_copy(deep=True)
        del self._worktrees[worktree_id]
        self._git_probe_failing.discard(worktree_id)
        self._linked_prs.pop(worktree_id, None)
        self._linked_issues.pop(worktree_id, None)
        self._notify()

        self._record(ActivityType.REMOVED, ActivitySeverity.INFO, f'Removed "{worktree_id}"', worktree_id)
        return OperationResult.ok(f'Removed "{worktree_id}"', removed)

    async def rename(
        self, worktree_id: str, name: str | None = None, branch: str | None = None
    ) -> OperationResult:
        """Rename a stopped worktree's directory and/or its branch."""
        return await self._guarded(
            worktree_id, "rename", lambda: self._rename(worktree_id, name, branch)
        )

    async def _rename(
        self, worktree_id: str, name: str | None, branch: str | None
    ) -> OperationResult:
        wt = self._require(worktree_id)
        if wt.status != WorktreeStatus.STOPPED:
            raise InvalidStateError(
                f'Cannot rename "{worktree_id}" while {wt.status.value}. Stop it first.'
            )

        new_id = name if name and name != worktree_id else None
        new_branch = branch if branch and branch != wt.branch else None
        if new_id is None and new_branch is None:
            raise InvalidNameError("Nothing to rename")
        if new_id is not None:
            validate_worktree_name(new_id)
            if new_id in self._in_flight:
                raise OperationInProgressError(new_id, self._in_flight[new_id])
            if new_id in self._taken_ids():
                raise WorktreeExistsError(f'Worktree "{new_id}" already exists')
        if new_branch is not None:
            validate_branch_name(new_branch)
            if await asyncio.to_thread(self.git.local_branch_exists, new_branch):
                raise GitOperationError(f'Branch "{new_branch}" already exists')

        if new_id is None:
            return await self._rename_branch(wt, new_branch)

        with self._exclusive(new_id, "rename"):
            old_path = Path(wt.path)
            new_path = self.worktrees_dir / new_id
            await asyncio.to_thread(self.git.move, old_path, new_path)

            previous_branch = None
            if new_branch is not None:
                try:
                    previous_branch = await self._rename_checked_out_branch(
                        new_path, wt, new_branch
                    )
                except GitOperationError:
                    await asyncio.to_thread(self.git.move, new_path, old_path)
                    raise

            del self._worktrees[worktree_id]
            wt.id = new_id
            wt.path = str(new_path)
            self._worktrees[new_id] = wt
            self.supervisor.forget(worktree_id)
            for links in (self._linked_prs, self._linked_issues):
                if worktree_id in links:
                    links[new_id] = links.pop(worktree_id)
            if new_branch is not None:
                wt.branch = new_branch
            wt.last_activity = datetime.now(timezone.utc)
            self._notify()

            title = f'Renamed "{worktree_id}" to "{new_id}"'
            metadata: dict[str, Any] = {"previous_id": worktree_id}
            if new_branch is not None:
                title = f"{title} on branch {new_branch}"
                metadata.update(previous_branch=previous_branch, branch=new_branch)
            self._record(ActivityType.RENAMED, ActivitySeverity.INFO, title, new_id, **metadata)
            return OperationResult.ok(title, self.get(new_id))

    async def _rename_checked_out_branch(self, path: Path, wt: Worktree, new_branch: str) -> str:
        """Rename the branch checked out at ``path``. Returns the previous name."""
        current = await asyncio.to_thread(self.git.current_branch, path) or wt.branch
        if current != new_branch:
            await asyncio.to_thread(self.git.rename_branch, path, current, new_branch)
        return current

    async def _rename_branch(self, wt: Worktree, new_branch: str) -> OperationResult:
        current = await self._rename_checked_out_branch(Path(wt.path), wt, new_branch)
        wt.branch = new_branch
        wt.last_activity = datetime.now(timezone.utc)
        self._notify()

        title = f'Renamed branch of "{wt.id}" to {new_branch}'
        self._record(
            ActivityType.RENAMED,
            ActivitySeverity.INFO,
            title,
            wt.id,
            previous_id=wt.id,
            previous_branch=current,
            branch=new_branch,
        )
        return OperationResult.ok(title, self.get(wt.id))

    async def recover(
        self, worktree_id: str, action: str, branch: str | None = None
    ) -> OperationResult:
        """
        Repair a worktree whose directory or registration went missing.

        ``reuse`` re-attaches the existing branch (keeping its commits);
        ``recreate`` deletes the directory and branch and creates it afresh.
        """
        if action not in RECOVER_ACTIONS:
            return OperationResult.fail(
                f"Unknown recover action {action!r} (expected reuse or recreate)",
                InvalidNameError.error_code,
            )
        try:
            validate_worktree_name(worktree_id)
            if branch is not None:
                validate_branch_name(branch)
        except Wok3Error as e:
            return OperationResult.fail(str(e), e.error_code)

        if action == "reuse":
            return await self._guarded(
                worktree_id, "recover", lambda: self._recover_reuse(worktree_id, branch)
            )

        known = self._worktrees.get(worktree_id)
        branch_name = branch or (known.branch if known else worktree_id)
        cleaned = await self._guarded(
            worktree_id, "recover", lambda: self._recover_cleanup(worktree_id, branch_name)
        )
        if not cleaned.success:
            return cleaned
        return await self.create(branch_name, name=worktree_id)

    async def _recover_reuse(self, worktree_id: str, branch: str | None) -> OperationResult:
        wt = self._worktrees.get(worktree_id)
        if wt is not None and wt.status.is_active:
            raise InvalidStateError(f'"{worktree_id}" is running; nothing to recover')

        path = self.worktrees_dir / worktree_id
        branch_name = branch or (wt.branch if wt else worktree_id)
        await asyncio.to_thread(self.git.prune)

        if not await asyncio.to_thread(self.git.is_worktree, path):
            if path.exists():
                await asyncio.to_thread(self.git.remove, path)
            if not await asyncio.to_thread(self.git.branch_exists, branch_name):
                raise GitOperationError(
                    f'Branch "{branch_name}" does not exist. Choose "recreate" to create a new branch.'
                )
            await asyncio.to_thread(self.git.attach, path, branch_name)

        current = await asyncio.to_thread(self.git.current_branch, path) or branch_name
        if wt is None:
            wt = Worktree(id=worktree_id, branch=current, path=str(path))
            self._worktrees[worktree_id] = wt
        else:
            wt.branch = current
            if wt.status != WorktreeStatus.STOPPED:
                self._set_status(wt, WorktreeStatus.STOPPED)
        wt.last_activity = datetime.now(timezone.utc)
        self._notify()

        self._record(
            ActivityType.RECOVERED,
            ActivitySeverity.SUCCESS,
            f'Recovered "{worktree_id}"',
            worktree_id,
            action="reuse",
            branch=current,
        )
        return OperationResult.ok(f'Recovered "{worktree_id}"', self.get(worktree_id))

    async def _recover_cleanup(self, worktree_id: str, branch_name: str) -> OperationResult:
        wt = self._worktrees.get(worktree_id)
        if wt is not None and (wt.status.is_active or self.supervisor.is_running(worktree_id)):
            await self._stop(worktree_id)

        path = self.worktrees_dir / worktree_id
        await asyncio.to_thread(self.git.remove, path)
        await asyncio.to_thread(self.git.delete_branch, branch_name)
        self.supervisor.forget(worktree_id)
        self._worktrees.pop(worktree_id, None)
        self._notify()

        self._record(
            ActivityType.RECOVERED,
            ActivitySeverity.INFO,
            f'Recreating "{worktree_id}" from scratch',
            worktree_id,
            action="recreate",
            branch=branch_name,
        )
        return OperationResult.ok()

    # ------------------------------------------------------------------
    # reconcile
    # ------------------------------------------------------------------

    async def load_existing(self) -> builtins.list[str]:
        """
        Register checkouts in the worktrees directory the registry does not know.

        Only directories git lists as worktrees of this repository are
        adopted. Registrations whose directory has disappeared are pruned.

        Returns:
            Ids of the newly registered worktrees
        """
        if not self.worktrees_dir.is_dir():
            return []

        try:
            entries = await asyncio.to_thread(self.git.list)
        except GitOperationError as e:
            logger.warning("Could not list worktrees: %s", e)
            return []

        worktrees_dir = self.worktrees_dir.resolve()
        registered = {entry.path.resolve(): entry for entry in entries}
        if any(e.is_prunable and e.path.parent == worktrees_dir for e in registered.values()):
            await asyncio.to_thread(self.git.prune)

        added: builtins.list[str] = []
        for path in sorted(self.worktrees_dir.iterdir()):
            worktree_id = path.name
            if worktree_id in self._worktrees or worktree_id in self._in_flight:
                continue
            known = registered.get(path.resolve())
            if known is None or not path.is_dir():
                continue
            self._worktrees[worktree_id] = Worktree(
                id=worktree_id,
                branch=known.branch or known.commit[:7] or "unknown",
                path=str(path),
                linked_issue=self._read_issue_link(worktree_id),
            )
            added.append(worktree_id)

        if added:
            logger.info("Found existing worktrees: %s", ", ".join(added))
            self._notify()
        return added

    def _read_issue_link(self, worktree_id: str) -> IssueLink | None:
        if worktree_id in self._linked_issues:
            return self._linked_issues[worktree_id]

        task_file = self.tasks_dir / worktree_id / "task.json"
        if not task_file.is_file():
            return None
        try:
            data = json.loads(task_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("Ignoring unreadable task file %s: %s", task_file, e)
            return None
        if not isinstance(data, dict):
            return None

        return IssueLink(
            source=str(data.get("source") or "jira"),
            key=data.get("key") or data.get("identifier"),
            url=data.get("url"),
            status=data.get("status"),
            title=data.get("summary") or data.get("title"),
        )

    def set_linkage(
        self,
        worktree_id: str,
        pull_request: PullRequestLink | None = None,
        issue: IssueLink | None = None,
    ) -> bool:
        """
        Attach externally supplied linkage (from code-host or tracker integrations).

        Returns:
            False if the worktree is unknown
        """
        wt = self._worktrees.get(worktree_id)
        if wt is None:
            return False
        if pull_request is not None:
            self._linked_prs[worktree_id] = pull_request
            wt.linked_pull_request = pull_request
        if issue is not None:
            self._linked_issues[worktree_id] = issue
            wt.linked_issue = issue
        self._notify()
        return True

    async def reconcile(self) -> None:
        """
        Refresh git status and linkage of every worktree.

        Never changes lifecycle state. A failing git-status probe is logged
        every time and recorded as a warning event once per failure streak.
        """
        await self.load_existing()

        changed = False
        for worktree_id, wt in builtins.list(self._worktrees.items()):
            if wt.status in (WorktreeStatus.CREATING, WorktreeStatus.REMOVED):
                continue
            path = Path(wt.path)
            if not path.is_dir():
                continue

            try:
                status = await asyncio.to_thread(self.git.status, path, self.config.base_branch)
                branch = await asyncio.to_thread(self.git.current_branch, path)
            except ExternalCollaboratorError as e:
                logger.warning("Git status probe failed for %s: %s", worktree_id, e)
                if worktree_id not in self._git_probe_failing:
                    self._git_probe_failing.add(worktree_id)
                    self.activity.record(
                        ActivityCategory.SYSTEM,
                        ActivityType.GIT_STATUS_FAILED,
                        ActivitySeverity.WARNING,
                        f'Could not read git status of "{worktree_id}"',
                        detail=str(e),
                        worktree_id=worktree_id,
                    )
                continue
            self._git_probe_failing.discard(worktree_id)

            # Renamed or removed while git ran
            if self._worktrees.get(worktree_id) is not wt:
                continue

            issue = self._read_issue_link(worktree_id)
            pull_request = self._linked_prs.get(worktree_id)
            if (
                status != wt.git_status
                or issue != wt.linked_issue
                or pull_request != wt.linked_pull_request
                or (branch and branch != wt.branch)
            ):
                wt.git_status = status
                wt.linked_issue = issue
                wt.linked_pull_request = pull_request
                if branch:
                    wt.branch = branch
                changed = True

        if changed:
            self._notify()

    async def run_reconcile_loop(self) -> None:
        """Reconcile every ``reconcile_interval_seconds`` until cancelled."""
        while True:
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Reconcile pass failed")
            await asyncio.sleep(self.config.reconcile_interval_seconds)

    # ------------------------------------------------------------------
    # shutdown
    # ------------------------------------------------------------------

    async def stop_all(self) -> None:
        """Stop every running dev server and release every offset."""
        await self.supervisor.stop_all(self.config.process.stop_grace_seconds)
        for wt in self._worktrees.values():
            if wt.status.is_active:
                self._clear_process(wt)
                self._set_status(wt, WorktreeStatus.STOPPED)
                self._record(
                    ActivityType.STOPPED,
                    ActivitySeverity.INFO,
                    f'Stopped "{wt.id}"',
                    wt.id,
                    outcome="shutdown",
                )

    async def shutdown(self) -> None:
        """Cancel background creations, stop all processes and close subscribers."""
        for task in builtins.list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.stop_all()
        for subscription in builtins.list(self._subscribers):
            subscription.close()
