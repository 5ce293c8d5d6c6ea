"""
Tests for WorktreeManager.

Runs the lifecycle state machine against a real repository and real shell
processes: creation, start/stop with port offsets, crash handling, removal,
rename, recovery and reconciliation.
"""

import asyncio
import shutil
import sys
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from git import Repo

from wok3.core.config import LivenessConfig
from wok3.core.errors import GitOperationError
from wok3.core.supervisor import is_pid_alive
from wok3.core.worktree import PullRequestLink, WorktreeStatus

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


def use_start_command(manager, command):
    manager.update_config(manager.config.model_copy(update={"start_command": command}))


def event_types(manager, worktree_id):
    return [e.type for e in manager.activity.query(worktree_id=worktree_id)]


def child_pid_from(logs):
    return int(next(line for line in logs if line.startswith("child=")).split("=")[1])


class TestCreate:
    """Tests for worktree creation."""

    @pytest.mark.asyncio
    async def test_create_ends_stopped(self, manager):
        result = await manager.create("feature/auth-fix")

        assert result.success, result.error
        assert result.worktree.id == "auth-fix"
        assert result.worktree.status == WorktreeStatus.STOPPED
        assert Path(result.worktree.path).is_dir()
        assert Path(result.worktree.path) == manager.worktrees_dir / "auth-fix"
        assert event_types(manager, "auth-fix") == ["creation_started", "creation_completed"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_create_copies_env_files(self, manager, project):
        (project / ".env").write_text("SECRET=1\n")

        result = await manager.create("with-env")

        assert (Path(result.worktree.path) / ".env").read_text() == "SECRET=1\n"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_background_create_returns_placeholder(self, manager):
        result = await manager.create("feature/bg", background=True)

        assert result.success
        assert result.worktree.status == WorktreeStatus.CREATING
        assert manager.is_busy("bg")

        await wait_for(lambda: manager.get("bg").status == WorktreeStatus.STOPPED)
        assert not manager.is_busy("bg")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_invalid_branch_rejected(self, manager):
        result = await manager.create("bad branch")

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert manager.list() == []

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, manager):
        await manager.create("one", name="shared")
        result = await manager.create("two", name="shared")

        assert not result.success
        assert result.error_code == "WORKTREE_EXISTS"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_derived_id_avoids_collision(self, manager):
        first = await manager.create("feature/login")
        second = await manager.create("fix/login")

        assert first.worktree.id == "login"
        assert second.worktree.id == "login-2"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_git_failure_leaves_no_placeholder(self, manager):
        with patch.object(manager.git, "add", side_effect=GitOperationError("boom")):
            result = await manager.create("feature/broken")

        assert not result.success
        assert result.error_code == "GIT_OPERATION_ERROR"
        assert manager.get("broken") is None
        assert not manager.is_busy("broken")
        assert event_types(manager, "broken") == ["creation_started", "creation_failed"]

    @pytest.mark.asyncio
    async def test_failed_install_is_a_warning(self, manager):
        manager.update_config(
            manager.config.model_copy(update={"auto_install": True, "install_command": "exit 2"})
        )

        result = await manager.create("feature/deps")

        assert result.success
        assert result.worktree.status == WorktreeStatus.STOPPED
        assert "failed" in result.worktree.status_message
        assert "install_failed" in event_types(manager, "deps")
        await manager.shutdown()


class TestStartStop:
    """Tests for starting and stopping dev servers."""

    @pytest.mark.asyncio
    async def test_start_allocates_offset_and_renders_env(self, manager):
        await manager.create("feature/auth-fix")
        use_start_command(manager, 'echo "$API_URL $VITE_PORT"; sleep 30')

        result = await manager.start("auth-fix")

        assert result.success, result.error
        wt = result.worktree
        assert wt.status == WorktreeStatus.RUNNING
        assert wt.offset == 10
        assert wt.ports == [3010, 5183]
        assert wt.pid is not None
        await wait_for(lambda: "http://localhost:3010 5183" in manager.logs("auth-fix"))

        started = manager.activity.query(worktree_id="auth-fix")[-1]
        assert started.type == "started"
        assert started.metadata["ports"] == [3010, 5183]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_running_worktrees_get_distinct_offsets(self, manager):
        await manager.create("one")
        await manager.create("two")

        first = await manager.start("one")
        second = await manager.start("two")

        assert {first.worktree.offset, second.worktree.offset} == {10, 20}
        assert manager.allocator.held() == {10: "one", 20: "two"}
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_stop_releases_offset(self, manager):
        await manager.create("one")
        await manager.start("one")

        result = await manager.stop("one")

        assert result.success
        assert result.worktree.status == WorktreeStatus.STOPPED
        assert result.worktree.offset is None
        assert result.worktree.ports == []
        assert manager.allocator.held() == {}
        assert not manager.supervisor.is_running("one")

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager):
        await manager.create("one")

        first = await manager.stop("one")
        second = await manager.stop("one")

        assert first.success and second.success
        assert manager.get("one").status == WorktreeStatus.STOPPED
        assert "stopped" not in event_types(manager, "one")

    @pytest.mark.asyncio
    async def test_start_running_worktree_is_noop(self, manager):
        await manager.create("one")
        first = await manager.start("one")
        again = await manager.start("one")

        assert again.success
        assert again.worktree.offset == first.worktree.offset
        assert manager.allocator.held() == {10: "one"}
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_missing_directory_fails_start(self, manager):
        created = await manager.create("feature/auth-fix")
        shutil.rmtree(created.worktree.path)

        result = await manager.start("auth-fix")

        assert not result.success
        assert result.error_code == "GIT_OPERATION_ERROR"
        assert manager.get("auth-fix").status == WorktreeStatus.ERROR
        assert manager.allocator.held() == {}
        assert event_types(manager, "auth-fix")[-1] == "start_failed"

    @pytest.mark.asyncio
    async def test_concurrent_starts_are_rejected(self, manager):
        await manager.create("one")

        results = await asyncio.gather(manager.start("one"), manager.start("one"))

        assert sorted(r.success for r in results) == [False, True]
        failed = next(r for r in results if not r.success)
        assert failed.error_code == "OPERATION_IN_PROGRESS"
        assert manager.allocator.held() == {10: "one"}
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_worktree(self, manager):
        result = await manager.start("ghost")

        assert not result.success
        assert result.error_code == "WORKTREE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_crash_moves_to_error(self, manager):
        await manager.create("one")
        use_start_command(manager, "echo starting; sleep 0.5; exit 3")

        assert (await manager.start("one")).success
        await wait_for(lambda: manager.get("one").status == WorktreeStatus.ERROR)

        wt = manager.get("one")
        assert "code 3" in wt.status_message
        assert wt.offset is None
        assert manager.allocator.held() == {}
        crashed = manager.activity.query(worktree_id="one")[-1]
        assert crashed.type == "crashed"
        assert "starting" in crashed.detail

    @pytest.mark.asyncio
    async def test_restart_after_crash(self, manager):
        await manager.create("one")
        use_start_command(manager, "exit 1")
        await manager.start("one")
        await wait_for(lambda: manager.get("one").status == WorktreeStatus.ERROR)

        use_start_command(manager, "sleep 30")
        result = await manager.start("one")

        assert result.success
        assert result.worktree.status == WorktreeStatus.RUNNING
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_leader_exit_with_background_child_is_a_crash(self, manager):
        await manager.create("one")
        use_start_command(manager, "sleep 30 & echo child=$!; sleep 0.5; exit 0")

        assert (await manager.start("one")).success
        await wait_for(lambda: manager.get("one").status == WorktreeStatus.ERROR)

        assert manager.allocator.held() == {}
        assert event_types(manager, "one")[-1] == "crashed"
        assert not is_pid_alive(child_pid_from(manager.logs("one")))

    @pytest.mark.asyncio
    async def test_stop_kills_children_that_outlive_the_shell(self, manager):
        await manager.create("one")
        use_start_command(manager, "(trap '' TERM; sleep 30) & echo child=$!; wait")
        process = manager.config.process.model_copy(update={"stop_grace_seconds": 0.5})
        manager.update_config(manager.config.model_copy(update={"process": process}))

        await manager.start("one")
        await wait_for(lambda: any(line.startswith("child=") for line in manager.logs("one")))
        child_pid = child_pid_from(manager.logs("one"))

        result = await manager.stop("one")

        assert result.success
        assert manager.allocator.held() == {}
        assert manager.activity.query(worktree_id="one")[-1].metadata["outcome"] == "forced"
        await wait_for(lambda: not is_pid_alive(child_pid))

    @pytest.mark.asyncio
    async def test_disabled_virtualization_uses_literal_ports(self, manager):
        ports = manager.config.ports.model_copy(update={"offset_step": 0})
        manager.update_config(manager.config.model_copy(update={"ports": ports}))
        manager.allocator.reconfigure(ports)
        await manager.create("one")
        use_start_command(manager, 'echo "offset=[$__WOK3_PORT_OFFSET__]"; sleep 30')

        result = await manager.start("one")

        assert result.success, result.error
        assert result.worktree.offset is None
        assert result.worktree.ports == [3000, 5173]
        assert manager.allocator.held() == {}
        await wait_for(lambda: "offset=[]" in manager.logs("one"))
        await manager.shutdown()


class TestLiveness:
    """Tests for the readiness probe during start."""

    @staticmethod
    def use_liveness(manager, timeout_seconds=5.0):
        liveness = LivenessConfig(path="health", interval_seconds=0.01, timeout_seconds=timeout_seconds)
        manager.update_config(manager.config.model_copy(update={"liveness": liveness}))

    @pytest.mark.asyncio
    async def test_live_endpoint_promotes_to_running(self, manager, monkeypatch):
        await manager.create("one")
        self.use_liveness(manager)
        attempts = []

        async def fake_get(self, url, **kwargs):
            attempts.append((url, manager.get("one").status))
            if len(attempts) < 3:
                raise httpx.ConnectError("refused")
            return httpx.Response(200)

        monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
        result = await manager.start("one")

        assert result.success
        assert result.worktree.status == WorktreeStatus.RUNNING
        assert attempts == [("http://127.0.0.1:3010/health", WorktreeStatus.STARTING)] * 3
        assert "liveness_timeout" not in event_types(manager, "one")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_liveness_timeout_still_marks_running(self, manager, monkeypatch):
        await manager.create("one")
        self.use_liveness(manager, timeout_seconds=0.1)

        async def fake_get(self, url, **kwargs):
            return httpx.Response(503)

        monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
        result = await manager.start("one")

        assert result.success
        assert result.worktree.status == WorktreeStatus.RUNNING
        assert event_types(manager, "one")[-2:] == ["liveness_timeout", "started"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_crash_while_waiting_for_liveness(self, manager, monkeypatch):
        await manager.create("one")
        self.use_liveness(manager)
        use_start_command(manager, "echo failing; sleep 0.2; exit 4")

        async def fake_get(self, url, **kwargs):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
        result = await manager.start("one")

        assert not result.success
        assert result.error_code == "PROCESS_SPAWN_ERROR"
        assert result.worktree.status == WorktreeStatus.ERROR
        assert manager.allocator.held() == {}
        events = event_types(manager, "one")
        assert "crashed" in events
        assert "started" not in events


class TestRemoveRename:
    """Tests for removal and rename."""

    @pytest.mark.asyncio
    async def test_remove_stops_then_deletes(self, manager):
        created = await manager.create("one")
        await manager.start("one")

        result = await manager.remove("one")

        assert result.success
        assert result.worktree.status == WorktreeStatus.REMOVED
        assert manager.get("one") is None
        assert not Path(created.worktree.path).exists()
        assert manager.allocator.held() == {}
        assert event_types(manager, "one")[-2:] == ["stopped", "removed"]

    @pytest.mark.asyncio
    async def test_rename_requires_stopped(self, manager):
        await manager.create("one")
        await manager.start("one")

        result = await manager.rename("one", name="renamed")

        assert not result.success
        assert result.error_code == "INVALID_STATE"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_rename_directory_and_branch(self, manager):
        await manager.create("feature/old")

        result = await manager.rename("old", name="new", branch="feature/new")

        assert result.success, result.error
        assert result.worktree.id == "new"
        assert result.worktree.branch == "feature/new"
        assert manager.get("old") is None
        new_path = manager.worktrees_dir / "new"
        assert new_path.is_dir()
        assert manager.git.current_branch(new_path) == "feature/new"

    @pytest.mark.asyncio
    async def test_rename_to_existing_branch_moves_nothing(self, manager):
        await manager.create("feature/old")
        await manager.create("feature/taken")

        result = await manager.rename("old", name="new", branch="feature/taken")

        assert not result.success
        assert result.error_code == "GIT_OPERATION_ERROR"
        assert manager.get("old").path == str(manager.worktrees_dir / "old")
        assert (manager.worktrees_dir / "old").is_dir()
        assert not (manager.worktrees_dir / "new").exists()

    @pytest.mark.asyncio
    async def test_failed_branch_rename_restores_directory(self, manager):
        await manager.create("feature/old")

        with patch.object(manager.git, "rename_branch", side_effect=GitOperationError("boom")):
            result = await manager.rename("old", name="new", branch="feature/new")

        assert not result.success
        assert manager.get("new") is None
        assert manager.get("old").branch == "feature/old"
        assert (manager.worktrees_dir / "old").is_dir()
        assert not (manager.worktrees_dir / "new").exists()
        assert manager.git.current_branch(manager.worktrees_dir / "old") == "feature/old"


class TestRecoverAndReconcile:
    """Tests for recovery, adoption of existing checkouts and reconciliation."""

    @pytest.mark.asyncio
    async def test_recover_reuse_reattaches_branch(self, manager):
        created = await manager.create("feature/auth-fix")
        shutil.rmtree(created.worktree.path)

        result = await manager.recover("auth-fix", "reuse")

        assert result.success, result.error
        assert result.worktree.status == WorktreeStatus.STOPPED
        assert (Path(created.worktree.path) / "README.md").exists()
        assert manager.git.current_branch(Path(created.worktree.path)) == "feature/auth-fix"

    @pytest.mark.asyncio
    async def test_recover_unknown_action(self, manager):
        result = await manager.recover("auth-fix", "explode")
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_load_existing_adopts_checkouts(self, manager, project):
        Repo(project).git.worktree(
            "add", "-b", "manual-branch", str(manager.worktrees_dir / "manual"), "main"
        )

        assert await manager.load_existing() == ["manual"]
        wt = manager.get("manual")
        assert wt.branch == "manual-branch"
        assert wt.status == WorktreeStatus.STOPPED
        assert await manager.load_existing() == []

    @pytest.mark.asyncio
    async def test_load_existing_ignores_strays_and_prunes_stale(self, manager, project):
        (manager.worktrees_dir / "scratch").mkdir(parents=True)
        stale = manager.worktrees_dir / "gone"
        Repo(project).git.worktree("add", "-b", "gone-branch", str(stale), "main")
        shutil.rmtree(stale)

        assert await manager.load_existing() == []
        assert manager.list() == []
        assert all(e.branch != "gone-branch" for e in manager.git.list())

    @pytest.mark.asyncio
    async def test_reconcile_refreshes_git_status(self, manager):
        created = await manager.create("wip")
        (Path(created.worktree.path) / "scratch.txt").write_text("x\n")

        await manager.reconcile()

        wt = manager.get("wip")
        assert wt.git_status is not None
        assert wt.git_status.has_uncommitted
        assert wt.status == WorktreeStatus.STOPPED

    @pytest.mark.asyncio
    async def test_reconcile_reads_linked_issue(self, manager):
        await manager.create("wip")
        task_dir = manager.tasks_dir / "wip"
        task_dir.mkdir(parents=True)
        (task_dir / "task.json").write_text('{"key": "PROJ-1", "summary": "Fix it"}')

        await manager.reconcile()

        issue = manager.get("wip").linked_issue
        assert issue.key == "PROJ-1"
        assert issue.title == "Fix it"

    @pytest.mark.asyncio
    async def test_linkage_survives_reconcile(self, manager):
        await manager.create("wip")
        link = PullRequestLink(url="https://example.com/pr/7", number=7)

        assert manager.set_linkage("wip", pull_request=link)
        assert not manager.set_linkage("ghost", pull_request=link)
        await manager.reconcile()

        assert manager.get("wip").linked_pull_request == link

    @pytest.mark.asyncio
    async def test_subscribers_receive_snapshots(self, manager):
        with manager.subscribe() as subscription:
            await manager.create("one")
            snapshots = []
            while (snapshot := await subscription.get(timeout=0.1)) is not None:
                snapshots.append(snapshot)

        statuses = [s[0].status for s in snapshots if s]
        assert statuses[0] == WorktreeStatus.CREATING
        assert statuses[-1] == WorktreeStatus.STOPPED
