"""
Tests for the GitWorktrees layer against real repositories.
"""

from pathlib import Path

import pytest
from git import Repo

from wok3.core.errors import ExternalCollaboratorError, GitOperationError
from wok3.core.worktree import GitWorktrees, parse_worktree_list


PORCELAIN = """\
worktree /repo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /repo/.wok3/worktrees/auth-fix
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature/auth-fix
locked

worktree /repo/.wok3/worktrees/gone
HEAD 3333333333333333333333333333333333333333
detached
prunable gitdir file points to non-existent location
"""


class TestParseWorktreeList:
    """Tests for porcelain parsing."""

    def test_parses_entries(self):
        entries = parse_worktree_list(PORCELAIN)

        assert [e.path for e in entries] == [
            Path("/repo"),
            Path("/repo/.wok3/worktrees/auth-fix"),
            Path("/repo/.wok3/worktrees/gone"),
        ]
        assert entries[0].branch == "main"
        assert entries[1].branch == "feature/auth-fix"
        assert entries[1].is_locked
        assert entries[2].branch is None
        assert entries[2].is_prunable
        assert entries[2].commit.startswith("3333")

    def test_empty_output(self):
        assert parse_worktree_list("") == []


class TestGitWorktrees:
    """Tests for creating, inspecting and removing worktrees."""

    def test_not_a_repository(self, tmp_path):
        with pytest.raises(GitOperationError, match="Not a git repository"):
            GitWorktrees(tmp_path)

    def test_add_new_branch_from_base(self, git_repo):
        git = GitWorktrees(git_repo)
        path = git_repo / ".wok3" / "worktrees" / "auth-fix"

        assert git.add(path, "feature/auth-fix", "main") == 1
        assert (path / "README.md").exists()
        assert git.current_branch(path) == "feature/auth-fix"
        assert git.is_worktree(path)
        assert path.resolve() in [e.path.resolve() for e in git.list()]

    def test_add_attaches_existing_local_branch(self, git_repo):
        repo = Repo(git_repo)
        repo.git.branch("feat/existing")
        git = GitWorktrees(git_repo)

        path = git_repo / ".wok3" / "worktrees" / "feat-existing"
        assert git.add(path, "feat/existing", "main") == 2
        assert git.current_branch(path) == "feat/existing"

    def test_add_fails_when_branch_checked_out_elsewhere(self, git_repo):
        git = GitWorktrees(git_repo)
        with pytest.raises(GitOperationError, match="main"):
            git.add(git_repo / ".wok3" / "worktrees" / "main", "main", "main")

    def test_upstream_only_branch_is_attached_not_recreated(self, tmp_path, make_repo):
        """A branch that exists only on origin is fetched and checked out with its commits."""
        seed = make_repo(tmp_path / "seed")
        origin = tmp_path / "origin.git"
        Repo.clone_from(str(tmp_path / "seed"), str(origin), bare=True)
        clone = Repo.clone_from(str(origin), str(tmp_path / "app"))
        clone.git.config("user.email", "dev@example.com")
        clone.git.config("user.name", "Dev")

        # feat/x appears on origin after the clone was made
        seed.git.checkout("-b", "feat/x")
        (tmp_path / "seed" / "feature.txt").write_text("x\n")
        seed.git.add("feature.txt")
        seed.git.commit("-m", "Add feature")
        seed.git.push(str(origin), "feat/x")

        git = GitWorktrees(tmp_path / "app")
        assert not git.branch_exists("feat/x")
        assert git.fetch_branch("feat/x")
        assert git.branch_exists("feat/x")

        path = tmp_path / "app" / ".wok3" / "worktrees" / "feat-x"
        assert git.add(path, "feat/x", "origin/main") == 2
        assert (path / "feature.txt").read_text() == "x\n"

    def test_fetch_without_remote(self, git_repo):
        assert GitWorktrees(git_repo).fetch_branch("main") is False

    def test_resolve_base_ref_falls_back(self, git_repo):
        git = GitWorktrees(git_repo)
        assert git.resolve_base_ref("main") == "main"
        assert git.resolve_base_ref("origin/main") == "main"

    def test_status_reports_changes_and_commits_ahead(self, git_repo):
        git = GitWorktrees(git_repo)
        path = git_repo / ".wok3" / "worktrees" / "wip"
        git.add(path, "wip", "main")

        status = git.status(path, "main")
        assert not status.has_uncommitted
        assert status.no_upstream
        assert status.has_unpushed
        assert status.ahead_of_base == 0

        (path / "new.txt").write_text("hi\n")
        assert git.status(path, "main").has_uncommitted

        worktree_repo = Repo(path)
        worktree_repo.git.add("new.txt")
        worktree_repo.git.commit("-m", "Add new.txt")
        status = git.status(path, "main")
        assert not status.has_uncommitted
        assert status.ahead_of_base == 1

    def test_status_of_missing_directory(self, git_repo):
        with pytest.raises(ExternalCollaboratorError):
            GitWorktrees(git_repo).status(git_repo / "nope")

    def test_remove_worktree(self, git_repo):
        git = GitWorktrees(git_repo)
        path = git_repo / ".wok3" / "worktrees" / "tmp"
        git.add(path, "tmp", "main")
        (path / "dirty.txt").write_text("uncommitted\n")

        assert git.remove(path) is True
        assert not path.exists()
        assert all(e.branch != "tmp" for e in git.list())

    def test_remove_plain_directory_falls_back_to_delete(self, git_repo):
        git = GitWorktrees(git_repo)
        path = git_repo / ".wok3" / "worktrees" / "stray"
        path.mkdir(parents=True)
        (path / "file.txt").write_text("x")

        assert git.remove(path) is False
        assert not path.exists()

    def test_rename_and_delete_branch(self, git_repo):
        git = GitWorktrees(git_repo)
        path = git_repo / ".wok3" / "worktrees" / "old"
        git.add(path, "old-branch", "main")

        git.rename_branch(path, "old-branch", "new-branch")
        assert git.current_branch(path) == "new-branch"

        git.remove(path)
        assert git.delete_branch("new-branch")
        assert not git.local_branch_exists("new-branch")
        assert git.delete_branch("new-branch") is False
