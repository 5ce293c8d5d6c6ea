"""
Git worktree operations.

Thin synchronous layer over GitPython. The lifecycle manager runs these
calls in worker threads (asyncio.to_thread) so git never blocks the event
loop.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from wok3.core.errors import ExternalCollaboratorError, GitOperationError

from .models import GitStatus

logger = logging.getLogger(__name__)

BASE_REF_FALLBACKS = ("main", "master", "HEAD")


@dataclass
class GitWorktreeEntry:
    """
    One entry of ``git worktree list --porcelain``.

    Attributes:
        path: Absolute path to the worktree directory
        branch: Branch name without refs/heads/ (None for detached HEAD)
        commit: Commit SHA
        is_bare: Whether this is the bare repository
        is_locked: Whether the worktree is locked
        is_prunable: Whether git considers the entry stale
    """

    path: Path
    branch: str | None
    commit: str
    is_bare: bool = False
    is_locked: bool = False
    is_prunable: bool = False


def _stderr(error: GitCommandError) -> str:
    text = error.stderr if isinstance(error.stderr, str) else str(error)
    return text.strip().removeprefix("stderr:").strip().strip("'").strip()


class GitWorktrees:
    """
    Git worktree access for one repository.

    Example:
        >>> git = GitWorktrees(Path("/repo"))
        >>> tier = git.add(Path("/repo/.wok3/worktrees/auth-fix"), "feature/auth-fix", "origin/main")
        >>> git.status(Path("/repo/.wok3/worktrees/auth-fix"), "origin/main").ahead_of_base
        0
    """

    def __init__(self, repo_path: Path):
        """
        Args:
            repo_path: Any path inside the repository

        Raises:
            GitOperationError: If ``repo_path`` is not inside a git repository
        """
        try:
            self.repo = Repo(repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitOperationError(f"Not a git repository: {repo_path}") from e
        if self.repo.working_tree_dir is None:
            raise GitOperationError(f"Bare repositories are not supported: {repo_path}")
        self.root = Path(self.repo.working_tree_dir)

    # ------------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------------

    def has_commits(self) -> bool:
        return self.ref_exists("HEAD")

    def ref_exists(self, ref: str) -> bool:
        try:
            self.repo.git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}")
            return True
        except GitCommandError:
            return False

    def local_branch_exists(self, branch: str) -> bool:
        return self.ref_exists(f"refs/heads/{branch}")

    def branch_exists(self, branch: str, remote: str = "origin") -> bool:
        """Whether ``branch`` exists locally or as a remote-tracking branch."""
        return self.local_branch_exists(branch) or self.ref_exists(
            f"refs/remotes/{remote}/{branch}"
        )

    def has_remote(self, name: str = "origin") -> bool:
        return any(remote.name == name for remote in self.repo.remotes)

    def fetch_branch(self, branch: str, remote: str = "origin") -> bool:
        """
        Best-effort fetch of ``branch`` so an upstream branch can be attached.

        Returns:
            True if the fetch succeeded
        """
        if not self.has_remote(remote):
            return False
        try:
            self.repo.git.fetch(remote, f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}")
            return True
        except GitCommandError as e:
            logger.debug("Fetch of %s from %s failed: %s", branch, remote, _stderr(e))
            return False

    def resolve_base_ref(self, configured: str) -> str:
        """
        Pick the ref new branches start from.

        Tries the configured base branch, then main, master and HEAD.

        Raises:
            GitOperationError: If none of them resolves
        """
        for candidate in (configured, *BASE_REF_FALLBACKS):
            if candidate and self.ref_exists(candidate):
                if candidate != configured:
                    logger.info("Base branch %s not found, using %s", configured, candidate)
                return candidate
        raise GitOperationError(
            f"No valid base branch found (tried {configured}, {', '.join(BASE_REF_FALLBACKS)}). "
            "Configure baseBranch in .wok3/config.json."
        )

    def current_branch(self, worktree_path: Path) -> str | None:
        """Branch checked out in ``worktree_path`` (short SHA if detached)."""
        try:
            repo = Repo(worktree_path)
            name = repo.git.rev_parse("--abbrev-ref", "HEAD").strip()
            if name == "HEAD":
                return repo.git.rev_parse("--short", "HEAD").strip()
            return name
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError):
            return None

    def rename_branch(self, worktree_path: Path, old: str, new: str) -> None:
        try:
            Repo(worktree_path).git.branch("-m", old, new)
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            detail = _stderr(e) if isinstance(e, GitCommandError) else str(e)
            raise GitOperationError(f"Failed to rename branch {old} to {new}: {detail}") from e

    def delete_branch(self, branch: str) -> bool:
        """Force-delete a local branch. Returns False if it could not be deleted."""
        try:
            self.repo.git.branch("-D", branch)
            return True
        except GitCommandError as e:
            logger.debug("Could not delete branch %s: %s", branch, _stderr(e))
            return False

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    def add(self, path: Path, branch: str, base_ref: str) -> int:
        """
        Create a worktree at ``path`` for ``branch``.

        Three strategies are tried in order:

        1. create ``branch`` from ``base_ref`` (skipped when the branch
           already exists locally or upstream)
        2. attach the existing branch as-is
        3. force-reset the branch pointer to ``base_ref`` and create

        Returns:
            The strategy (1, 2 or 3) that succeeded

        Raises:
            GitOperationError: If all strategies fail
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        errors: list[str] = []

        if not self.branch_exists(branch):
            try:
                self.repo.git.worktree("add", "-b", branch, str(path), base_ref)
                return 1
            except GitCommandError as e:
                errors.append(_stderr(e))

        try:
            self.attach(path, branch)
            return 2
        except GitOperationError as e:
            errors.append(str(e))

        try:
            self.repo.git.worktree("add", "-B", branch, str(path), base_ref)
            return 3
        except GitCommandError as e:
            errors.append(_stderr(e))

        raise GitOperationError(
            f"Failed to create worktree for {branch}: " + " | ".join(e for e in errors if e)
        )

    def attach(self, path: Path, branch: str) -> None:
        """
        Check out an existing branch (local, or tracked from a single remote) at ``path``.

        Raises:
            GitOperationError: If git refuses, e.g. the branch is checked out elsewhere
        """
        try:
            self.repo.git.worktree("add", str(path), branch)
        except GitCommandError as e:
            raise GitOperationError(_stderr(e)) from e

    def list(self) -> list[GitWorktreeEntry]:
        """
        List all worktrees registered with the repository.

        Raises:
            GitOperationError: If listing fails
        """
        try:
            output = self.repo.git.worktree("list", "--porcelain")
        except GitCommandError as e:
            raise GitOperationError(f"Failed to list worktrees: {_stderr(e)}") from e
        return parse_worktree_list(output)

    def is_worktree(self, path: Path) -> bool:
        """Whether ``path`` is a usable checkout."""
        if not (path / ".git").exists():
            return False
        try:
            Repo(path).git.rev_parse("--git-dir")
            return True
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError):
            return False

    def move(self, old_path: Path, new_path: Path) -> None:
        try:
            self.repo.git.worktree("move", str(old_path), str(new_path))
        except GitCommandError as e:
            raise GitOperationError(f"Failed to move worktree: {_stderr(e)}") from e

    def remove(self, path: Path) -> bool:
        """
        Remove a worktree, forcing past uncommitted changes.

        If git does not recognise the directory as a worktree, the directory
        is deleted and stale registrations are pruned instead.

        Returns:
            True if git removed it, False if the fallback was used

        Raises:
            GitOperationError: If the directory could not be deleted
        """
        try:
            self.repo.git.worktree("remove", "--force", str(path))
            return True
        except GitCommandError as e:
            logger.info("git worktree remove failed (%s), deleting %s directly", _stderr(e), path)

        try:
            if path.exists():
                shutil.rmtree(path)
        except OSError as e:
            raise GitOperationError(f"Failed to delete {path}: {e}") from e
        self.prune()
        return False

    def prune(self) -> None:
        """Prune stale worktree registrations. Failures are logged, not raised."""
        try:
            self.repo.git.worktree("prune")
        except GitCommandError as e:
            logger.warning("git worktree prune failed: %s", _stderr(e))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, worktree_path: Path, base_ref: str | None = None) -> GitStatus:
        """
        Probe uncommitted changes, upstream divergence and commits ahead of base.

        Raises:
            ExternalCollaboratorError: If the worktree cannot be inspected
        """
        try:
            repo = Repo(worktree_path)
            has_uncommitted = bool(repo.git.status("--porcelain").strip())
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            raise ExternalCollaboratorError(
                f"git status failed in {worktree_path}: {e}"
            ) from e

        status = GitStatus(has_uncommitted=has_uncommitted)

        try:
            counts = repo.git.rev_list("--left-right", "--count", "HEAD...@{upstream}").split()
            status.ahead, status.behind = int(counts[0]), int(counts[1])
        except (GitCommandError, ValueError, IndexError):
            status.no_upstream = True

        if base_ref:
            try:
                status.ahead_of_base = int(repo.git.rev_list("--count", f"{base_ref}..HEAD").strip())
            except (GitCommandError, ValueError):
                status.ahead_of_base = 0

        return status


def parse_worktree_list(output: str) -> list[GitWorktreeEntry]:
    """Parse ``git worktree list --porcelain`` output."""
    entries: list[GitWorktreeEntry] = []
    current: dict[str, str | bool] = {}

    def flush() -> None:
        if current.get("path"):
            branch = current.get("branch")
            branch_name = str(branch).removeprefix("refs/heads/") if branch else None
            entries.append(
                GitWorktreeEntry(
                    path=Path(str(current["path"])),
                    branch=branch_name,
                    commit=str(current.get("commit", "")),
                    is_bare=bool(current.get("is_bare", False)),
                    is_locked=bool(current.get("is_locked", False)),
                    is_prunable=bool(current.get("is_prunable", False)),
                )
            )
        current.clear()

    for line in output.splitlines():
        line = line.strip()
        if not line:
            flush()
            continue

        if line.startswith("worktree "):
            flush()
            current["path"] = line[len("worktree ") :]
        elif line.startswith("HEAD "):
            current["commit"] = line[len("HEAD ") :]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch ") :]
        elif line == "bare":
            current["is_bare"] = True
        elif line == "locked" or line.startswith("locked "):
            current["is_locked"] = True
        elif line == "prunable" or line.startswith("prunable "):
            current["is_prunable"] = True

    flush()
    return entries
