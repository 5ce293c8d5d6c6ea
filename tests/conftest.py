"""
Pytest configuration and shared fixtures.

Provides a real temporary git repository with a .wok3/config.json, sample
configuration, and factories for the core components built on top of them.
"""

import shutil
from pathlib import Path

import pytest
from git import Repo

from wok3.core.activity import ActivityLog
from wok3.core.config.loader import get_state_dir, get_worktrees_dir, save_config
from wok3.core.config.models import PortConfig, ProjectConfig
from wok3.core.context import Wok3Context
from wok3.core.ports import OffsetAllocator
from wok3.core.supervisor import ProcessSupervisor
from wok3.core.worktree import GitWorktrees, WorktreeManager


# ==============================================================================
# Repository Fixtures
# ==============================================================================


def init_repo(path: Path, branch: str = "main") -> Repo:
    """Create a repository at ``path`` with one commit on ``branch``."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    repo.git.config("user.email", "dev@example.com")
    repo.git.config("user.name", "Dev")
    repo.git.config("commit.gpgsign", "false")
    (path / "README.md").write_text("# app\n")
    (path / ".gitignore").write_text(".wok3/\n.env\n")
    repo.git.add("README.md", ".gitignore")
    repo.git.commit("-m", "Initial commit")
    repo.git.branch("-M", branch)
    return repo


@pytest.fixture
def git_repo(tmp_path):
    """A fresh repository with one commit on main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    root = tmp_path / "app"
    init_repo(root)
    return root


@pytest.fixture
def make_repo():
    """Factory for extra repositories (seed repos, clones)."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return init_repo


# ==============================================================================
# Configuration Fixtures
# ==============================================================================


@pytest.fixture
def sample_config():
    """Configuration with two discovered ports and an offset step of 10."""
    return ProjectConfig(
        start_command="sleep 30",
        install_command="true",
        base_branch="main",
        auto_install=False,
        ports=PortConfig(discovered=[3000, 5173], offset_step=10),
        env_mapping={
            "API_URL": "http://localhost:${0}",
            "VITE_PORT": "${1}",
        },
    )


@pytest.fixture
def project(git_repo, sample_config):
    """A repository with .wok3/config.json written from sample_config."""
    save_config(git_repo, sample_config)
    get_worktrees_dir(git_repo).mkdir(parents=True, exist_ok=True)
    return git_repo


# ==============================================================================
# Component Fixtures
# ==============================================================================


@pytest.fixture
def activity_log(tmp_path):
    """An activity log writing under a temporary state directory."""
    return ActivityLog(tmp_path / ".wok3", project_name="app")


@pytest.fixture
def manager(project, sample_config):
    """A WorktreeManager over the real repository and a real supervisor."""
    return WorktreeManager(
        project,
        sample_config,
        GitWorktrees(project),
        ProcessSupervisor(log_buffer_lines=50),
        OffsetAllocator(sample_config.ports),
        ActivityLog(get_state_dir(project), sample_config.activity, project_name="app"),
    )


@pytest.fixture
def context(project, sample_config):
    """A Wok3Context for the project (not started)."""
    return Wok3Context.open(project, sample_config)
