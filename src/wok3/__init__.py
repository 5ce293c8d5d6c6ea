"""
wok3 - parallel git worktrees with isolated dev servers.

Each worktree gets its own branch, its own dev-server process tree and a
collision-free port offset applied transparently to the processes it runs.
"""

__version__ = "0.4.0.dev0"

from wok3.core.config.models import PortConfig, ProjectConfig
from wok3.core.worktree.models import Worktree, WorktreeStatus

__all__ = ["PortConfig", "ProjectConfig", "Worktree", "WorktreeStatus", "__version__"]
