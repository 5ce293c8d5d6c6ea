"""
Worktree lifecycle management.

This module provides the WorktreeManager state machine, the GitWorktrees
git layer it drives, and the models returned to the control surface.
"""

from .env_files import copy_env_files
from .git import GitWorktreeEntry, GitWorktrees, parse_worktree_list
from .manager import RECOVER_ACTIONS, WorktreeManager, WorktreeSubscription
from .models import (
    GitStatus,
    IssueLink,
    OperationResult,
    PullRequestLink,
    Worktree,
    WorktreeStatus,
)
from .naming import derive_worktree_id, validate_branch_name, validate_worktree_name

__all__ = [
    "GitStatus",
    "GitWorktreeEntry",
    "GitWorktrees",
    "IssueLink",
    "OperationResult",
    "PullRequestLink",
    "RECOVER_ACTIONS",
    "Worktree",
    "WorktreeManager",
    "WorktreeStatus",
    "WorktreeSubscription",
    "copy_env_files",
    "derive_worktree_id",
    "parse_worktree_list",
    "validate_branch_name",
    "validate_worktree_name",
]
