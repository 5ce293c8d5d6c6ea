"""
Branch-name validation and worktree id derivation.
"""

import re
from collections.abc import Container

from wok3.core.errors import InvalidNameError

BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9/_.-]*$")
WORKTREE_NAME_RE = re.compile(r"^[a-zA-Z0-9-]+$")
STRIPPED_PREFIXES = ("feature/", "fix/", "chore/")


def is_valid_branch_name(branch: str) -> bool:
    return bool(BRANCH_NAME_RE.match(branch)) and ".." not in branch


def validate_branch_name(branch: str) -> str:
    """Return ``branch`` unchanged, or raise InvalidNameError."""
    if not is_valid_branch_name(branch):
        raise InvalidNameError(f"Invalid branch name: {branch!r}")
    return branch


def validate_worktree_name(name: str) -> str:
    """Worktree ids are restricted to letters, digits and dashes."""
    if not WORKTREE_NAME_RE.match(name):
        raise InvalidNameError(f"Invalid worktree name: {name!r}")
    return name


def derive_worktree_id(branch: str, taken: Container[str] = ()) -> str:
    """
    Derive a directory-safe worktree id from a branch name.

    A leading ``feature/``, ``fix/`` or ``chore/`` is dropped and anything
    outside ``[a-zA-Z0-9-]`` becomes a dash. If the result is in ``taken``
    a numeric suffix is appended.

    Example:
        >>> derive_worktree_id("feature/auth-fix")
        'auth-fix'
        >>> derive_worktree_id("feat/x", taken={"feat-x"})
        'feat-x-2'
    """
    base = branch
    for prefix in STRIPPED_PREFIXES:
        if base.startswith(prefix):
            base = base[len(prefix) :]
            break
    base = re.sub(r"[^a-zA-Z0-9-]", "-", base).strip("-") or "worktree"

    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate
