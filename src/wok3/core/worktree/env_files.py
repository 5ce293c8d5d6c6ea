"""
Copy secret/environment files from the primary checkout into a worktree.

.env files are usually gitignored, so a fresh worktree would otherwise
start without them.
"""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

SKIPPED_DIRS = frozenset({"node_modules", ".git", ".wok3"})


def copy_env_files(source_dir: Path, target_dir: Path, worktrees_dir: Path) -> list[Path]:
    """
    Recursively copy ``.env*`` files from ``source_dir`` into ``target_dir``.

    node_modules, .git, .wok3 and the worktrees container are skipped, and
    files already present at the destination are never overwritten.

    Returns:
        Paths of the copied files, relative to ``target_dir``
    """
    copied: list[Path] = []
    skip = SKIPPED_DIRS | {worktrees_dir.name}

    for root, dirs, files in os.walk(source_dir, onerror=lambda e: logger.debug("%s", e)):
        dirs[:] = sorted(d for d in dirs if d not in skip)
        rel_root = Path(root).relative_to(source_dir)
        for name in sorted(files):
            if not name.startswith(".env"):
                continue
            src = Path(root) / name
            if not src.is_file():
                continue
            dest = target_dir / rel_root / name
            if dest.exists():
                continue
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            except OSError as e:
                logger.warning("Could not copy %s: %s", src, e)
                continue
            copied.append(rel_root / name)
            logger.info("Copied %s to worktree", rel_root / name)

    return copied
