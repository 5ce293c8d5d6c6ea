"""
Port allocation and virtualization.

Gives every running worktree an exclusive port offset and makes that offset
take effect in the worktree's processes, through env-var substitution and
socket interposition shims.

Example:
    >>> from wok3.core.ports import OffsetAllocator, build_child_environment
    >>> allocator = OffsetAllocator(config.ports)
    >>> offset = allocator.allocate("auth-fix")
    >>> env = build_child_environment(offset, config.ports, config.env_mapping)
"""

from .allocator import OffsetAllocator
from .discovery import DiscoveryResult, discover_ports, parse_lsof_listening
from .env import (
    KNOWN_PORTS_ENV_VAR,
    NODE_HOOK_PATH,
    OFFSET_ENV_VAR,
    PYTHON_SHIM_DIR,
    build_child_environment,
    detect_env_mapping,
    render_template,
    templatize,
)

__all__ = [
    "OffsetAllocator",
    "DiscoveryResult",
    "discover_ports",
    "parse_lsof_listening",
    "KNOWN_PORTS_ENV_VAR",
    "NODE_HOOK_PATH",
    "OFFSET_ENV_VAR",
    "PYTHON_SHIM_DIR",
    "build_child_environment",
    "detect_env_mapping",
    "render_template",
    "templatize",
]
