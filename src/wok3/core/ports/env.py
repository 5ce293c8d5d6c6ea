"""
Environment-variable port substitution and child environment construction.

Two mechanisms make an offset take effect inside a worktree's process tree:

1. Env mapping (primary): variables from the project's own .env files whose
   values mention a discovered port are re-emitted with the offset port.
2. Interposition shims (fallback): a Node preload script and a Python
   ``sitecustomize`` that rewrite socket bind/connect calls for known ports.

Both are driven by the environment returned from build_child_environment().
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from wok3.core.config.models import PortConfig

logger = logging.getLogger(__name__)

# Files scanned for port literals, in override order
ENV_FILES = (".env", ".env.local", ".env.development", ".env.development.local")

# Control variables consumed only by the shims
OFFSET_ENV_VAR = "__WOK3_PORT_OFFSET__"
KNOWN_PORTS_ENV_VAR = "__WOK3_KNOWN_PORTS__"

RUNTIME_DIR = Path(__file__).resolve().parent.parent.parent / "runtime"
NODE_HOOK_PATH = RUNTIME_DIR / "port-hook.cjs"
PYTHON_SHIM_DIR = RUNTIME_DIR / "pyshim"

_PLACEHOLDER_RE = re.compile(r"\$\{(\d+)\}")


def _port_literal_pattern(ports: list[int]) -> re.Pattern[str]:
    alternatives = "|".join(str(p) for p in sorted(ports, key=lambda p: -len(str(p))))
    return re.compile(rf"(?<!\d)({alternatives})(?!\d)")


def templatize(value: str, discovered: list[int]) -> str | None:
    """
    Rewrite port literals in ``value`` into ``${index}`` placeholders.

    Only whole numeric literals equal to a discovered port match, so 30001
    is left alone when 3000 is discovered.

    Returns:
        The template, or None when the value mentions no discovered port
    """
    if not discovered:
        return None
    index_of = {port: i for i, port in enumerate(discovered)}
    pattern = _port_literal_pattern(discovered)
    template, count = pattern.subn(lambda m: "${%d}" % index_of[int(m.group(1))], value)
    return template if count else None


def detect_env_mapping(project_dir: Path, discovered: list[int]) -> dict[str, str]:
    """
    Scan the project's env files for values that reference discovered ports.

    Args:
        project_dir: Directory holding the .env files
        discovered: Discovered base ports; placeholder indexes refer to this list

    Returns:
        Ordered mapping of variable name to template. Later files override
        earlier ones for the same variable.

    Example:
        Given ``.env`` containing ``VITE_API_URL=http://localhost:3000`` and
        discovered ports ``[3000, 5173]``::

            {"VITE_API_URL": "http://localhost:${0}"}
    """
    mapping: dict[str, str] = {}
    if not discovered:
        return mapping

    for name in ENV_FILES:
        path = project_dir / name
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if key is None or value is None:
                continue
            template = templatize(value, discovered)
            if template is not None:
                mapping[key] = template

    if mapping:
        logger.info("Detected env var mappings: %s", ", ".join(mapping))
    return mapping


def render_template(template: str, discovered: list[int], offset: int) -> str:
    """
    Substitute ``${i}`` placeholders with ``discovered[i] + offset``.

    A placeholder whose number is not a valid index but equals a discovered
    port (the port-valued form written by older releases) renders as
    ``port + offset``. Anything else is left verbatim.
    """

    def substitute(match: re.Match[str]) -> str:
        number = int(match.group(1))
        if number < len(discovered):
            return str(discovered[number] + offset)
        if number in discovered:
            return str(number + offset)
        logger.warning("Env template placeholder %s matches no discovered port", match.group(0))
        return match.group(0)

    return _PLACEHOLDER_RE.sub(substitute, template)


def _append_node_option(existing: str, hook_path: Path) -> str:
    hook = str(hook_path)
    if " " in hook:
        hook = f'"{hook}"'
    flag = f"--require {hook}"
    if flag in existing:
        return existing
    return f"{existing} {flag}".strip()


def _prepend_path(existing: str, entry: Path) -> str:
    parts = [p for p in existing.split(os.pathsep) if p]
    if str(entry) in parts:
        return existing
    return os.pathsep.join([str(entry), *parts])


def build_child_environment(
    offset: int | None,
    port_config: PortConfig,
    mapping: Mapping[str, str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Compute the environment additions for a worktree's dev-server process.

    Args:
        offset: The worktree's allocated offset
        port_config: Discovered ports and offset step
        mapping: Env mapping templates (variable -> template)
        base_env: Environment the child inherits, used to extend NODE_OPTIONS
            and PYTHONPATH rather than replace them (defaults to os.environ)

    Returns:
        Variables to overlay on the inherited environment. Empty when
        virtualization is disabled or the offset is 0, so the child binds the
        literal configured ports.
    """
    if not offset or not port_config.virtualization_enabled:
        return {}

    if base_env is None:
        base_env = os.environ

    discovered = list(port_config.discovered)
    env: dict[str, str] = {
        OFFSET_ENV_VAR: str(offset),
        KNOWN_PORTS_ENV_VAR: json.dumps(discovered),
        "NODE_OPTIONS": _append_node_option(base_env.get("NODE_OPTIONS", ""), NODE_HOOK_PATH),
        "PYTHONPATH": _prepend_path(base_env.get("PYTHONPATH", ""), PYTHON_SHIM_DIR),
    }

    for key, template in (mapping or {}).items():
        env[key] = render_template(template, discovered, offset)

    return env
