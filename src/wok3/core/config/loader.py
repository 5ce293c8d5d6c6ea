"""
Configuration loading and persistence.

Implements the configuration precedence chain:
    defaults < project config (.wok3/config.json) < env vars

There is no module-level cache: the context object loads the config once
per run and hands the instance to every component.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from pydantic import ValidationError

from wok3.core.errors import ConfigurationError

from .models import ProjectConfig

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".wok3"
CONFIG_FILE_NAME = "config.json"
WORKTREES_DIR_NAME = "worktrees"
TASKS_DIR_NAME = "tasks"
INTEGRATIONS_FILE_NAME = "integrations.json"

# Markers that indicate a project root, in order of priority
PROJECT_ROOT_MARKERS = [
    STATE_DIR_NAME,
    ".git",
]

# Top-level keys update_config() may change
UPDATABLE_KEYS = (
    "start_command",
    "install_command",
    "base_branch",
    "project_dir",
    "server_port",
    "auto_install",
    "env_mapping",
    "liveness",
    "reconcile_interval_seconds",
)


def find_project_root(start: Path | None = None) -> Path | None:
    """
    Find the project root directory by searching upward for marker files.

    Args:
        start: Directory to start searching from. Defaults to current working directory.

    Returns:
        Path to the project root directory, or None if not found.
    """
    if start is None:
        start = Path.cwd()
    current = start.resolve()

    while True:
        for marker in PROJECT_ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            return None
        current = current.parent


def get_state_dir(project_root: Path) -> Path:
    """Return <project>/.wok3."""
    return project_root / STATE_DIR_NAME


def get_config_path(project_root: Path) -> Path:
    """Return <project>/.wok3/config.json."""
    return get_state_dir(project_root) / CONFIG_FILE_NAME


def get_worktrees_dir(project_root: Path) -> Path:
    """Return the container directory holding the worktree checkouts."""
    return get_state_dir(project_root) / WORKTREES_DIR_NAME


def get_tasks_dir(project_root: Path) -> Path:
    """Return the directory where integrations drop linked-issue data."""
    return get_state_dir(project_root) / TASKS_DIR_NAME


def get_integrations_path(project_root: Path) -> Path:
    """Return the credentials/integrations file (opaque to the core)."""
    return get_state_dir(project_root) / INTEGRATIONS_FILE_NAME


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Supported env vars:
        WOK3_SERVER_PORT - overrides serverPort
        WOK3_BASE_BRANCH - overrides baseBranch
        WOK3_OFFSET_STEP - overrides ports.offsetStep

    Args:
        config_dict: Configuration dictionary (camelCase keys) to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = dict(config_dict)

    if port_str := os.environ.get("WOK3_SERVER_PORT"):
        try:
            result["serverPort"] = int(port_str)
        except ValueError:
            logger.warning("Invalid WOK3_SERVER_PORT value '%s', ignoring", port_str)

    if base_branch := os.environ.get("WOK3_BASE_BRANCH"):
        result["baseBranch"] = base_branch

    if step_str := os.environ.get("WOK3_OFFSET_STEP"):
        try:
            step = int(step_str)
            if step < 0:
                logger.warning("WOK3_OFFSET_STEP must be >= 0, got %d, ignoring", step)
            else:
                ports = dict(result.get("ports") or {})
                ports["offsetStep"] = step
                result["ports"] = ports
        except ValueError:
            logger.warning("Invalid WOK3_OFFSET_STEP value '%s', ignoring", step_str)

    return result


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"No configuration found at {path}. Run 'wok3 init' to create one."
        )
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigurationError(f"Failed to parse config at {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config at {path} must be a JSON object")
    return data


def load_config(project_root: Path, apply_env: bool = True) -> ProjectConfig:
    """
    Load and validate the project configuration.

    Args:
        project_root: Project root (the directory holding .wok3/)
        apply_env: Whether WOK3_* environment overrides are applied

    Returns:
        Validated ProjectConfig instance

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    data = _read_config_file(get_config_path(project_root))
    if apply_env:
        data = apply_env_overrides(data)
    try:
        return ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def save_config(project_root: Path, config: ProjectConfig) -> Path:
    """
    Write the configuration to .wok3/config.json.

    Keys not modelled by ProjectConfig that are already present in the file
    are preserved.
    """
    path = get_config_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, Any] = {}
    if path.exists():
        try:
            existing = _read_config_file(path)
        except ConfigurationError:
            logger.warning("Overwriting unreadable config at %s", path)

    existing.update(config.to_file_dict())
    path.write_text(json.dumps(existing, indent=2) + "\n", encoding="utf-8")
    return path


def update_config(
    project_root: Path, config: ProjectConfig, changes: dict[str, Any]
) -> ProjectConfig:
    """
    Apply an explicit partial update and persist it.

    Only the keys in UPDATABLE_KEYS plus ``ports.offset_step`` may change;
    anything else in ``changes`` is ignored. Keys may be given in snake_case
    or camelCase.

    Returns:
        The new ProjectConfig (the passed instance is not mutated)

    Raises:
        ConfigurationError: If the merged config fails validation
    """
    by_field = {name: name for name in ProjectConfig.model_fields}
    by_field.update(
        {field.alias: name for name, field in ProjectConfig.model_fields.items() if field.alias}
    )

    merged = config.model_dump()
    for key, value in changes.items():
        name = by_field.get(key)
        if name in UPDATABLE_KEYS and value is not None:
            merged[name] = value
        elif name == "ports" and isinstance(value, dict):
            step = value.get("offset_step", value.get("offsetStep"))
            if step is not None:
                merged["ports"]["offset_step"] = step

    try:
        updated = ProjectConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration update: {e}") from e

    save_config(project_root, updated)
    return updated


def persist_ports(project_root: Path, config: ProjectConfig, discovered: list[int]) -> ProjectConfig:
    """Persist newly discovered ports, returning the updated config."""
    updated = config.model_copy(
        update={"ports": config.ports.model_copy(update={"discovered": list(discovered)})}
    )
    save_config(project_root, updated)
    logger.info("Saved discovered ports to %s", get_config_path(project_root))
    return updated


def persist_env_mapping(
    project_root: Path, config: ProjectConfig, mapping: dict[str, str]
) -> ProjectConfig:
    """Persist a detected env mapping, returning the updated config."""
    updated = config.model_copy(update={"env_mapping": dict(mapping)})
    save_config(project_root, updated)
    logger.info("Saved env mapping to %s", get_config_path(project_root))
    return updated


# ==============================================================================
# Detection of sensible defaults
# ==============================================================================


LOCKFILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("bun.lockb", "bun"),
)


def detect_package_manager(project_dir: Path) -> str | None:
    """Guess the package manager from the lockfile present."""
    for lockfile, manager in LOCKFILES:
        if (project_dir / lockfile).exists():
            return manager
    return None


def detect_default_branch(project_dir: Path) -> str:
    """
    Detect the ref new worktrees should branch from.

    Prefers the remote's HEAD, then the first existing of origin/develop,
    origin/main and origin/master, then origin/main.
    """
    try:
        repo = Repo(project_dir, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return "origin/main"

    try:
        ref = repo.git.symbolic_ref("refs/remotes/origin/HEAD").strip()
        if ref.startswith("refs/remotes/"):
            return ref[len("refs/remotes/") :]
    except GitCommandError:
        pass

    for candidate in ("origin/develop", "origin/main", "origin/master"):
        try:
            repo.git.rev_parse("--verify", candidate)
            return candidate
        except GitCommandError:
            continue

    return "origin/main"


def detect_config(project_dir: Path) -> ProjectConfig:
    """Build a ProjectConfig with values inferred from the project."""
    manager = detect_package_manager(project_dir)
    if manager is None:
        start_command, install_command = "npm run dev", "npm install"
    elif manager == "npm":
        start_command, install_command = "npm run dev", "npm install"
    else:
        start_command, install_command = f"{manager} dev", f"{manager} install"

    return ProjectConfig(
        base_branch=detect_default_branch(project_dir),
        start_command=start_command,
        install_command=install_command,
    )


def init_config(project_root: Path, overwrite: bool = False) -> ProjectConfig:
    """
    Create .wok3/config.json with detected defaults.

    Returns the existing config untouched unless ``overwrite`` is set.
    """
    path = get_config_path(project_root)
    if path.exists() and not overwrite:
        return load_config(project_root, apply_env=False)

    config = detect_config(project_root)
    save_config(project_root, config)
    get_worktrees_dir(project_root).mkdir(parents=True, exist_ok=True)
    return config
