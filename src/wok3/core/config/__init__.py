"""
Configuration models and loading.

This module provides Pydantic models for the .wok3/config.json project
configuration, with env var overrides and explicit update operations.
"""

from .loader import (
    detect_config,
    find_project_root,
    get_config_path,
    get_integrations_path,
    get_state_dir,
    get_tasks_dir,
    get_worktrees_dir,
    init_config,
    load_config,
    persist_env_mapping,
    persist_ports,
    save_config,
    update_config,
)
from .models import ActivityConfig, LivenessConfig, PortConfig, ProcessConfig, ProjectConfig

__all__ = [
    # Models
    "ActivityConfig",
    "LivenessConfig",
    "PortConfig",
    "ProcessConfig",
    "ProjectConfig",
    # Loader functions
    "detect_config",
    "find_project_root",
    "get_config_path",
    "get_integrations_path",
    "get_state_dir",
    "get_tasks_dir",
    "get_worktrees_dir",
    "init_config",
    "load_config",
    "persist_env_mapping",
    "persist_ports",
    "save_config",
    "update_config",
]
