"""
Running-instance advertisement.

A server writes .wok3/server.json with its pid and URL while it runs.
Companion processes (the CLI, protocol handlers) read it to forward
requests to that instance instead of starting a duplicate.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from wok3.core.config.loader import get_state_dir
from wok3.core.supervisor.process import is_pid_alive

logger = logging.getLogger(__name__)

ADVERTISEMENT_FILE_NAME = "server.json"


class ServerAdvertisement(BaseModel):
    """Contents of .wok3/server.json."""

    pid: int
    url: str


def get_advertisement_path(project_root: Path) -> Path:
    return get_state_dir(project_root) / ADVERTISEMENT_FILE_NAME


def write_advertisement(project_root: Path, url: str, pid: Optional[int] = None) -> Path:
    """Record this process (or ``pid``) as the running instance."""
    path = get_advertisement_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    ad = ServerAdvertisement(pid=pid if pid is not None else os.getpid(), url=url)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(ad.model_dump_json() + "\n", encoding="utf-8")
    tmp.replace(path)
    logger.debug("Advertised %s (PID %d) in %s", ad.url, ad.pid, path)
    return path


def read_advertisement(project_root: Path) -> ServerAdvertisement | None:
    """
    Return the live advertisement, if any.

    Missing, corrupt and stale (dead pid) files all read as None.
    """
    path = get_advertisement_path(project_root)
    try:
        ad = ServerAdvertisement.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError, json.JSONDecodeError) as e:
        logger.debug("Ignoring unreadable advertisement %s: %s", path, e)
        return None

    if not is_pid_alive(ad.pid):
        logger.debug("Ignoring stale advertisement for dead PID %d", ad.pid)
        return None
    return ad


def remove_advertisement(project_root: Path, pid: Optional[int] = None) -> bool:
    """
    Delete the advertisement if it belongs to this process (or ``pid``).

    Returns:
        True if the file was removed
    """
    owner = pid if pid is not None else os.getpid()
    path = get_advertisement_path(project_root)
    try:
        ad = ServerAdvertisement.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return False
    except (OSError, ValidationError, json.JSONDecodeError):
        ad = None

    if ad is not None and ad.pid != owner:
        logger.debug("Leaving advertisement of PID %d in place", ad.pid)
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
