"""
HTTP client for the running wok3 server.

The server owns every dev-server process, so CLI commands that touch
worktrees are forwarded to it instead of acting on the repository directly.
"""

import logging
from pathlib import Path
from typing import Any

import httpx

from wok3.core.advertisement import read_advertisement

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ServerNotRunningError(Exception):
    """Raised when no live server is advertised for the project."""


class ApiError(Exception):
    """Raised when the server reports a failed request."""

    def __init__(self, message: str, status_code: int, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class Wok3Client:
    """
    Thin synchronous client over the control-surface API.

    Example:
        >>> with Wok3Client.for_project(Path(".")) as client:
        ...     client.list_worktrees()
    """

    def __init__(self, base_url: str, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=DEFAULT_TIMEOUT_SECONDS,
            transport=transport,
        )

    @classmethod
    def for_project(cls, project_root: Path) -> "Wok3Client":
        """
        Connect to the instance advertised in the project's .wok3/server.json.

        Raises:
            ServerNotRunningError: If no live instance is advertised
        """
        ad = read_advertisement(project_root)
        if ad is None:
            raise ServerNotRunningError(f"No running wok3 server for {project_root}")
        logger.debug("Forwarding to %s (PID %d)", ad.url, ad.pid)
        return cls(ad.url)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "Wok3Client":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            raise ServerNotRunningError(f"Could not reach {self.base_url}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error:
            message = payload.get("error") or payload.get("message") or response.reason_phrase
            raise ApiError(str(message), response.status_code, payload)
        result: dict[str, Any] = payload
        return result

    def list_worktrees(self) -> list[dict[str, Any]]:
        worktrees: list[dict[str, Any]] = self._request("GET", "/api/worktrees")["worktrees"]
        return worktrees

    def create(self, branch: str, name: str | None = None) -> dict[str, Any]:
        # Waits for checkout and install; those have no useful upper bound
        body: dict[str, Any] = {"branch": branch, "background": False}
        if name:
            body["name"] = name
        return self._request("POST", "/api/worktrees", json=body, timeout=None)

    def start(self, worktree_id: str) -> dict[str, Any]:
        return self._request("POST", f"/api/worktrees/{worktree_id}/start", timeout=None)

    def stop(self, worktree_id: str) -> dict[str, Any]:
        return self._request("POST", f"/api/worktrees/{worktree_id}/stop")

    def remove(self, worktree_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/api/worktrees/{worktree_id}")

    def logs(self, worktree_id: str) -> list[str]:
        lines: list[str] = self._request("GET", f"/api/worktrees/{worktree_id}/logs")["logs"]
        return lines

    def ports(self) -> dict[str, Any]:
        return self._request("GET", "/api/ports")

    def activity(
        self, since: str | None = None, category: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if since:
            params["since"] = since
        if category:
            params["category"] = category
        events: list[dict[str, Any]] = self._request("GET", "/api/activity", params=params)["events"]
        return events
