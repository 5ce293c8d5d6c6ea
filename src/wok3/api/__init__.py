"""
HTTP control surface for wok3.

API Endpoints:
- GET/POST /api/worktrees - List and create worktrees
- POST /api/worktrees/{id}/start|stop|recover - Lifecycle operations
- GET /api/events - Live worktree list (server-sent events)
- GET /api/activity - Activity feed; /api/activity/stream for live events
- GET/PATCH /api/config, GET /api/ports, POST /api/discover, POST /api/detect-env

Usage:
    wok3 serve

    # Or from Python
    from wok3.api.app import create_app
    app = create_app(Wok3Context.open(Path(".")))
"""

from wok3.api.app import create_app

__all__ = ["create_app"]
