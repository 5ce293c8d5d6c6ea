"""
Activity and live-update API routes.

- GET /api/activity        - Query the activity log by cursor/category/limit
- GET /api/activity/stream - Server-sent events, one per new activity event
- GET /api/events          - Server-sent events carrying worktree list snapshots
"""

import json
from collections.abc import AsyncIterator
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from wok3.api.dependencies import dump, get_context
from wok3.core.activity import DEFAULT_QUERY_LIMIT, ActivityCategory
from wok3.core.context import Wok3Context

router = APIRouter()

KEEPALIVE_SECONDS = 15.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_message(data: Any, event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


@router.get("/activity")
async def get_activity(
    since: Optional[str] = Query(default=None, description="Event id or ISO timestamp cursor"),
    category: Optional[ActivityCategory] = Query(default=None),
    worktree_id: Optional[str] = Query(default=None, alias="worktreeId"),
    limit: int = Query(default=DEFAULT_QUERY_LIMIT, description="Capped at 1000"),
    ctx: Wok3Context = Depends(get_context),
) -> dict[str, Any]:
    """Events in chronological order."""
    events = ctx.activity.query(
        since=since, category=category, worktree_id=worktree_id, limit=limit
    )
    return {"events": dump(events)}


@router.get("/activity/stream")
async def stream_activity(request: Request, ctx: Wok3Context = Depends(get_context)) -> StreamingResponse:
    """Stream new activity events as they are appended."""
    subscription = ctx.activity.subscribe()

    async def generate() -> AsyncIterator[str]:
        try:
            yield ": connected\n\n"
            while True:
                event = await subscription.get(timeout=KEEPALIVE_SECONDS)
                if event is None:
                    if subscription.closed or await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield sse_message(dump(event), event="activity")
        finally:
            subscription.close()

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/events")
async def stream_worktrees(request: Request, ctx: Wok3Context = Depends(get_context)) -> StreamingResponse:
    """Stream the worktree list: once on connect, then after every change."""
    subscription = ctx.manager.subscribe()

    async def generate() -> AsyncIterator[str]:
        try:
            yield sse_message({"type": "worktrees", "worktrees": dump(ctx.manager.list())})
            while True:
                snapshot = await subscription.get(timeout=KEEPALIVE_SECONDS)
                if snapshot is None:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield sse_message({"type": "worktrees", "worktrees": dump(snapshot)})
        finally:
            subscription.close()

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)
