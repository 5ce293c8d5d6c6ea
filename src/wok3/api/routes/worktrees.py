"""
Worktree API routes.

- GET    /api/worktrees              - List worktrees
- POST   /api/worktrees              - Create a worktree
- PATCH  /api/worktrees/{id}         - Rename a stopped worktree
- DELETE /api/worktrees/{id}         - Remove a worktree
- POST   /api/worktrees/{id}/start   - Start its dev server
- POST   /api/worktrees/{id}/stop    - Stop its dev server
- POST   /api/worktrees/{id}/recover - Reuse or recreate a broken worktree
- GET    /api/worktrees/{id}/logs    - Recent dev-server output
"""

from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from wok3.api.dependencies import dump, get_context, operation_response
from wok3.core.context import Wok3Context

router = APIRouter()


class CreateWorktreeRequest(BaseModel):
    """Body of POST /api/worktrees."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    branch: str = Field(..., min_length=1, description="Branch to check out or create")
    name: Optional[str] = Field(default=None, description="Worktree id; derived from the branch if omitted")
    background: bool = Field(
        default=True,
        description="Respond with the 'creating' placeholder instead of waiting",
    )


class RenameWorktreeRequest(BaseModel):
    """Body of PATCH /api/worktrees/{id}."""

    name: Optional[str] = None
    branch: Optional[str] = None


class RecoverWorktreeRequest(BaseModel):
    """Body of POST /api/worktrees/{id}/recover."""

    action: Literal["reuse", "recreate"]
    branch: Optional[str] = None


@router.get("/worktrees")
async def list_worktrees(ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    """List all worktrees with their status, ports and git state."""
    return {"worktrees": dump(ctx.manager.list())}


@router.post("/worktrees")
async def create_worktree(
    body: CreateWorktreeRequest, ctx: Wok3Context = Depends(get_context)
) -> JSONResponse:
    """Create a worktree. Responds 201 with the (placeholder) worktree."""
    result = await ctx.manager.create(body.branch, name=body.name, background=body.background)
    return operation_response(result, status.HTTP_201_CREATED)


@router.patch("/worktrees/{worktree_id}")
async def rename_worktree(
    worktree_id: str, body: RenameWorktreeRequest, ctx: Wok3Context = Depends(get_context)
) -> JSONResponse:
    result = await ctx.manager.rename(worktree_id, name=body.name, branch=body.branch)
    return operation_response(result)


@router.delete("/worktrees/{worktree_id}")
async def remove_worktree(worktree_id: str, ctx: Wok3Context = Depends(get_context)) -> JSONResponse:
    result = await ctx.manager.remove(worktree_id)
    return operation_response(result)


@router.post("/worktrees/{worktree_id}/start")
async def start_worktree(worktree_id: str, ctx: Wok3Context = Depends(get_context)) -> JSONResponse:
    result = await ctx.manager.start(worktree_id)
    return operation_response(result)


@router.post("/worktrees/{worktree_id}/stop")
async def stop_worktree(worktree_id: str, ctx: Wok3Context = Depends(get_context)) -> JSONResponse:
    result = await ctx.manager.stop(worktree_id)
    return operation_response(result)


@router.post("/worktrees/{worktree_id}/recover")
async def recover_worktree(
    worktree_id: str, body: RecoverWorktreeRequest, ctx: Wok3Context = Depends(get_context)
) -> JSONResponse:
    result = await ctx.manager.recover(worktree_id, body.action, branch=body.branch)
    return operation_response(result)


@router.get("/worktrees/{worktree_id}/logs")
async def get_logs(worktree_id: str, ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    """Most recent dev-server output lines, oldest first."""
    if ctx.manager.get(worktree_id) is None:
        raise HTTPException(status_code=404, detail=f'Worktree "{worktree_id}" not found')
    return {"logs": ctx.manager.logs(worktree_id)}
