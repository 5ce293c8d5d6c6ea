"""
Configuration and port API routes.

- GET   /api/config     - Current project configuration
- PATCH /api/config     - Apply an explicit partial update
- GET   /api/ports      - Discovered ports, offset step and held offsets
- POST  /api/discover   - Run port discovery and persist the result
- POST  /api/detect-env - Detect and persist the env-var port mapping
"""

from typing import Any

from fastapi import APIRouter, Body, Depends

from wok3.api.dependencies import get_context
from wok3.core.context import Wok3Context

router = APIRouter()


@router.get("/config")
async def get_config(ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    return {"config": ctx.config.to_file_dict(), "projectName": ctx.project_name}


@router.patch("/config")
async def patch_config(
    changes: dict[str, Any] = Body(...), ctx: Wok3Context = Depends(get_context)
) -> dict[str, Any]:
    """
    Update configuration keys (camelCase or snake_case).

    Raises ConfigurationError (400) when the result does not validate.
    """
    config = ctx.update_config(changes)
    return {"success": True, "config": config.to_file_dict()}


@router.get("/ports")
async def get_ports(ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    ports = ctx.config.ports
    return {
        "discovered": list(ports.discovered),
        "offsetStep": ports.offset_step,
        "virtualizationEnabled": ports.virtualization_enabled,
        "allocated": {str(offset): holder for offset, holder in sorted(ctx.allocator.held().items())},
    }


@router.post("/discover")
async def discover(ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    """Run the start command once and record the ports it listens on."""
    result = await ctx.discover_ports()
    return {
        "success": result.success,
        "ports": result.ports,
        "logs": result.logs,
        "error": result.error,
    }


@router.post("/detect-env")
async def detect_env(ctx: Wok3Context = Depends(get_context)) -> dict[str, Any]:
    mapping = ctx.detect_env()
    return {"success": True, "envMapping": mapping}
