"""
FastAPI application setup for the wok3 control surface.

Creates the FastAPI app for a Wok3Context and registers routes and
exception handlers.
"""

import logging
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from wok3 import __version__
from wok3.api.dependencies import STATUS_BY_ERROR_CODE, OperationFailedError, dump
from wok3.api.routes import activity, config, worktrees
from wok3.core.advertisement import remove_advertisement, write_advertisement
from wok3.core.context import Wok3Context
from wok3.core.errors import Wok3Error

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for API responses."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error_code: str
    message: str
    detail: str | None = None
    request_id: str | None = None


def _error_content(
    request: Request, error_code: str, message: str, detail: str | None = None
) -> dict[str, Any]:
    return ErrorResponse(
        error_code=error_code,
        message=message,
        detail=detail if detail is not None else message,
        request_id=str(id(request)),
    ).model_dump()


async def operation_failed_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Report a failed lifecycle operation.

    The body carries the standard error fields plus ``success: false`` and
    the worktree as it stands after the failure, if it still exists.
    """
    assert isinstance(exc, OperationFailedError)
    result = exc.result
    logger.info(
        "Operation failed on %s %s: %s",
        request.method,
        request.url.path,
        result.error,
        extra={"request_id": id(request)},
    )
    content = _error_content(request, result.error_code or ErrorCode.INVALID_REQUEST.value, result.error or "")
    content["success"] = False
    content["error"] = result.error
    if result.worktree is not None:
        content["worktree"] = dump(result.worktree)
    return JSONResponse(status_code=exc.status_code, content=content)


async def wok3_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map core errors raised outside the worktree manager onto HTTP statuses."""
    assert isinstance(exc, Wok3Error)
    http_status = STATUS_BY_ERROR_CODE.get(exc.error_code, status.HTTP_400_BAD_REQUEST)
    logger.info(
        "HTTP %d on %s %s: %s",
        http_status,
        request.method,
        request.url.path,
        exc,
        extra={"request_id": id(request)},
    )
    return JSONResponse(
        status_code=http_status,
        content=_error_content(request, exc.error_code, str(exc)),
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert HTTPException to the standard error response format."""
    assert isinstance(exc, HTTPException)
    error_code = ErrorCode.INTERNAL_ERROR
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        error_code = ErrorCode.NOT_FOUND
    elif exc.status_code == status.HTTP_409_CONFLICT:
        error_code = ErrorCode.CONFLICT
    elif exc.status_code < 500:
        error_code = ErrorCode.INVALID_REQUEST

    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "HTTP %d on %s %s: %s",
        exc.status_code,
        request.method,
        request.url.path,
        exc.detail,
        extra={"request_id": id(request)},
    )

    detail_msg = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_content(request, error_code.value, detail_msg),
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle validation errors from Pydantic models and query parameters.

    Logs the full error and reports the first offending field.
    """
    assert isinstance(exc, RequestValidationError)
    logger.warning(
        "Validation error on %s %s: %s",
        request.method,
        request.url.path,
        exc.errors(),
        extra={"request_id": id(request)},
    )

    first_error = exc.errors()[0] if exc.errors() else {}
    field = " -> ".join(str(loc) for loc in first_error.get("loc", []))
    error_msg = first_error.get("msg", "Invalid input")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_content(
            request,
            ErrorCode.VALIDATION_ERROR.value,
            "Request validation failed",
            f"{field}: {error_msg}" if field else error_msg,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all uncaught exceptions.

    Logs the traceback but returns a clean error response to the client.
    """
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method,
        request.url.path,
        str(exc),
        traceback.format_exc(),
        extra={"request_id": id(request)},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_content(
            request,
            ErrorCode.INTERNAL_ERROR.value,
            "An internal server error occurred",
            str(exc),
        ),
    )


def create_app(context: Wok3Context, advertise_url: str | None = None) -> FastAPI:
    """
    Create the API app serving ``context``.

    The app's lifespan starts the context (existing worktrees, reconcile and
    prune loops) and shuts it down again, which stops every dev server. When
    ``advertise_url`` is given the running instance is advertised in
    .wok3/server.json for the CLI to find.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await context.start()
        if advertise_url:
            write_advertisement(context.project_root, advertise_url)
        try:
            yield
        finally:
            await context.shutdown()
            if advertise_url:
                remove_advertisement(context.project_root)

    app = FastAPI(
        title="wok3",
        description="Control surface for git worktrees and their dev servers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    # Local UI dev servers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(worktrees.router, prefix="/api", tags=["worktrees"])
    app.include_router(config.router, prefix="/api", tags=["config"])
    app.include_router(activity.router, prefix="/api", tags=["activity"])

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint - API health check."""
        return {"status": "ok", "message": "wok3", "project": context.project_name}

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    app.add_exception_handler(OperationFailedError, operation_failed_handler)
    app.add_exception_handler(Wok3Error, wok3_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    return app
