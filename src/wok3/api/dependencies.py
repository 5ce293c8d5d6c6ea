"""
Shared helpers for the API routes.
"""

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from wok3.core.context import Wok3Context
from wok3.core.worktree.models import OperationResult

# HTTP status for each failed-operation error code; anything else is a 400
STATUS_BY_ERROR_CODE = {
    "WORKTREE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "WORKTREE_EXISTS": status.HTTP_409_CONFLICT,
    "OPERATION_IN_PROGRESS": status.HTTP_409_CONFLICT,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "INTERNAL_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class OperationFailedError(Exception):
    """Raised by routes to report a failed OperationResult."""

    def __init__(self, result: OperationResult):
        super().__init__(result.error or "Operation failed")
        self.result = result

    @property
    def status_code(self) -> int:
        return STATUS_BY_ERROR_CODE.get(self.result.error_code or "", status.HTTP_400_BAD_REQUEST)


def get_context(request: Request) -> Wok3Context:
    """FastAPI dependency returning the context the app was created with."""
    context: Wok3Context = request.app.state.context
    return context


def dump(model: Any) -> Any:
    """Serialize a pydantic model (or list of them) with camelCase keys."""
    if isinstance(model, list):
        return [dump(item) for item in model]
    return model.model_dump(mode="json", by_alias=True)


def operation_response(result: OperationResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Return a successful result as JSON, or raise OperationFailedError."""
    if not result.success:
        raise OperationFailedError(result)
    return JSONResponse(status_code=success_status, content=dump(result))
