"""
Error taxonomy for wok3.

Every lifecycle failure maps onto one of these exceptions. The worktree
manager catches them at the operation boundary and turns them into an
``OperationResult`` carrying ``error_code``, so callers of the control
surface never see a raw exception.
"""


class Wok3Error(Exception):
    """Base exception for wok3 operations."""

    error_code = "INTERNAL_ERROR"


class ConfigurationError(Wok3Error):
    """Raised when the project configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"


class GitOperationError(Wok3Error):
    """Raised when a git worktree operation fails."""

    error_code = "GIT_OPERATION_ERROR"


class ProcessSpawnError(Wok3Error):
    """Raised when the dev-server process cannot be spawned."""

    error_code = "PROCESS_SPAWN_ERROR"


class PortAllocationError(Wok3Error):
    """Raised when no port offset is available (NoOffsetAvailable)."""

    error_code = "NO_OFFSET_AVAILABLE"


class ExternalCollaboratorError(Wok3Error):
    """
    Raised when an external collaborator fails.

    Covers install-command failures, liveness-probe failures and git-status
    probe failures. These degrade a worktree rather than abort an operation.
    """

    error_code = "EXTERNAL_COLLABORATOR_ERROR"


class OperationInProgressError(Wok3Error):
    """Raised when another lifecycle operation is already running for an id."""

    error_code = "OPERATION_IN_PROGRESS"

    def __init__(self, worktree_id: str, operation: str | None = None):
        self.worktree_id = worktree_id
        self.operation = operation
        detail = f" ({operation})" if operation else ""
        super().__init__(f'Operation already in progress for "{worktree_id}"{detail}')


class WorktreeNotFoundError(Wok3Error):
    """Raised when a worktree id is unknown."""

    error_code = "WORKTREE_NOT_FOUND"


class WorktreeExistsError(Wok3Error):
    """Raised when creating a worktree whose name is already taken."""

    error_code = "WORKTREE_EXISTS"


class InvalidStateError(Wok3Error):
    """Raised when an operation is not permitted in the worktree's current state."""

    error_code = "INVALID_STATE"


class InvalidNameError(Wok3Error):
    """Raised for malformed names or branch names."""

    error_code = "VALIDATION_ERROR"
