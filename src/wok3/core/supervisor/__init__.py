"""
Process supervision for worktree dev servers.
"""

from .models import StopOutcome, SupervisedProcess
from .process import ProcessResult, is_pid_alive, run_process
from .supervisor import ProcessSupervisor

__all__ = [
    "ProcessResult",
    "ProcessSupervisor",
    "StopOutcome",
    "SupervisedProcess",
    "is_pid_alive",
    "run_process",
]
