"""
File lifecycle state machine and processing orchestration.
"""

from .orchestrator import (
    FileStatus,
    Orchestrator,
    OrchestratorResult,
    ProcessFileRequest,
    RunSummary,
)
from .state_machine import ALLOWED_TRANSITIONS, FileStateMachine

__all__ = [
    "ALLOWED_TRANSITIONS",
    "FileStateMachine",
    "FileStatus",
    "Orchestrator",
    "OrchestratorResult",
    "ProcessFileRequest",
    "RunSummary",
]
