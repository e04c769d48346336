"""
Core data models for the feedlot ETL.
"""

from .dead_letter import DeadLetterEntry
from .fact_row import FactRow, FeedDeviationRow, FeedingTreatmentRow
from .file_record import FileRecord, FileState
from .pending_entry import PendingEntry
from .referential import (
    DimensionCodes,
    MappedDimensions,
    ReferentialCheckResult,
    ReferentialIssue,
    ReferentialWarning,
)
from .run_log import LogCategory, RunLogEntry

__all__ = [
    "DeadLetterEntry",
    "DimensionCodes",
    "FactRow",
    "FeedDeviationRow",
    "FeedingTreatmentRow",
    "FileRecord",
    "FileState",
    "LogCategory",
    "MappedDimensions",
    "PendingEntry",
    "ReferentialCheckResult",
    "ReferentialIssue",
    "ReferentialWarning",
    "RunLogEntry",
]
