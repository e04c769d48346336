"""
RunLogEntry model: one append-only line of a file's audit trail.
"""

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from .file_record import utcnow

LogLevel = Literal["debug", "info", "warning", "error"]


class LogCategory:
    """Well-known run log categories."""

    STATE_TRANSITION = "STATE_TRANSITION"
    ORCHESTRATION = "ORCHESTRATION"
    PARSING = "PARSING"
    VALIDATION = "VALIDATION"
    REFERENTIAL_INTEGRITY = "REFERENTIAL_INTEGRITY"
    UPSERT = "UPSERT"
    RETRY = "RETRY"
    DEAD_LETTER = "DEAD_LETTER"


class RunLogEntry(BaseModel):
    """
    Append-only audit trail entry.

    Attributes:
        id: Surrogate id (uuid)
        run_id: Processing run the entry belongs to
        file_id: File the entry describes
        organization_id: Owning organization
        level: debug, info, warning or error
        category: One of LogCategory (free text allowed)
        message: Human-readable description
        metadata: Structured details (states, counts, error kinds)
        created_at: When the entry was written
    """

    TABLE: ClassVar[str] = "etl_run_log"

    id: str
    run_id: str
    file_id: str
    organization_id: str
    level: LogLevel = "info"
    category: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
