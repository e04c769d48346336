"""
FileRecord model representing one uploaded source file and its lifecycle state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Literal

from pydantic import BaseModel, Field

PipelineName = Literal["feed_deviation", "feeding_treatment"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileState(str, Enum):
    """Lifecycle states of an ingested file."""

    UPLOADED = "uploaded"
    PARSING = "parsing"
    VALIDATING = "validating"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FileState.LOADED, FileState.FAILED)


class FileRecord(BaseModel):
    """
    One uploaded source file.

    Attributes:
        id: Surrogate id (uuid)
        organization_id: Owning organization
        filename: Original upload name
        filepath: Location in the blob store
        pipeline: Which pipeline validates this file
        current_state: Lifecycle state, written only by the state machine
        retry_count: Persisted retry attempts, written only by the retry executor
        checksum: Hex digest of the uploaded content, used to detect duplicates
        next_retry_at: When the pending retry is due
        last_error: Reason recorded on the last transition to FAILED
        processing_started_at: Set on entering PARSING
        completed_at: Set on entering LOADED or FAILED
    """

    TABLE: ClassVar[str] = "etl_file"

    id: str
    organization_id: str = Field(..., min_length=1)
    filename: str
    filepath: str
    pipeline: PipelineName
    current_state: FileState = FileState.UPLOADED
    retry_count: int = Field(0, ge=0)
    checksum: str | None = None
    next_retry_at: datetime | None = None
    last_error: str | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "5b0f7c1e-8d7a-4a43-9f0c-0d1f8f3c2a11",
                "organization_id": "org-123",
                "filename": "desvio_2024-01-15.csv",
                "filepath": "org-123/desvio_2024-01-15.csv",
                "pipeline": "feed_deviation",
                "current_state": "loaded",
                "retry_count": 0
            }
        }
