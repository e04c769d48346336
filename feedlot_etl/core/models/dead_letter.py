"""
DeadLetterEntry model representing an entity that exhausted its retries.
"""

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from ..errors import ErrorKind
from .file_record import utcnow

EntityType = Literal["etl_file"]


class DeadLetterEntry(BaseModel):
    """
    A permanently failed entity awaiting operator resolution.

    Attributes:
        id: Surrogate id (uuid)
        organization_id: Owning organization
        entity_type: Kind of entity that failed
        entity_id: Id of the failed entity
        original_error: Message of the final failure
        error_type: Heuristic classification at enqueue time
        error_type_override: Operator-supplied classification, if any
        total_retries: Retries performed before giving up
        first_failure_at: First failure observed for this entity
        last_retry_at: Time of the final attempt
        resolved: Flipped to True exactly once by an operator
        resolved_at: When it was resolved
        resolved_by: Operator who resolved it
        resolution_notes: Free text from the operator
        marked_for_retry: An operator asked for the entity to be reprocessed
        retry_after: Earliest time the marked entity may be reprocessed
        metadata: Step name, retry config and similar context
    """

    TABLE: ClassVar[str] = "etl_dead_letter_queue"

    id: str
    organization_id: str
    entity_type: EntityType
    entity_id: str
    original_error: str
    error_type: ErrorKind
    error_type_override: ErrorKind | None = None
    total_retries: int = Field(..., ge=0)
    first_failure_at: datetime = Field(default_factory=utcnow)
    last_retry_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    marked_for_retry: bool = False
    retry_after: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def effective_error_type(self) -> ErrorKind:
        return self.error_type_override or self.error_type

    class Config:
        json_schema_extra = {
            "example": {
                "id": "0c7bb0b2-8a4e-4d64-9b87-2a4f5c6a7e10",
                "organization_id": "org-123",
                "entity_type": "etl_file",
                "entity_id": "5b0f7c1e-8d7a-4a43-9f0c-0d1f8f3c2a11",
                "original_error": "connection refused",
                "error_type": "transient",
                "total_retries": 3,
                "resolved": False
            }
        }
