"""
PendingEntry model: a dimension code that could not be resolved yet.
"""

from datetime import datetime
from typing import ClassVar, Literal

from pydantic import BaseModel, Field

from .file_record import utcnow

PendingType = Literal["curral", "dieta"]
PendingStatus = Literal["pending", "resolved", "rejected"]


class PendingEntry(BaseModel):
    """
    Placeholder created on a curral/dieta lookup miss.

    Fact rows referencing the code are deferred, not failed. Status moves
    from pending to resolved or rejected exactly once.

    Attributes:
        id: Surrogate id (uuid)
        type: Dimension the code belongs to
        code: The unresolved code or name as it appeared in the source
        organization_id: Owning organization
        status: pending, resolved or rejected
        resolved_value: Dimension id the code was mapped to
        resolved_by: Operator who closed the entry
        resolved_at: When it was closed
        notes: Free text from the operator
    """

    TABLE: ClassVar[str] = "etl_pending_entry"

    id: str
    type: PendingType
    code: str = Field(..., min_length=1)
    organization_id: str
    status: PendingStatus = "pending"
    resolved_value: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
