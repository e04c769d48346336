"""
Models exchanged with the dimension resolver.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from .pending_entry import PendingEntry

DIMENSION_TABLES = {
    "curral": "dim_curral",
    "dieta": "dim_dieta",
    "trateiro": "dim_trateiro",
}


class DimensionCodes(BaseModel):
    """Natural-language codes of a fact row's dimensions."""

    curral_code: str
    dieta_name: str | None = None
    trateiro_name: str | None = None


class MappedDimensions(BaseModel):
    """Surrogate ids resolved for a fact row; None means unresolved or absent."""

    organization_id: str
    curral_id: str | None = None
    dieta_id: str | None = None
    trateiro_id: str | None = None


class ReferentialIssue(BaseModel):
    field: str
    code: str
    message: str
    original_value: Any = None
    severity: Literal["error", "warning"]


class ReferentialWarning(BaseModel):
    field: str
    message: str
    recommendation: str


class ReferentialCheckResult(BaseModel):
    """
    Outcome of resolving one row's dimensions.

    Attributes:
        is_valid: False only when a lookup itself failed
        mapped_dimensions: Resolved ids
        pending_entries: Entries blocking this row
        errors: Lookup misses (severity warning) and lookup failures (severity error)
        warnings: Heuristic, non-blocking observations
    """

    is_valid: bool
    mapped_dimensions: MappedDimensions
    pending_entries: list[PendingEntry] = Field(default_factory=list)
    errors: list[ReferentialIssue] = Field(default_factory=list)
    warnings: list[ReferentialWarning] = Field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return bool(self.pending_entries)
