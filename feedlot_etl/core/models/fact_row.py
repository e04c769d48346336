"""
Fact row models for the two feedlot pipelines.

A fact row carries its business identity (natural key), the natural-language
codes of its dimensions and its measures. Dimension ids are attached only when
the row is turned into a storable record.
"""

import re
from datetime import date, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, model_validator

from .referential import DimensionCodes, MappedDimensions

NULL_KEY_PART = "NULL"


class FactRow(BaseModel):
    """
    Base class for validated fact rows.

    Subclasses set TABLE and SALIENT_FIELDS and implement compute_natural_key().
    SALIENT_FIELDS lists the stored columns compared when deciding between
    skipping and updating an existing row.
    """

    TABLE: ClassVar[str]
    SALIENT_FIELDS: ClassVar[tuple[str, ...]]

    natural_key: str = ""
    reference_date: date
    curral_code: str
    dieta_name: str | None = None

    @model_validator(mode="after")
    def _fill_natural_key(self) -> "FactRow":
        if not self.natural_key:
            self.natural_key = self.compute_natural_key()
        return self

    def compute_natural_key(self) -> str:
        raise NotImplementedError

    def dimension_codes(self) -> DimensionCodes:
        return DimensionCodes(curral_code=self.curral_code, dieta_name=self.dieta_name)

    def measures(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_record(
        self,
        dimensions: MappedDimensions,
        organization_id: str,
        file_id: str
    ) -> dict[str, Any]:
        """Build the column dict stored in the fact table."""
        record = {
            "organization_id": organization_id,
            "natural_key": self.natural_key,
            "reference_date": self.reference_date,
            "curral_id": dimensions.curral_id,
            "dieta_id": dimensions.dieta_id,
            "source_file_id": file_id,
        }
        record.update(self.measures())
        return record


class FeedDeviationRow(FactRow):
    """Loading deviation: planned vs. actual kg per equipment, curral and shift."""

    TABLE: ClassVar[str] = "fact_feed_deviation"
    SALIENT_FIELDS: ClassVar[tuple[str, ...]] = (
        "curral_id",
        "dieta_id",
        "planned_kg",
        "actual_kg",
        "deviation_kg",
        "deviation_pct",
    )

    shift: str | None = None
    equipment: str
    planned_kg: float
    actual_kg: float
    deviation_kg: float
    deviation_pct: float

    def compute_natural_key(self) -> str:
        parts = [
            self.reference_date.isoformat(),
            self.equipment.upper(),
            self.curral_code.upper(),
            self.shift.upper() if self.shift else NULL_KEY_PART,
        ]
        return "|".join(parts)

    def measures(self) -> dict[str, Any]:
        return {
            "shift": self.shift,
            "equipment": self.equipment,
            "planned_kg": self.planned_kg,
            "actual_kg": self.actual_kg,
            "deviation_kg": self.deviation_kg,
            "deviation_pct": self.deviation_pct,
        }

    class Config:
        json_schema_extra = {
            "example": {
                "reference_date": "2024-01-15",
                "shift": "MANHA",
                "equipment": "BAHMAN",
                "curral_code": "C001",
                "dieta_name": "Engorda",
                "planned_kg": 1000.0,
                "actual_kg": 950.0,
                "deviation_kg": -50.0,
                "deviation_pct": -5.0
            }
        }


class FeedingTreatmentRow(FactRow):
    """One feeding of a curral by a trateiro at a given time."""

    TABLE: ClassVar[str] = "fact_feeding_treatment"
    SALIENT_FIELDS: ClassVar[tuple[str, ...]] = (
        "curral_id",
        "dieta_id",
        "trateiro_id",
        "fed_at",
        "shift",
        "quantity_kg",
        "head_count",
        "notes",
    )

    feed_time: str
    fed_at: datetime
    shift: str
    trateiro_name: str
    treatment_type: str
    quantity_kg: float
    head_count: int | None = None
    notes: str | None = None

    def compute_natural_key(self) -> str:
        curral = re.sub(r"[^A-Z0-9]", "", self.curral_code.upper())
        trateiro = re.sub(r"[^A-Z0-9\s]", "", self.trateiro_name.upper()).strip()
        trateiro = re.sub(r"\s+", "_", trateiro)
        return "_".join([
            self.reference_date.isoformat(),
            self.feed_time,
            curral,
            trateiro,
            self.treatment_type.upper(),
        ])

    def dimension_codes(self) -> DimensionCodes:
        return DimensionCodes(
            curral_code=self.curral_code,
            dieta_name=self.dieta_name,
            trateiro_name=self.trateiro_name
        )

    def to_record(
        self,
        dimensions: MappedDimensions,
        organization_id: str,
        file_id: str
    ) -> dict[str, Any]:
        record = super().to_record(dimensions, organization_id, file_id)
        record["trateiro_id"] = dimensions.trateiro_id
        return record

    def measures(self) -> dict[str, Any]:
        return {
            "feed_time": self.feed_time,
            "fed_at": self.fed_at,
            "shift": self.shift,
            "treatment_type": self.treatment_type,
            "quantity_kg": self.quantity_kg,
            "head_count": self.head_count,
            "notes": self.notes,
        }
