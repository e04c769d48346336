"""
Feed deviation pipeline ("desvio de carregamento").

One row per (date, equipment, curral, shift) with the planned and actual kg
loaded; deviation in kg and percent is derived here.
"""

from datetime import date, datetime
from typing import Any, Callable

from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator

from ..core.models.fact_row import FeedDeviationRow
from .base import BaseValidator, RowIssue, parse_date, parse_number, strip_accents

VALID_SHIFTS = ("MANHA", "TARDE", "NOITE", "MADRUGADA")


class FeedDeviationValidationConfig(BaseModel):
    allow_future_dates: bool = False
    max_days_in_future: int = 1
    min_weight_kg: float = 0.1
    max_weight_kg: float = 50000.0
    allowed_equipment: tuple[str, ...] = ("BAHMAN", "SILOKING")
    extreme_deviation_pct: float = 50.0
    very_small_weight_kg: float = 1.0


DEFAULT_CONFIG = FeedDeviationValidationConfig()


def _code_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


class FeedDeviationRaw(BaseModel):
    """Schema of a header-mapped source row."""

    reference_date: date
    equipment: str
    curral: str | None = None
    wagon: str | None = None
    shift: str | None = None
    dieta: str | None = None
    planned_kg: float
    actual_kg: float

    @field_validator("reference_date", mode="before")
    @classmethod
    def parse_reference_date(cls, v):
        return None if v is None else parse_date(v)

    @field_validator("curral", "wagon", "equipment", "shift", "dieta", mode="before")
    @classmethod
    def to_text(cls, v):
        return None if v is None else _code_text(v)

    @field_validator("equipment")
    @classmethod
    def check_equipment(cls, v: str, info: ValidationInfo):
        config = (info.context or {}).get("config", DEFAULT_CONFIG)
        equipment = v.upper()
        if equipment not in config.allowed_equipment:
            raise ValueError(f"equipment must be one of: {', '.join(config.allowed_equipment)}")
        return equipment

    @field_validator("planned_kg", "actual_kg", mode="before")
    @classmethod
    def parse_weight(cls, v):
        return None if v is None else parse_number(v)

    @field_validator("planned_kg", "actual_kg")
    @classmethod
    def check_weight(cls, v: float, info: ValidationInfo):
        config = (info.context or {}).get("config", DEFAULT_CONFIG)
        if v < config.min_weight_kg:
            raise ValueError(f"weight must be at least {config.min_weight_kg}kg")
        if v > config.max_weight_kg:
            raise ValueError(f"weight must be at most {config.max_weight_kg}kg")
        return v


class FeedDeviationValidator(BaseValidator):
    HEADER_ALIASES = {
        "reference_date": ("data", "data_ref", "date"),
        "equipment": ("equipamento",),
        "curral": ("curral_codigo", "codigo_curral"),
        "wagon": ("vagao",),
        "shift": ("turno",),
        "dieta": ("dieta_nome", "diet"),
        "planned_kg": ("kg_planejado", "previsto_kg"),
        "actual_kg": ("kg_real", "realizado_kg"),
    }
    FIELD_ERROR_CODES = {
        "reference_date": "INVALID_DATE",
        "equipment": "INVALID_EQUIPMENT",
        "planned_kg": "INVALID_WEIGHT",
        "actual_kg": "INVALID_WEIGHT",
        "curral": "INVALID_CURRAL",
        "wagon": "INVALID_CURRAL",
    }

    def __init__(
        self,
        config: FeedDeviationValidationConfig | None = None,
        clock: Callable[[], datetime] | None = None
    ):
        super().__init__(clock)
        self.config = config or DEFAULT_CONFIG

    @property
    def pipeline(self) -> str:
        return "feed_deviation"

    def validate_row(self, data, row_number):
        errors: list[RowIssue] = []
        warnings: list[RowIssue] = []

        def issue(field, code, message, value=None):
            return RowIssue(row_number=row_number, field=field, code=code, message=message, value=value)

        if data.get("curral") is None and data.get("wagon") is None:
            errors.append(issue("curral", "MISSING_REQUIRED", "curral or wagon code is required"))

        try:
            raw = FeedDeviationRaw.model_validate(data, context={"config": self.config})
        except ValidationError as e:
            errors.extend(self.issues_from_error(e, data, row_number))
            return None, errors, warnings
        if errors:
            return None, errors, warnings

        today = self.clock().date()
        days_ahead = (raw.reference_date - today).days
        if days_ahead > 0 and not self.config.allow_future_dates:
            if days_ahead > self.config.max_days_in_future:
                errors.append(issue(
                    "reference_date", "FUTURE_DATE",
                    f"date cannot be {days_ahead} days in the future", data.get("reference_date")
                ))
                return None, errors, warnings
            warnings.append(issue(
                "reference_date", "FUTURE_DATE_WARNING",
                f"date is {days_ahead} day(s) in the future", data.get("reference_date")
            ))

        curral_code = raw.curral
        if curral_code is None:
            curral_code = raw.wagon
            warnings.append(issue(
                "curral", "USING_WAGON_AS_CURRAL", "using wagon code as curral code", raw.wagon
            ))

        shift = None
        if raw.shift:
            candidate = strip_accents(raw.shift).upper()
            if candidate in VALID_SHIFTS:
                shift = candidate
            else:
                warnings.append(issue(
                    "shift", "INVALID_SHIFT",
                    f"shift must be one of: {', '.join(VALID_SHIFTS)}", raw.shift
                ))

        deviation_kg = raw.actual_kg - raw.planned_kg
        deviation_pct = (deviation_kg / raw.planned_kg) * 100 if raw.planned_kg > 0 else 0.0

        row = FeedDeviationRow(
            reference_date=raw.reference_date,
            shift=shift,
            equipment=raw.equipment,
            curral_code=curral_code.upper(),
            dieta_name=raw.dieta,
            planned_kg=raw.planned_kg,
            actual_kg=raw.actual_kg,
            deviation_kg=round(deviation_kg, 2),
            deviation_pct=round(deviation_pct, 2),
        )

        if abs(row.deviation_pct) > self.config.extreme_deviation_pct:
            warnings.append(issue(
                "deviation_pct", "EXTREME_DEVIATION",
                f"very high deviation: {row.deviation_pct:.1f}%", row.deviation_pct
            ))
        if min(row.planned_kg, row.actual_kg) < self.config.very_small_weight_kg:
            warnings.append(issue(
                "weights", "VERY_SMALL_WEIGHT",
                f"very small weight: planned={row.planned_kg}kg, actual={row.actual_kg}kg"
            ))

        return row, errors, warnings
