"""
Feeding treatment pipeline ("trato por curral").

One row per feeding: date, time, curral, trateiro (handler) and treatment
type, with the quantity fed.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Callable

from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator

from ..core.models.fact_row import FeedingTreatmentRow
from .base import BaseValidator, RowIssue, parse_date, parse_number, strip_accents

VALID_SHIFTS = ("MANHA", "TARDE", "NOITE")
VALID_TREATMENT_TYPES = ("RACAO", "VOLUMOSO", "MINERAL", "MEDICAMENTO")
DEFAULT_TREATMENT_TYPE = "RACAO"

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


class FeedingTreatmentValidationConfig(BaseModel):
    max_quantity_kg: float = 10000.0
    excessive_quantity_kg: float = 5000.0
    low_quantity_kg: float = 10.0
    earliest_hour: int = 5
    latest_hour: int = 22
    max_age_days: int = 365


DEFAULT_CONFIG = FeedingTreatmentValidationConfig()


def expected_shift(hour: int) -> str:
    if 5 <= hour < 12:
        return "MANHA"
    if 12 <= hour < 18:
        return "TARDE"
    return "NOITE"


def _canonical(value: str) -> str:
    return strip_accents(value).strip().upper()


class FeedingTreatmentRaw(BaseModel):
    """Schema of a header-mapped source row."""

    reference_date: date
    feed_time: str
    shift: str
    curral: str
    trateiro: str
    dieta: str | None = None
    treatment_type: str = DEFAULT_TREATMENT_TYPE
    quantity_kg: float
    head_count: int | None = None
    notes: str | None = None

    @field_validator("reference_date", mode="before")
    @classmethod
    def parse_reference_date(cls, v):
        return None if v is None else parse_date(v)

    @field_validator("reference_date")
    @classmethod
    def check_not_future(cls, v: date, info: ValidationInfo):
        today = (info.context or {}).get("today")
        if today is not None and v > today:
            raise ValueError("reference date cannot be in the future")
        return v

    @field_validator("feed_time", mode="before")
    @classmethod
    def parse_feed_time(cls, v):
        if v is None:
            return None
        match = TIME_PATTERN.match(str(v).strip()[:5])
        if not match:
            raise ValueError("time must be HH:MM")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("shift")
    @classmethod
    def check_shift(cls, v: str):
        shift = _canonical(v)
        if shift not in VALID_SHIFTS:
            raise ValueError(f"shift must be one of: {', '.join(VALID_SHIFTS)}")
        return shift

    @field_validator("curral", mode="before")
    @classmethod
    def curral_text(cls, v):
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        return None if v is None else str(v).strip().upper()

    @field_validator("trateiro", "dieta", "notes")
    @classmethod
    def strip_text(cls, v):
        if v is None:
            return None
        return " ".join(v.split()) or None

    @field_validator("treatment_type", mode="before")
    @classmethod
    def default_treatment_type(cls, v):
        return DEFAULT_TREATMENT_TYPE if v is None else v

    @field_validator("treatment_type")
    @classmethod
    def check_treatment_type(cls, v: str):
        treatment_type = _canonical(v)
        if treatment_type not in VALID_TREATMENT_TYPES:
            raise ValueError(f"treatment type must be one of: {', '.join(VALID_TREATMENT_TYPES)}")
        return treatment_type

    @field_validator("quantity_kg", mode="before")
    @classmethod
    def parse_quantity(cls, v):
        return None if v is None else parse_number(v)

    @field_validator("quantity_kg")
    @classmethod
    def check_quantity(cls, v: float, info: ValidationInfo):
        config = (info.context or {}).get("config", DEFAULT_CONFIG)
        if v <= 0:
            raise ValueError("quantity must be positive")
        if v > config.max_quantity_kg:
            raise ValueError(f"quantity too high (maximum {config.max_quantity_kg:.0f}kg)")
        return v

    @field_validator("head_count", mode="before")
    @classmethod
    def parse_head_count(cls, v):
        if v is None:
            return None
        number = parse_number(v)
        if not number.is_integer() or number <= 0:
            raise ValueError("head count must be a positive integer")
        return int(number)


class FeedingTreatmentValidator(BaseValidator):
    HEADER_ALIASES = {
        "reference_date": ("data", "data_ref", "date"),
        "feed_time": ("hora", "horario", "time"),
        "shift": ("turno",),
        "curral": ("curral_codigo", "codigo_curral"),
        "trateiro": ("tratador", "operador"),
        "dieta": ("dieta_nome", "diet"),
        "treatment_type": ("tipo_trato", "tipo"),
        "quantity_kg": ("quantidade_kg", "kg", "quantidade"),
        "head_count": ("quantidade_cabecas", "cabecas"),
        "notes": ("observacoes", "obs"),
    }
    FIELD_ERROR_CODES = {
        "reference_date": "INVALID_DATE",
        "feed_time": "INVALID_TIME",
        "shift": "INVALID_SHIFT",
        "curral": "INVALID_CURRAL",
        "trateiro": "INVALID_TRATEIRO",
        "treatment_type": "INVALID_TREATMENT_TYPE",
        "quantity_kg": "INVALID_QUANTITY",
        "head_count": "INVALID_HEAD_COUNT",
    }

    def __init__(
        self,
        config: FeedingTreatmentValidationConfig | None = None,
        clock: Callable[[], datetime] | None = None
    ):
        super().__init__(clock)
        self.config = config or DEFAULT_CONFIG

    @property
    def pipeline(self) -> str:
        return "feeding_treatment"

    def validate_row(self, data: dict[str, Any], row_number: int):
        errors: list[RowIssue] = []
        warnings: list[RowIssue] = []
        now = self.clock()

        def issue(field, code, message, value=None):
            return RowIssue(row_number=row_number, field=field, code=code, message=message, value=value)

        try:
            raw = FeedingTreatmentRaw.model_validate(
                data, context={"config": self.config, "today": now.date()}
            )
        except ValidationError as e:
            return None, self.issues_from_error(e, data, row_number), warnings

        hour, minute = (int(part) for part in raw.feed_time.split(":"))
        fed_at = datetime.combine(raw.reference_date, datetime.min.time()).replace(hour=hour, minute=minute)

        # Business rules: these reject the row
        shift_expected = expected_shift(hour)
        if raw.shift != shift_expected:
            errors.append(issue(
                "shift", "INCONSISTENT_SHIFT",
                f"shift inconsistent with time: expected {shift_expected}, got {raw.shift}", raw.shift
            ))
        if raw.quantity_kg > self.config.excessive_quantity_kg:
            errors.append(issue(
                "quantity_kg", "EXCESSIVE_QUANTITY",
                "quantity too high for a single feeding", raw.quantity_kg
            ))
        if fed_at > now.replace(tzinfo=None):
            errors.append(issue(
                "fed_at", "FUTURE_DATETIME", "feeding time cannot be in the future", fed_at.isoformat()
            ))
        if raw.reference_date < now.date() - timedelta(days=self.config.max_age_days):
            errors.append(issue(
                "reference_date", "OLD_DATE",
                f"reference date older than {self.config.max_age_days} days", raw.reference_date.isoformat()
            ))

        # Business rules: these only warn
        if hour < self.config.earliest_hour or hour > self.config.latest_hour:
            warnings.append(issue(
                "feed_time", "SUSPICIOUS_TIME",
                f"feeding outside normal hours ({self.config.earliest_hour:02d}:00-"
                f"{self.config.latest_hour:02d}:00)", raw.feed_time
            ))
        if raw.quantity_kg < self.config.low_quantity_kg:
            warnings.append(issue(
                "quantity_kg", "LOW_QUANTITY",
                "very low quantity (possible typing error)", raw.quantity_kg
            ))

        if errors:
            return None, errors, warnings

        row = FeedingTreatmentRow(
            reference_date=raw.reference_date,
            feed_time=raw.feed_time,
            fed_at=fed_at,
            shift=raw.shift,
            curral_code=raw.curral,
            trateiro_name=raw.trateiro,
            dieta_name=raw.dieta,
            treatment_type=raw.treatment_type,
            quantity_kg=raw.quantity_kg,
            head_count=raw.head_count,
            notes=raw.notes,
        )
        return row, errors, warnings
