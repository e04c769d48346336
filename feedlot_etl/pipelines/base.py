"""
Base validator interface for pipeline validators.

A validator turns parsed CSV rows (dicts of strings) into validated FactRows.
Each raw row is checked against a pydantic schema of the pipeline; failures
become RowIssues and the row is dropped, so one bad row never fails a file.
"""

import re
import unicodedata
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Callable, ClassVar

from pydantic import BaseModel, Field, ValidationError

from ..core.models.fact_row import FactRow
from ..observability.logger import get_logger

logger = get_logger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")


class RowIssue(BaseModel):
    """A problem found in one source row."""

    row_number: int
    field: str
    code: str
    message: str
    value: Any = None


class ValidationOutcome(BaseModel):
    """
    Result of validating a whole file.

    Attributes:
        total_rows: Rows handed to the validator
        valid_rows: Rows that passed, in source order
        errors: Issues that rejected a row
        warnings: Non-blocking issues (the row is kept)
    """

    total_rows: int = 0
    valid_rows: list[FactRow] = Field(default_factory=list)
    errors: list[RowIssue] = Field(default_factory=list)
    warnings: list[RowIssue] = Field(default_factory=list)

    @property
    def invalid_row_count(self) -> int:
        return len({issue.row_number for issue in self.errors})


def normalize_header(header: str) -> str:
    header = strip_accents(str(header)).strip().lower()
    return re.sub(r"[^a-z0-9]+", "_", header).strip("_")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def parse_date(value: Any) -> date:
    """Accept ISO (YYYY-MM-DD) and Brazilian (DD/MM/YYYY) dates."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # Spreadsheet exports sometimes append a time part
    text = text.split("T")[0].split(" ")[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError("date must be YYYY-MM-DD or DD/MM/YYYY")


def parse_number(value: Any) -> float:
    """Parse a number, accepting a decimal comma (``1234,5``)."""
    if isinstance(value, bool):
        raise ValueError("must be numeric")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(" ", "")
    if "," in text and "." in text:
        # 1.234,5 -> 1234.5
        text = text.replace(".", "").replace(",", ".")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        raise ValueError("must be numeric") from None


class BaseValidator(ABC):
    """
    Abstract base class for pipeline validators.

    Subclasses define HEADER_ALIASES (canonical field -> accepted headers),
    FIELD_ERROR_CODES and validate_row().
    """

    HEADER_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {}
    FIELD_ERROR_CODES: ClassVar[dict[str, str]] = {}

    def __init__(self, clock: Callable[[], datetime] | None = None):
        """
        Args:
            clock: Returns "now"; date checks are relative to it
        """
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._aliases = {
            normalize_header(alias): canonical
            for canonical, aliases in self.HEADER_ALIASES.items()
            for alias in (canonical, *aliases)
        }

    @property
    @abstractmethod
    def pipeline(self) -> str:
        """Return the pipeline identifier."""
        pass

    def map_headers(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Rename source columns to canonical field names; unknown columns are dropped."""
        mapped: dict[str, Any] = {}
        for header, value in raw.items():
            canonical = self._aliases.get(normalize_header(header))
            if canonical and mapped.get(canonical) is None:
                mapped[canonical] = blank_to_none(value)
        return mapped

    @abstractmethod
    def validate_row(self, data: dict[str, Any], row_number: int) -> tuple[FactRow | None, list[RowIssue], list[RowIssue]]:
        """
        Validate one header-mapped row.

        Returns:
            (row or None, errors, warnings)
        """
        pass

    def validate(self, rows: list[dict[str, Any]]) -> ValidationOutcome:
        outcome = ValidationOutcome(total_rows=len(rows))
        # Line 1 of the source file is the header
        for row_number, raw in enumerate(rows, start=2):
            row, errors, warnings = self.validate_row(self.map_headers(raw), row_number)
            outcome.errors.extend(errors)
            outcome.warnings.extend(warnings)
            if row is not None and not errors:
                outcome.valid_rows.append(row)

        logger.info(
            "Validation finished",
            extra={
                "pipeline": self.pipeline,
                "total_rows": outcome.total_rows,
                "valid_rows": len(outcome.valid_rows),
                "errors": len(outcome.errors),
                "warnings": len(outcome.warnings),
            }
        )
        return outcome

    def issues_from_error(self, error: ValidationError, data: dict[str, Any], row_number: int) -> list[RowIssue]:
        """Convert a pydantic ValidationError into RowIssues."""
        issues = []
        for detail in error.errors():
            field = str(detail["loc"][0]) if detail["loc"] else "row"
            if detail["type"] == "missing" or (detail["loc"] and data.get(field) is None):
                code = "MISSING_REQUIRED"
                message = f"{field} is required"
            else:
                code = self.FIELD_ERROR_CODES.get(field, "VALIDATION_ERROR")
                message = detail["msg"].removeprefix("Value error, ")
            issues.append(RowIssue(
                row_number=row_number,
                field=field,
                code=code,
                message=message,
                value=data.get(field),
            ))
        return issues
