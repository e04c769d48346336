"""
Dimension resolver: maps a fact row's codes to surrogate ids.

Lookup misses never fail a row. A missing curral or dieta opens a
PendingEntry and leaves the id empty, which defers the row until the entry is
resolved and the file reprocessed. Only an infrastructure failure of a lookup
marks the result invalid.
"""

import re
from typing import Any, Iterable

from ..core.classifier import error_message
from ..core.models.referential import (
    DimensionCodes,
    MappedDimensions,
    ReferentialCheckResult,
    ReferentialIssue,
    ReferentialWarning,
)
from ..observability.logger import get_logger
from .dimension_lookup import StoreDimensionLookup

logger = get_logger(__name__)

SUSPICIOUS_CURRAL_PATTERNS = [
    re.compile(r"^test", re.IGNORECASE),
    re.compile(r"^tmp", re.IGNORECASE),
    re.compile(r"^temp", re.IGNORECASE),
    re.compile(r"\d{10,}"),
    re.compile(r"[^A-Za-z0-9\-]"),
]

DUPLICATE_TRATEIRO_PATTERNS = [
    re.compile(r"\d+$"),
    re.compile(r"\(\d+\)"),
    re.compile(r"\s+jr\.?$", re.IGNORECASE),
    re.compile(r"\s+sr\.?$", re.IGNORECASE),
]

MAX_TRATEIRO_NAME_LENGTH = 100


def is_suspicious_curral_code(code: str) -> bool:
    return any(pattern.search(code) for pattern in SUSPICIOUS_CURRAL_PATTERNS)


def is_potentially_duplicate_trateiro(name: str) -> bool:
    return any(pattern.search(name) for pattern in DUPLICATE_TRATEIRO_PATTERNS)


class DimensionResolver:
    """Resolves dimension codes through a StoreDimensionLookup."""

    def __init__(self, lookup: StoreDimensionLookup):
        self.lookup = lookup

    def resolve(self, codes: DimensionCodes, organization_id: str) -> ReferentialCheckResult:
        """
        Resolve the curral, dieta and (when present) trateiro of one row.

        Args:
            codes: Natural-language codes of the row
            organization_id: Organization whose dimensions are searched

        Returns:
            ReferentialCheckResult with mapped ids, pending entries, errors
            and heuristic warnings
        """
        mapped = MappedDimensions(organization_id=organization_id)
        pending = []
        errors: list[ReferentialIssue] = []
        warnings: list[ReferentialWarning] = []

        # Curral (required)
        try:
            curral_id = self.lookup.lookup_curral_id(codes.curral_code, organization_id)
            if curral_id:
                mapped.curral_id = curral_id
            else:
                pending.append(self.lookup.create_pending_curral(codes.curral_code, organization_id))
                errors.append(ReferentialIssue(
                    field="curral_code",
                    code="CURRAL_NOT_FOUND",
                    message=f"Curral '{codes.curral_code}' not found in dimensions",
                    original_value=codes.curral_code,
                    severity="warning",
                ))
                warnings.append(ReferentialWarning(
                    field="curral_code",
                    message=f"Curral '{codes.curral_code}' registered as a pending entry",
                    recommendation="Register the curral or resolve the pending entry",
                ))
        except Exception as e:
            errors.append(self._lookup_error("curral_code", "CURRAL_LOOKUP_ERROR", codes.curral_code, e))

        # Dieta (optional)
        if codes.dieta_name and codes.dieta_name.strip():
            try:
                dieta_id = self.lookup.lookup_dieta_id(codes.dieta_name, organization_id)
                if dieta_id:
                    mapped.dieta_id = dieta_id
                else:
                    pending.append(self.lookup.create_pending_dieta(codes.dieta_name, organization_id))
                    errors.append(ReferentialIssue(
                        field="dieta_name",
                        code="DIETA_NOT_FOUND",
                        message=f"Dieta '{codes.dieta_name}' not found in dimensions",
                        original_value=codes.dieta_name,
                        severity="warning",
                    ))
                    warnings.append(ReferentialWarning(
                        field="dieta_name",
                        message=f"Dieta '{codes.dieta_name}' registered as a pending entry",
                        recommendation="Register the dieta or resolve the pending entry",
                    ))
            except Exception as e:
                errors.append(self._lookup_error("dieta_name", "DIETA_LOOKUP_ERROR", codes.dieta_name, e))

        # Trateiro (auto-created, so never pending)
        if codes.trateiro_name is not None:
            try:
                mapped.trateiro_id = self.lookup.lookup_or_create_trateiro_id(
                    codes.trateiro_name, organization_id
                )
            except Exception as e:
                errors.append(
                    self._lookup_error("trateiro_name", "TRATEIRO_LOOKUP_ERROR", codes.trateiro_name, e)
                )

        warnings.extend(self._heuristic_warnings(codes))

        return ReferentialCheckResult(
            is_valid=not any(issue.severity == "error" for issue in errors),
            mapped_dimensions=mapped,
            pending_entries=pending,
            errors=errors,
            warnings=warnings,
        )

    @staticmethod
    def _lookup_error(field: str, code: str, value: str, error: Exception) -> ReferentialIssue:
        logger.error(
            "Dimension lookup failed",
            extra={"field": field, "value": value, "error": error_message(error)}
        )
        return ReferentialIssue(
            field=field,
            code=code,
            message=f"Lookup failed: {error_message(error)}",
            original_value=value,
            severity="error",
        )

    @staticmethod
    def _heuristic_warnings(codes: DimensionCodes) -> list[ReferentialWarning]:
        warnings = []
        if is_suspicious_curral_code(codes.curral_code):
            warnings.append(ReferentialWarning(
                field="curral_code",
                message="Curral code has a suspicious format",
                recommendation="Check that the code follows the organization's pattern",
            ))

        name = codes.trateiro_name
        if name is not None:
            if len(name) > MAX_TRATEIRO_NAME_LENGTH:
                warnings.append(ReferentialWarning(
                    field="trateiro_name",
                    message="Trateiro name is very long",
                    recommendation="Use a shorter name or an abbreviation",
                ))
            if is_potentially_duplicate_trateiro(name):
                warnings.append(ReferentialWarning(
                    field="trateiro_name",
                    message="Trateiro name may be a duplicate",
                    recommendation="Check for registered variations of the same name",
                ))
        return warnings

    def resolve_batch(
        self,
        records: Iterable[DimensionCodes],
        organization_id: str
    ) -> dict[str, Any]:
        """
        Resolve many rows and summarize.

        Returns:
            Dictionary with ``results`` and a ``summary`` of total_records,
            valid_records, records_with_pending_entries and
            total_pending_entries (distinct entries).
        """
        results = [self.resolve(codes, organization_id) for codes in records]
        pending_ids = {entry.id for result in results for entry in result.pending_entries}
        return {
            "results": results,
            "summary": {
                "total_records": len(results),
                "valid_records": sum(1 for r in results if r.is_valid),
                "records_with_pending_entries": sum(1 for r in results if r.is_pending),
                "total_pending_entries": len(pending_ids),
            },
        }

    def get_report(self, organization_id: str) -> dict[str, Any]:
        """Open pending entries of an organization with totals by type."""
        entries = self.lookup.get_pending_entries(organization_id)
        return {
            "pending_entries": entries,
            "summary": {
                "total_pending": len(entries),
                "pending_currals": sum(1 for e in entries if e.type == "curral"),
                "pending_dietas": sum(1 for e in entries if e.type == "dieta"),
                "oldest_pending": min((e.created_at for e in entries), default=None),
            },
        }
