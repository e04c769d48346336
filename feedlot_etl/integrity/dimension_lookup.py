"""
Store-backed dimension lookup with pending-entry support.

Curral and dieta codes must exist before fact rows can reference them; a miss
creates (or reuses) an open PendingEntry. Trateiros are created on first
sight, so they always resolve.
"""

import threading
from datetime import datetime, timezone
from typing import Literal

from ..core.errors import DuplicateKeyError
from ..core.models.pending_entry import PendingEntry, PendingType
from ..core.models.referential import DIMENSION_TABLES
from ..observability.logger import get_logger
from ..observability.metrics import increment_counter, pending_entries_created_total
from ..warehouse.store import TableStore, eq, new_id, select_one

logger = get_logger(__name__)

PENDING_TABLE = PendingEntry.TABLE

DimensionName = Literal["curral", "dieta", "trateiro"]

# Column holding the natural-language key of each dimension table
KEY_COLUMNS: dict[str, str] = {
    "curral": "code",
    "dieta": "name",
    "trateiro": "name",
}


def normalize_code(dimension: str, value: str) -> str:
    """Canonical form used for storage and lookup."""
    value = " ".join(value.split())
    return value.upper() if dimension == "curral" else value


class StoreDimensionLookup:
    """Dimension lookups and pending-entry lifecycle over a TableStore."""

    def __init__(self, store: TableStore):
        self.store = store
        self._pending_lock = threading.Lock()

    # =======================
    # LOOKUPS
    # =======================

    def _lookup(self, dimension: DimensionName, value: str, organization_id: str) -> str | None:
        row = select_one(
            self.store,
            DIMENSION_TABLES[dimension],
            [
                eq("organization_id", organization_id),
                eq(KEY_COLUMNS[dimension], normalize_code(dimension, value)),
            ]
        )
        return row["id"] if row else None

    def lookup_curral_id(self, code: str, organization_id: str) -> str | None:
        return self._lookup("curral", code, organization_id)

    def lookup_dieta_id(self, name: str | None, organization_id: str) -> str | None:
        if not name or not name.strip():
            return None
        return self._lookup("dieta", name, organization_id)

    def create_dimension(self, dimension: DimensionName, value: str, organization_id: str) -> str:
        """
        Insert a dimension row, returning the existing id if another writer
        created it first.
        """
        key = normalize_code(dimension, value)
        try:
            row = self.store.insert(
                DIMENSION_TABLES[dimension],
                {
                    "id": new_id(),
                    "organization_id": organization_id,
                    KEY_COLUMNS[dimension]: key,
                    "created_at": datetime.now(timezone.utc),
                }
            )
            logger.info(
                f"Created {dimension} dimension",
                extra={"dimension": dimension, "code": key, "organization_id": organization_id}
            )
            return row["id"]
        except DuplicateKeyError:
            existing = self._lookup(dimension, key, organization_id)
            if existing is None:
                raise
            return existing

    def lookup_or_create_trateiro_id(self, name: str, organization_id: str) -> str:
        existing = self._lookup("trateiro", name, organization_id)
        if existing:
            return existing
        return self.create_dimension("trateiro", name, organization_id)

    # =======================
    # PENDING ENTRIES
    # =======================

    def _open_pending(self, pending_type: PendingType, code: str, organization_id: str) -> PendingEntry | None:
        row = select_one(
            self.store,
            PENDING_TABLE,
            [
                eq("organization_id", organization_id),
                eq("type", pending_type),
                eq("code", code),
                eq("status", "pending"),
            ]
        )
        return PendingEntry(**row) if row else None

    def _create_pending(self, pending_type: PendingType, code: str, organization_id: str) -> PendingEntry:
        code = normalize_code(pending_type, code)
        with self._pending_lock:
            existing = self._open_pending(pending_type, code, organization_id)
            if existing:
                return existing

            entry = PendingEntry(
                id=new_id(),
                type=pending_type,
                code=code,
                organization_id=organization_id,
            )
            try:
                row = self.store.insert(PENDING_TABLE, entry.model_dump())
            except DuplicateKeyError:
                # Another process opened the same entry first
                existing = self._open_pending(pending_type, code, organization_id)
                if existing is None:
                    raise
                return existing

        increment_counter(pending_entries_created_total, dimension=pending_type)
        logger.info(
            "Pending dimension entry created",
            extra={"type": pending_type, "code": code, "organization_id": organization_id}
        )
        return PendingEntry(**row)

    def create_pending_curral(self, code: str, organization_id: str) -> PendingEntry:
        return self._create_pending("curral", code, organization_id)

    def create_pending_dieta(self, name: str, organization_id: str) -> PendingEntry:
        return self._create_pending("dieta", name, organization_id)

    def get_pending_entry(self, pending_id: str) -> PendingEntry | None:
        row = select_one(self.store, PENDING_TABLE, [eq("id", pending_id)])
        return PendingEntry(**row) if row else None

    def get_pending_entries(self, organization_id: str, status: str | None = "pending") -> list[PendingEntry]:
        where = [eq("organization_id", organization_id)]
        if status is not None:
            where.append(eq("status", status))
        rows = self.store.select(PENDING_TABLE, where, order_by="created_at")
        return [PendingEntry(**row) for row in rows]

    def resolve_pending_entry(
        self,
        pending_id: str,
        resolved_by: str,
        dimension_id: str | None = None,
        notes: str | None = None
    ) -> bool:
        """
        Close a pending entry by mapping it to a dimension row.

        When ``dimension_id`` is omitted, a dimension row is created from the
        pending code. Fact rows blocked by the entry are loaded by
        reprocessing their source file.

        Returns:
            False if the entry is missing or no longer pending
        """
        entry = self.get_pending_entry(pending_id)
        if entry is None or entry.status != "pending":
            return False

        if dimension_id is None:
            dimension_id = self.create_dimension(entry.type, entry.code, entry.organization_id)

        return self._close(pending_id, "resolved", resolved_by, dimension_id, notes)

    def reject_pending_entry(self, pending_id: str, resolved_by: str, notes: str | None = None) -> bool:
        return self._close(pending_id, "rejected", resolved_by, None, notes)

    def _close(
        self,
        pending_id: str,
        status: str,
        resolved_by: str,
        resolved_value: str | None,
        notes: str | None
    ) -> bool:
        updated = self.store.update(
            PENDING_TABLE,
            {
                "status": status,
                "resolved_value": resolved_value,
                "resolved_by": resolved_by,
                "resolved_at": datetime.now(timezone.utc),
                "notes": notes,
            },
            [eq("id", pending_id), eq("status", "pending")]
        )
        if updated:
            logger.info(
                f"Pending entry {status}",
                extra={"pending_id": pending_id, "resolved_by": resolved_by}
            )
        return bool(updated)
