"""
Dead-letter queue for entities that exhausted their retries.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from ..core.errors import ErrorKind
from ..core.models.dead_letter import DeadLetterEntry, EntityType
from ..observability.logger import get_logger
from ..observability.metrics import dead_letter_enqueued_total, increment_counter
from ..warehouse.store import TableStore, eq, gte, lt, lte, new_id, select_one

logger = get_logger(__name__)

TABLE = DeadLetterEntry.TABLE


class DeadLetterStore:
    """
    Persistence and operator actions for dead-letter entries.

    Entries are never retried automatically: an operator marks them with
    mark_for_retry() and a housekeeping pass reprocesses the marked ones.
    Resolution is a conditional update on ``resolved = false`` so concurrent
    operators cannot resolve the same entry twice.
    """

    def __init__(self, store: TableStore):
        self.store = store

    def enqueue(
        self,
        organization_id: str,
        entity_type: EntityType,
        entity_id: str,
        original_error: str,
        error_type: ErrorKind,
        total_retries: int,
        first_failure_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        now = datetime.now(timezone.utc)
        entry = DeadLetterEntry(
            id=new_id(),
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            original_error=original_error,
            error_type=error_type,
            total_retries=total_retries,
            first_failure_at=first_failure_at or now,
            last_retry_at=now,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        row = self.store.insert(TABLE, entry.model_dump())
        increment_counter(
            dead_letter_enqueued_total,
            entity_type=entity_type,
            error_kind=ErrorKind(error_type).value
        )
        logger.warning(
            "Entity sent to dead letter queue",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "organization_id": organization_id,
                "error_kind": ErrorKind(error_type).value,
                "total_retries": total_retries,
            }
        )
        return DeadLetterEntry(**row)

    def get_entry(self, entry_id: str) -> DeadLetterEntry | None:
        row = select_one(self.store, TABLE, [eq("id", entry_id)])
        return DeadLetterEntry(**row) if row else None

    def list_entries(
        self,
        organization_id: str,
        resolved: bool | None = False,
        limit: int = 100
    ) -> list[DeadLetterEntry]:
        """
        Entries for an organization, newest first.

        Args:
            resolved: Filter on resolution status; None returns both
            limit: Maximum number of entries
        """
        where = [eq("organization_id", organization_id)]
        if resolved is not None:
            where.append(eq("resolved", resolved))
        rows = self.store.select(TABLE, where, order_by="created_at", descending=True, limit=limit)
        return [DeadLetterEntry(**row) for row in rows]

    def resolve(self, entry_id: str, resolved_by: str, notes: str | None = None) -> bool:
        """
        Mark an entry resolved.

        Returns:
            False if the entry does not exist or was already resolved
        """
        now = datetime.now(timezone.utc)
        updated = self.store.update(
            TABLE,
            {
                "resolved": True,
                "resolved_at": now,
                "resolved_by": resolved_by,
                "resolution_notes": notes,
                "updated_at": now,
            },
            [eq("id", entry_id), eq("resolved", False)]
        )
        if updated:
            logger.info(
                "Dead letter entry resolved",
                extra={"entry_id": entry_id, "resolved_by": resolved_by}
            )
        else:
            logger.warning(
                "Dead letter entry not resolved: missing or already resolved",
                extra={"entry_id": entry_id, "resolved_by": resolved_by}
            )
        return bool(updated)

    def reclassify(self, entry_id: str, error_kind: ErrorKind, operator: str) -> bool:
        """Record an operator override of the heuristic classification."""
        kind = ErrorKind(error_kind)
        entry = self.get_entry(entry_id)
        if entry is None:
            return False
        metadata = dict(entry.metadata)
        metadata["reclassified_by"] = operator
        metadata["reclassified_from"] = entry.effective_error_type.value
        updated = self.store.update(
            TABLE,
            {
                "error_type_override": kind,
                "metadata": metadata,
                "updated_at": datetime.now(timezone.utc),
            },
            [eq("id", entry_id)]
        )
        logger.info(
            "Dead letter entry reclassified",
            extra={"entry_id": entry_id, "error_kind": kind.value, "operator": operator}
        )
        return bool(updated)

    def count_unresolved(self, organization_id: str) -> int:
        return self.store.count(
            TABLE, [eq("organization_id", organization_id), eq("resolved", False)]
        )

    def count_created_since(self, organization_id: str, since: datetime) -> int:
        return self.store.count(
            TABLE, [eq("organization_id", organization_id), gte("created_at", since)]
        )

    def errors_by_kind(self, organization_id: str) -> dict[str, int]:
        """Unresolved entries per ErrorKind, using operator overrides when present."""
        rows = self.store.select(
            TABLE, [eq("organization_id", organization_id), eq("resolved", False)]
        )
        counts = Counter(
            ErrorKind(row.get("error_type_override") or row["error_type"]).value
            for row in rows
        )
        return {kind.value: counts.get(kind.value, 0) for kind in ErrorKind}

    def has_unresolved(self, entity_type: EntityType, entity_id: str) -> bool:
        return self.store.count(
            TABLE,
            [eq("entity_type", entity_type), eq("entity_id", entity_id), eq("resolved", False)]
        ) > 0

    # =======================
    # HOUSEKEEPING
    # =======================

    def mark_for_retry(self, entry_id: str, operator: str, retry_after: datetime | None = None) -> bool:
        """
        Ask for the entry's entity to be reprocessed at ``retry_after`` (now by default).

        Returns:
            False if the entry does not exist or is already resolved
        """
        now = datetime.now(timezone.utc)
        entry = self.get_entry(entry_id)
        if entry is None or entry.resolved:
            logger.warning(
                "Dead letter entry not marked: missing or already resolved",
                extra={"entry_id": entry_id, "operator": operator}
            )
            return False
        metadata = dict(entry.metadata)
        metadata["marked_by"] = operator
        updated = self.store.update(
            TABLE,
            {
                "marked_for_retry": True,
                "retry_after": retry_after or now,
                "metadata": metadata,
                "updated_at": now,
            },
            [eq("id", entry_id), eq("resolved", False)]
        )
        logger.info(
            "Dead letter entry marked for retry",
            extra={"entry_id": entry_id, "entity_id": entry.entity_id, "operator": operator}
        )
        return bool(updated)

    def list_marked(self, organization_id: str, now: datetime | None = None) -> list[DeadLetterEntry]:
        """Unresolved entries marked for retry whose retry time has come, oldest first."""
        rows = self.store.select(
            TABLE,
            [
                eq("organization_id", organization_id),
                eq("resolved", False),
                eq("marked_for_retry", True),
                lte("retry_after", now or datetime.now(timezone.utc)),
            ],
            order_by="retry_after"
        )
        return [DeadLetterEntry(**row) for row in rows]

    def cleanup_resolved(self, organization_id: str, older_than_days: int = 30, dry_run: bool = False) -> int:
        """
        Delete resolved entries created more than ``older_than_days`` ago.

        Unresolved entries are kept whatever their age.

        Returns:
            Number of entries deleted (or that would be, with ``dry_run``)
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        where = [eq("organization_id", organization_id), eq("resolved", True), lt("created_at", cutoff)]
        if dry_run:
            return self.store.count(TABLE, where)
        deleted = self.store.delete(TABLE, where)
        logger.info(
            "Old dead letter entries deleted",
            extra={"organization_id": organization_id, "deleted": deleted, "older_than_days": older_than_days}
        )
        return deleted
