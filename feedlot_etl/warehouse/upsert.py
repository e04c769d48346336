"""
Idempotent upsert of fact rows keyed by (organization_id, natural_key).

Re-applying the same file converges to the same stored state: unchanged rows
are skipped, changed rows are updated in place and new rows are inserted.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..core.classifier import error_message
from ..core.errors import DuplicateKeyError
from ..core.models.fact_row import FactRow
from ..core.models.referential import ReferentialCheckResult
from ..observability.logger import get_logger
from ..observability.metrics import increment_counter, upsert_actions_total
from .store import TableStore, eq, new_id, select_one

logger = get_logger(__name__)

SUB_BATCH_SIZE = 100
FLOAT_PRECISION = 6

UpsertAction = Literal["inserted", "updated", "skipped", "pending"]


class ResolvedRow(BaseModel):
    """A validated fact row together with the result of resolving its dimensions."""

    row: FactRow
    resolution: ReferentialCheckResult


class UpsertResult(BaseModel):
    action: UpsertAction
    record_id: str | None = None
    pending_entries: list[str] = Field(default_factory=list)
    reason: str | None = None


class UpsertBatchResult(BaseModel):
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    pending: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)

    def add(self, result: UpsertResult) -> None:
        self.total_processed += 1
        setattr(self, result.action, getattr(self, result.action) + 1)


def _comparable(value: Any) -> Any:
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float):
        return round(value, FLOAT_PRECISION)
    return value


def changed_fields(existing: dict[str, Any], record: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    """Salient fields whose stored value differs from the incoming one."""
    return [
        field for field in fields
        if _comparable(existing.get(field)) != _comparable(record.get(field))
    ]


class UpsertEngine:
    """
    Writes resolved fact rows to their fact table.

    Rows blocked by pending dimension entries are not written. Provenance
    (``source_file_id``) is refreshed on update but never counts as a change.
    """

    def __init__(self, store: TableStore):
        self.store = store

    def upsert(self, resolved: ResolvedRow, organization_id: str, file_id: str) -> UpsertResult:
        """
        Insert, update or skip one row.

        Args:
            resolved: Validated row and its dimension resolution
            organization_id: Owning organization
            file_id: Source file, stored as provenance

        Returns:
            UpsertResult with the action taken
        """
        row = resolved.row
        table = row.TABLE

        if resolved.resolution.pending_entries:
            pending_ids = [entry.id for entry in resolved.resolution.pending_entries]
            increment_counter(upsert_actions_total, table=table, action="pending")
            return UpsertResult(
                action="pending",
                pending_entries=pending_ids,
                reason=f"Pending resolution for {len(pending_ids)} dimension(s)",
            )

        record = row.to_record(resolved.resolution.mapped_dimensions, organization_id, file_id)
        key = [eq("organization_id", organization_id), eq("natural_key", row.natural_key)]

        existing = select_one(self.store, table, key)
        if existing is None:
            now = datetime.now(timezone.utc)
            try:
                inserted = self.store.insert(
                    table, {"id": new_id(), **record, "created_at": now, "updated_at": now}
                )
                increment_counter(upsert_actions_total, table=table, action="inserted")
                return UpsertResult(action="inserted", record_id=inserted["id"])
            except DuplicateKeyError:
                # Lost an insert race; the winner's row is now present
                existing = select_one(self.store, table, key)
                if existing is None:
                    raise
                logger.debug(
                    "Concurrent insert detected, comparing with stored row",
                    extra={"table": table, "natural_key": row.natural_key}
                )

        return self._update_if_changed(table, existing, record, row)

    def _update_if_changed(
        self,
        table: str,
        existing: dict[str, Any],
        record: dict[str, Any],
        row: FactRow
    ) -> UpsertResult:
        changes = changed_fields(existing, record, row.SALIENT_FIELDS)
        if not changes:
            increment_counter(upsert_actions_total, table=table, action="skipped")
            return UpsertResult(action="skipped", record_id=existing["id"], reason="No changes detected")

        values = {
            column: value for column, value in record.items()
            if column not in ("organization_id", "natural_key")
        }
        values["updated_at"] = datetime.now(timezone.utc)
        self.store.update(table, values, [eq("id", existing["id"])])
        increment_counter(upsert_actions_total, table=table, action="updated")
        logger.debug(
            "Fact row updated",
            extra={"table": table, "natural_key": row.natural_key, "changed_fields": changes}
        )
        return UpsertResult(
            action="updated",
            record_id=existing["id"],
            reason=f"Changed: {', '.join(changes)}",
        )

    def upsert_batch(
        self,
        rows: list[ResolvedRow],
        organization_id: str,
        file_id: str
    ) -> UpsertBatchResult:
        """
        Upsert many rows in sub-batches of SUB_BATCH_SIZE.

        Rows are applied in input order, so rows sharing a natural key are
        serialized and the last one wins. A failing row is recorded in
        ``errors`` and the batch continues.
        """
        result = UpsertBatchResult()
        for start in range(0, len(rows), SUB_BATCH_SIZE):
            for resolved in rows[start:start + SUB_BATCH_SIZE]:
                try:
                    result.add(self.upsert(resolved, organization_id, file_id))
                except Exception as e:
                    result.errors.append({
                        "natural_key": resolved.row.natural_key,
                        "error": error_message(e),
                    })
                    logger.warning(
                        "Upsert failed for row",
                        extra={"natural_key": resolved.row.natural_key, "error": error_message(e)}
                    )
        return result
