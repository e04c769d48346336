"""
Run log operations: the append-only audit trail of every file.

Entries are never updated. The only delete is retention cleanup, which drops
whole entries older than the retention window.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from ..core.models.run_log import LogLevel, RunLogEntry
from ..observability.logger import get_logger
from .store import TableStore, eq, gte, lt, new_id

logger = get_logger(__name__)

TABLE = RunLogEntry.TABLE


def append_run_log(store: TableStore, entry: RunLogEntry) -> RunLogEntry:
    """
    Insert a single run log entry.

    Args:
        store: Table store
        entry: RunLogEntry model instance

    Returns:
        The stored entry
    """
    row = store.insert(TABLE, entry.model_dump())
    logger.debug(
        f"Appended run log entry: category={entry.category}, file_id={entry.file_id}"
    )
    return RunLogEntry(**row)


def log_event(
    store: TableStore,
    *,
    run_id: str,
    file_id: str,
    organization_id: str,
    category: str,
    message: str,
    level: LogLevel = "info",
    metadata: dict[str, Any] | None = None,
) -> RunLogEntry:
    """Build and append a run log entry in one call."""
    entry = RunLogEntry(
        id=new_id(),
        run_id=run_id,
        file_id=file_id,
        organization_id=organization_id,
        level=level,
        category=category,
        message=message,
        metadata=metadata or {},
    )
    return append_run_log(store, entry)


def query_run_log_by_file(
    store: TableStore,
    file_id: str,
    limit: int | None = None
) -> list[RunLogEntry]:
    """
    Audit trail of a file, oldest entry first.

    Args:
        store: Table store
        file_id: File to query
        limit: Maximum number of entries to return
    """
    rows = store.select(TABLE, [eq("file_id", file_id)], order_by="created_at", limit=limit)
    return [RunLogEntry(**row) for row in rows]


def query_run_log_by_run(store: TableStore, run_id: str) -> list[RunLogEntry]:
    rows = store.select(TABLE, [eq("run_id", run_id)], order_by="created_at")
    return [RunLogEntry(**row) for row in rows]


def count_errors_since(store: TableStore, organization_id: str, since: datetime) -> int:
    """Number of error-level entries written for an organization since a point in time."""
    return store.count(
        TABLE,
        [eq("organization_id", organization_id), eq("level", "error"), gte("created_at", since)]
    )


def get_run_log_summary(store: TableStore, file_id: str) -> dict[str, Any]:
    """
    Summary statistics of a file's trail.

    Returns:
        Dictionary with total_entries, entries_by_category, entries_by_level
        and distinct runs.
    """
    entries = query_run_log_by_file(store, file_id)
    return {
        "total_entries": len(entries),
        "entries_by_category": dict(Counter(e.category for e in entries)),
        "entries_by_level": dict(Counter(e.level for e in entries)),
        "runs": len({e.run_id for e in entries}),
    }


def get_run_log_stats(store: TableStore, organization_id: str, time_range_hours: int = 24) -> dict[str, Any]:
    """
    Activity of an organization's trail over the last ``time_range_hours``.

    Returns:
        Dictionary with total_entries, entries_by_level, entries_by_category,
        files, runs, error_rate (percent) and the ten most recent errors.
    """
    since = datetime.now(timezone.utc) - timedelta(hours=time_range_hours)
    rows = store.select(
        TABLE,
        [eq("organization_id", organization_id), gte("created_at", since)],
        order_by="created_at",
        descending=True
    )
    entries = [RunLogEntry(**row) for row in rows]
    errors = [e for e in entries if e.level == "error"]
    return {
        "total_entries": len(entries),
        "entries_by_level": dict(Counter(e.level for e in entries)),
        "entries_by_category": dict(Counter(e.category for e in entries)),
        "files": len({e.file_id for e in entries}),
        "runs": len({e.run_id for e in entries}),
        "error_rate": (len(errors) / len(entries)) * 100 if entries else 0.0,
        "recent_errors": [
            {"file_id": e.file_id, "run_id": e.run_id, "message": e.message, "created_at": e.created_at}
            for e in errors[:10]
        ],
    }


def cleanup_run_log(
    store: TableStore,
    organization_id: str,
    retain_days: int = 90,
    dry_run: bool = False
) -> int:
    """
    Delete an organization's entries older than ``retain_days``.

    Returns:
        Number of entries deleted (or that would be, with ``dry_run``)
    """
    cutoff = datetime.now(timezone.utc) - timedelta(days=retain_days)
    where = [eq("organization_id", organization_id), lt("created_at", cutoff)]
    if dry_run:
        return store.count(TABLE, where)
    deleted = store.delete(TABLE, where)
    logger.info(
        "Old run log entries deleted",
        extra={"organization_id": organization_id, "deleted": deleted, "retain_days": retain_days}
    )
    return deleted
