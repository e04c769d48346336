"""
In-memory TableStore used by unit tests and local dry runs.

Enforces the same unique keys as the Postgres schema and applies updates
atomically under a single lock, so conditional updates behave like the
database's row-level compare-and-set.
"""

import copy
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from ..core.errors import DuplicateKeyError
from .store import UNIQUE_KEYS, Condition, new_id, validate_conditions


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return copy.deepcopy(value)


def _matches(row: dict[str, Any], condition: Condition) -> bool:
    value = row.get(condition.column)
    if condition.op == "is null":
        return value is None
    if condition.op == "is not null":
        return value is not None

    expected = _normalize(condition.value)
    if value is None or expected is None:
        # SQL semantics: comparisons against NULL are never true
        return False
    if condition.op == "=":
        return value == expected
    if condition.op == "!=":
        return value != expected
    if condition.op == ">":
        return value > expected
    if condition.op == ">=":
        return value >= expected
    if condition.op == "<":
        return value < expected
    return value <= expected


class MemoryTableStore:
    """Thread-safe dict-of-lists implementation of TableStore."""

    def __init__(self, unique_keys: dict[str, tuple[str, ...]] | None = None):
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._unique_keys = UNIQUE_KEYS if unique_keys is None else unique_keys
        self._lock = threading.RLock()

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(table, [])

    def _filter(self, table: str, where: Sequence[Condition]) -> list[dict[str, Any]]:
        conditions = validate_conditions(where)
        return [
            row for row in self._rows(table)
            if all(_matches(row, condition) for condition in conditions)
        ]

    def _check_unique(self, table: str, row: dict[str, Any], ignore: dict | None = None) -> None:
        for other in self._rows(table):
            if other is ignore:
                continue
            if other["id"] == row["id"]:
                raise DuplicateKeyError(table, {"id": row["id"]})
            columns = self._unique_keys.get(table)
            if columns and all(other.get(c) == row.get(c) for c in columns):
                raise DuplicateKeyError(table, {c: row.get(c) for c in columns})

    def select(
        self,
        table: str,
        where: Sequence[Condition] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._filter(table, where)
            if order_by:
                present = [r for r in rows if r.get(order_by) is not None]
                missing = [r for r in rows if r.get(order_by) is None]
                present.sort(key=lambda r: r[order_by], reverse=descending)
                # Postgres puts NULLs last ascending and first descending
                rows = missing + present if descending else present + missing
            if limit is not None:
                rows = rows[:limit]
            return [copy.deepcopy(r) for r in rows]

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        row = {column: _normalize(value) for column, value in values.items()}
        row.setdefault("id", new_id())
        row.setdefault("created_at", datetime.now(timezone.utc))
        with self._lock:
            self._check_unique(table, row)
            self._rows(table).append(row)
            return copy.deepcopy(row)

    def update(
        self,
        table: str,
        values: dict[str, Any],
        where: Sequence[Condition],
    ) -> int:
        changes = {column: _normalize(value) for column, value in values.items()}
        with self._lock:
            matched = self._filter(table, where)
            for row in matched:
                candidate = {**row, **changes}
                self._check_unique(table, candidate, ignore=row)
            for row in matched:
                row.update(copy.deepcopy(changes))
            return len(matched)

    def count(self, table: str, where: Sequence[Condition] = ()) -> int:
        with self._lock:
            return len(self._filter(table, where))

    def delete(self, table: str, where: Sequence[Condition]) -> int:
        with self._lock:
            doomed = {id(row) for row in self._filter(table, where)}
            self._tables[table] = [row for row in self._rows(table) if id(row) not in doomed]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()
