"""
Table storage protocol shared by the Postgres and in-memory backends.

Rows are plain dicts keyed by column name. Filters are lists of Condition
tuples combined with AND. Updates report the number of rows they touched so
callers can build conditional (compare-and-set) writes on top of them.
"""

import uuid
from typing import Any, Iterable, NamedTuple, Protocol, Sequence

OPERATORS = ("=", "!=", ">", ">=", "<", "<=", "is null", "is not null")

# Unique constraints enforced by every backend, mirrored in docker/init-db.sql
UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "dim_curral": ("organization_id", "code"),
    "dim_dieta": ("organization_id", "name"),
    "dim_trateiro": ("organization_id", "name"),
    "fact_feed_deviation": ("organization_id", "natural_key"),
    "fact_feeding_treatment": ("organization_id", "natural_key"),
}


class Condition(NamedTuple):
    column: str
    op: str
    value: Any = None


def eq(column: str, value: Any) -> Condition:
    return Condition(column, "=", value)


def ne(column: str, value: Any) -> Condition:
    return Condition(column, "!=", value)


def gt(column: str, value: Any) -> Condition:
    return Condition(column, ">", value)


def gte(column: str, value: Any) -> Condition:
    return Condition(column, ">=", value)


def lt(column: str, value: Any) -> Condition:
    return Condition(column, "<", value)


def lte(column: str, value: Any) -> Condition:
    return Condition(column, "<=", value)


def is_null(column: str) -> Condition:
    return Condition(column, "is null")


def not_null(column: str) -> Condition:
    return Condition(column, "is not null")


def new_id() -> str:
    return str(uuid.uuid4())


def validate_conditions(where: Iterable[Condition]) -> list[Condition]:
    conditions = list(where)
    for condition in conditions:
        if condition.op not in OPERATORS:
            raise ValueError(f"Unsupported operator: {condition.op}")
    return conditions


class TableStore(Protocol):
    """Minimal relational storage used by every ETL component."""

    def select(
        self,
        table: str,
        where: Sequence[Condition] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """Insert a row (an ``id`` is generated when absent) and return it.

        Raises DuplicateKeyError when a unique key is violated.
        """
        ...

    def update(
        self,
        table: str,
        values: dict[str, Any],
        where: Sequence[Condition],
    ) -> int:
        ...

    def count(self, table: str, where: Sequence[Condition] = ()) -> int:
        ...

    def delete(self, table: str, where: Sequence[Condition]) -> int:
        """Delete matching rows and return how many were removed."""
        ...


def select_one(store: TableStore, table: str, where: Sequence[Condition]) -> dict[str, Any] | None:
    rows = store.select(table, where, limit=1)
    return rows[0] if rows else None
