"""
PostgreSQL implementation of the TableStore protocol.

Statements are composed with psycopg.sql so table and column names are always
quoted identifiers; values are always bound parameters.
"""

from enum import Enum
from typing import Any, Sequence

from psycopg import errors, sql
from psycopg.types.json import Jsonb

from ..core.errors import DuplicateKeyError
from ..observability.logger import get_logger
from .connection import DatabaseConnectionPool
from .store import Condition, new_id, validate_conditions

logger = get_logger(__name__)

_COMPARISONS = {
    "=": sql.SQL("="),
    "!=": sql.SQL("<>"),
    ">": sql.SQL(">"),
    ">=": sql.SQL(">="),
    "<": sql.SQL("<"),
    "<=": sql.SQL("<="),
}


def _adapt(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def _where_clause(where: Sequence[Condition]) -> tuple[sql.Composable, list[Any]]:
    conditions = validate_conditions(where)
    if not conditions:
        return sql.SQL(""), []

    parts = []
    params: list[Any] = []
    for condition in conditions:
        column = sql.Identifier(condition.column)
        if condition.op == "is null":
            parts.append(sql.SQL("{} IS NULL").format(column))
        elif condition.op == "is not null":
            parts.append(sql.SQL("{} IS NOT NULL").format(column))
        else:
            parts.append(
                sql.SQL("{} {} %s").format(column, _COMPARISONS[condition.op])
            )
            params.append(_adapt(condition.value))

    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


class PostgresTableStore:
    """
    TableStore backed by a psycopg3 connection pool.

    Each call runs in its own short transaction. Unique violations are mapped
    to DuplicateKeyError; every other database error propagates unchanged so
    the retry executor can classify it.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def select(
        self,
        table: str,
        where: Sequence[Condition] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        clause, params = _where_clause(where)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + clause
        if order_by:
            query += sql.SQL(" ORDER BY {} {}").format(
                sql.Identifier(order_by),
                sql.SQL("DESC") if descending else sql.SQL("ASC"),
            )
        if limit is not None:
            query += sql.SQL(" LIMIT %s")
            params.append(limit)

        with self.pool.transaction() as cur:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()]

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        row = dict(values)
        row.setdefault("id", new_id())
        columns = list(row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )

        try:
            with self.pool.transaction() as cur:
                cur.execute(query, [_adapt(row[c]) for c in columns])
                return dict(cur.fetchone())
        except errors.UniqueViolation as e:
            logger.debug(
                "Unique violation on insert",
                extra={"table": table, "constraint": e.diag.constraint_name}
            )
            raise DuplicateKeyError(table, {"constraint": e.diag.constraint_name}) from e

    def update(
        self,
        table: str,
        values: dict[str, Any],
        where: Sequence[Condition],
    ) -> int:
        if not values:
            return 0
        clause, where_params = _where_clause(where)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
        )
        query = sql.SQL("UPDATE {} SET ").format(sql.Identifier(table)) + assignments + clause
        params = [_adapt(v) for v in values.values()] + where_params

        try:
            with self.pool.transaction() as cur:
                cur.execute(query, params)
                return cur.rowcount
        except errors.UniqueViolation as e:
            raise DuplicateKeyError(table, {"constraint": e.diag.constraint_name}) from e

    def count(self, table: str, where: Sequence[Condition] = ()) -> int:
        clause, params = _where_clause(where)
        query = sql.SQL("SELECT COUNT(*) AS n FROM {}").format(sql.Identifier(table)) + clause
        with self.pool.transaction() as cur:
            cur.execute(query, params)
            return cur.fetchone()["n"]

    def delete(self, table: str, where: Sequence[Condition]) -> int:
        clause, params = _where_clause(where)
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + clause
        with self.pool.transaction() as cur:
            cur.execute(query, params)
            return cur.rowcount
