"""
Pooled PostgreSQL connections for the warehouse store (psycopg3).

Connections hand out dict rows. ``transaction()`` is the unit of work used by
PostgresTableStore: one statement batch per checkout, committed on exit.
"""
import time
from contextlib import contextmanager
from typing import Iterator

from psycopg import Cursor, OperationalError
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from ..observability.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnectionPool:
    """Lazily opened psycopg_pool.ConnectionPool with startup retries."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.database = database
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.conninfo = make_conninfo(
            host=host,
            port=port,
            dbname=database,
            user=user,
            password=password,
            connect_timeout=max(1, int(timeout)),
            application_name="feedlot-etl",
        )
        self._pool: ConnectionPool | None = None

    @classmethod
    def from_settings(cls, database_settings) -> "DatabaseConnectionPool":
        """Build a pool from a config.DatabaseSettings instance."""
        return cls(
            host=database_settings.host,
            port=database_settings.port,
            database=database_settings.name,
            user=database_settings.user,
            password=database_settings.password,
            min_size=database_settings.pool_min_size,
            max_size=database_settings.pool_max_size,
            timeout=database_settings.timeout,
        )

    def open(self, attempts: int = 3, wait_seconds: float = 2.0) -> None:
        """
        Open the pool and wait for ``min_size`` connections.

        Raises:
            OperationalError: The database stayed unreachable for every attempt
        """
        if self._pool is not None:
            return

        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            pool = ConnectionPool(
                self.conninfo,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=self.timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                pool.open(wait=True, timeout=self.timeout)
            except (OperationalError, PoolTimeout) as e:
                pool.close()
                last_error = e
                logger.warning(
                    "Warehouse unreachable",
                    extra={"host": self.host, "database": self.database, "attempt": attempt, "error": str(e)}
                )
                if attempt < attempts:
                    time.sleep(wait_seconds)
                continue

            self._pool = pool
            logger.info(
                "Warehouse pool ready",
                extra={"host": self.host, "database": self.database, "max_size": self.max_size}
            )
            return

        raise OperationalError(
            f"Could not reach warehouse {self.host}/{self.database} after {attempts} attempts: {last_error}"
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def transaction(self) -> Iterator[Cursor]:
        """Cursor in a transaction that commits on exit and rolls back if the block raises."""
        if self._pool is None:
            raise RuntimeError("Warehouse pool is not open")
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur
