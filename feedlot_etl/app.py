"""
Service wiring.

Builds the store, blob store, parser and every service on top of them from a
Settings instance. Tests pass in-memory stores; the CLI uses Postgres.
"""

from typing import Optional

from .batch.readers.csv_reader import CSVReader
from .config import Settings, load_settings
from .etl.orchestrator import CsvParser, Orchestrator
from .etl.state_machine import FileStateMachine
from .integrity.dimension_lookup import StoreDimensionLookup
from .integrity.resolver import DimensionResolver
from .monitoring.monitoring import MonitoringService
from .observability.logger import get_logger, setup_logger
from .pipelines import VALIDATORS
from .retry.dead_letter import DeadLetterStore
from .retry.retry_logic import RetryLogicService
from .warehouse.blob_store import BlobStore, LocalBlobStore
from .warehouse.connection import DatabaseConnectionPool
from .warehouse.postgres_store import PostgresTableStore
from .warehouse.store import TableStore
from .warehouse.upsert import UpsertEngine

logger = get_logger(__name__)


class EtlServices:
    """
    Container for the wired services.

    Owns the connection pool and the CSV reader it created (if any) and
    releases them on close().
    """

    def __init__(
        self,
        settings: Settings,
        store: TableStore,
        blobs: BlobStore,
        parser: CsvParser,
        pool: Optional[DatabaseConnectionPool] = None,
        owns_parser: bool = False,
    ):
        self.settings = settings
        self.store = store
        self.blobs = blobs
        self.parser = parser
        self.pool = pool
        self.owns_parser = owns_parser

        self.dead_letters = DeadLetterStore(store)
        self.retry_service = RetryLogicService(store, self.dead_letters, config=settings.retry)
        self.state_machine = FileStateMachine(store)
        self.lookup = StoreDimensionLookup(store)
        self.resolver = DimensionResolver(self.lookup)
        self.upsert_engine = UpsertEngine(store)
        self.orchestrator = Orchestrator(
            store,
            blobs,
            parser,
            validators={name: cls() for name, cls in VALIDATORS.items()},
            state_machine=self.state_machine,
            retry_service=self.retry_service,
            resolver=self.resolver,
            upsert_engine=self.upsert_engine,
            retry_config=settings.retry,
            batch_size=settings.processing.batch_size,
            row_workers=settings.processing.row_workers,
            cancel_poll_interval=settings.processing.cancel_poll_interval,
        )
        self.monitoring = MonitoringService(store, self.retry_service, settings.monitoring.thresholds)

    def close(self) -> None:
        if self.owns_parser:
            self.parser.close()
            self.owns_parser = False
        if self.pool is not None:
            self.pool.close()
            self.pool = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[TableStore] = None,
    blobs: Optional[BlobStore] = None,
    parser: Optional[CsvParser] = None,
) -> EtlServices:
    """
    Wire every service.

    Args:
        settings: Loaded settings (load_settings() when omitted)
        store: Table store; a Postgres store on a new pool when omitted
        blobs: Blob store; LocalBlobStore on ``processing.blob_root`` when omitted
        parser: CSV parser; a CSVReader that starts Spark on first parse when omitted
    """
    settings = settings or load_settings()
    setup_logger(
        level=settings.logging.level,
        format_type="json" if settings.logging.json_format else "text"
    )

    pool = None
    if store is None:
        pool = DatabaseConnectionPool.from_settings(settings.database)
        pool.open()
        store = PostgresTableStore(pool)

    owns_parser = parser is None
    parser = parser or CSVReader()

    blobs = blobs or LocalBlobStore(settings.processing.blob_root)

    logger.info(
        "ETL services ready",
        extra={
            "store": type(store).__name__,
            "blobs": type(blobs).__name__,
            "row_workers": settings.processing.row_workers,
        }
    )
    return EtlServices(settings, store, blobs, parser, pool=pool, owns_parser=owns_parser)
