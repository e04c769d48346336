"""
Pytest configuration and fixtures for feedlot-etl tests

Unit tests run against the in-memory stores. Integration and E2E tests use a
Postgres testcontainer and a local Spark session, and are skipped when Docker
or Java is not available.
"""
import os
import shutil
from typing import Generator

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from feedlot_etl.core.backoff import RetryConfig
from feedlot_etl.etl.orchestrator import Orchestrator
from feedlot_etl.pipelines import VALIDATORS
from feedlot_etl.retry.retry_logic import RetryLogicService
from feedlot_etl.warehouse.blob_store import MemoryBlobStore
from feedlot_etl.warehouse.memory_store import MemoryTableStore
from tests.helpers import DictCsvParser

ORG_ID = "org-test"

TABLES = (
    "etl_run_log",
    "etl_dead_letter_queue",
    "etl_pending_entry",
    "fact_feed_deviation",
    "fact_feeding_treatment",
    "dim_curral",
    "dim_dieta",
    "dim_trateiro",
    "etl_file",
)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers or Spark"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that run the full file lifecycle"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# IN-MEMORY FIXTURES
# =======================

@pytest.fixture
def org_id() -> str:
    return ORG_ID


@pytest.fixture
def memory_store() -> MemoryTableStore:
    return MemoryTableStore()


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    """Retry config with no backoff delay."""
    return RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter_enabled=False)


@pytest.fixture
def retry_service(memory_store, fast_retry_config) -> RetryLogicService:
    return RetryLogicService(memory_store, config=fast_retry_config, sleep=lambda seconds: None)


@pytest.fixture
def parser() -> DictCsvParser:
    return DictCsvParser()


@pytest.fixture
def orchestrator(memory_store, blobs, parser, retry_service, fast_retry_config) -> Orchestrator:
    return Orchestrator(
        memory_store,
        blobs,
        parser,
        validators={name: cls() for name, cls in VALIDATORS.items()},
        retry_service=retry_service,
        retry_config=fast_retry_config,
        batch_size=3,
        cancel_poll_interval=0.01,
    )


# =======================
# SPARK FIXTURES
# =======================

@pytest.fixture(scope="session")
def spark_session():
    """
    Create a Spark session for testing with local mode

    Yields:
        SparkSession configured for local testing
    """
    if not (os.getenv("JAVA_HOME") or shutil.which("java")):
        pytest.skip("Java is not available for Spark")

    from pyspark.sql import SparkSession

    spark = (
        SparkSession.builder
        .appName("feedlot-etl-test")
        .master("local[2]")
        .config("spark.sql.shuffle.partitions", "2")
        .config("spark.driver.memory", "1g")
        .config("spark.ui.enabled", "false")  # Disable UI for tests
        .getOrCreate()
    )

    # Set log level to WARN to reduce test output noise
    spark.sparkContext.setLogLevel("WARN")

    yield spark

    spark.stop()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container with the schema from docker/init-db.sql

    Yields:
        PostgresContainer instance with initialized database
    """
    container = PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_etl",
        password="test_password",
        dbname="test_feedlot",
        driver=None,
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")

    try:
        init_sql_path = os.path.join(
            os.path.dirname(os.path.dirname(__file__)),
            "docker",
            "init-db.sql"
        )
        with open(init_sql_path) as f:
            init_sql = f.read()

        with psycopg.connect(container.get_connection_url()) as conn:
            with conn.cursor() as cur:
                cur.execute(init_sql)
            conn.commit()

        yield container
    finally:
        container.stop()


@pytest.fixture
def db_pool(postgres_container):
    """
    Open connection pool on the test database, with every table truncated

    Yields:
        DatabaseConnectionPool
    """
    from feedlot_etl.warehouse.connection import DatabaseConnectionPool

    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_feedlot",
        user="test_etl",
        password="test_password",
        min_size=1,
        max_size=4,
    )
    pool.open()

    with pool.transaction() as cur:
        cur.execute(f"TRUNCATE TABLE {', '.join(TABLES)} CASCADE")

    try:
        yield pool
    finally:
        pool.close()


@pytest.fixture
def postgres_store(db_pool):
    from feedlot_etl.warehouse.postgres_store import PostgresTableStore

    return PostgresTableStore(db_pool)
