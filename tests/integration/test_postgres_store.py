"""
Integration tests for the Postgres table store.

Runs the store, state machine, dead-letter queue and upsert engine against a
real database so SQL composition, constraints and conditional updates are
exercised.
"""

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from feedlot_etl.core.errors import DuplicateKeyError, ErrorKind, InvalidTransition
from feedlot_etl.core.models.fact_row import FeedDeviationRow
from feedlot_etl.core.models.file_record import FileState
from feedlot_etl.core.models.referential import DimensionCodes
from feedlot_etl.etl.state_machine import FileStateMachine
from feedlot_etl.integrity.dimension_lookup import StoreDimensionLookup
from feedlot_etl.integrity.resolver import DimensionResolver
from feedlot_etl.retry.dead_letter import DeadLetterStore
from feedlot_etl.warehouse.run_log import query_run_log_by_file
from feedlot_etl.warehouse.store import eq, gt, is_null, lte, ne, not_null
from feedlot_etl.warehouse.upsert import ResolvedRow, UpsertEngine


@pytest.fixture
def machine(postgres_store):
    return FileStateMachine(postgres_store)


@pytest.mark.integration
class TestPostgresTableStore:
    """Tests for PostgresTableStore"""

    def test_insert_select_update(self, postgres_store, machine, org_id):
        """Test the basic operations and conditional update rowcounts"""
        record = machine.register_file(org_id, "a.csv", "org-test/a.csv", "feed_deviation")

        rows = postgres_store.select("etl_file", [eq("id", record.id)])
        assert rows[0]["current_state"] == "uploaded"
        assert rows[0]["created_at"].tzinfo is not None

        assert postgres_store.update("etl_file", {"retry_count": 2}, [eq("id", record.id), eq("retry_count", 0)]) == 1
        assert postgres_store.update("etl_file", {"retry_count": 3}, [eq("id", record.id), eq("retry_count", 0)]) == 0
        assert postgres_store.count("etl_file", [gt("retry_count", 1)]) == 1

    def test_condition_operators(self, postgres_store, machine, org_id):
        first = machine.register_file(org_id, "a.csv", "a", "feed_deviation")
        machine.register_file(org_id, "b.csv", "b", "feeding_treatment")
        postgres_store.update(
            "etl_file",
            {"next_retry_at": datetime.now(timezone.utc) - timedelta(minutes=1)},
            [eq("id", first.id)]
        )

        assert postgres_store.count("etl_file", [is_null("next_retry_at")]) == 1
        assert postgres_store.count("etl_file", [not_null("next_retry_at")]) == 1
        assert postgres_store.count("etl_file", [lte("next_retry_at", datetime.now(timezone.utc))]) == 1
        assert postgres_store.count("etl_file", [ne("pipeline", "feed_deviation")]) == 1

    def test_order_and_limit(self, postgres_store, machine, org_id):
        """Test order and limit"""
        for name in ("a.csv", "b.csv", "c.csv"):
            machine.register_file(org_id, name, name, "feed_deviation")

        rows = postgres_store.select("etl_file", order_by="filename", descending=True, limit=2)

        assert [r["filename"] for r in rows] == ["c.csv", "b.csv"]

    def test_unique_violation_maps_to_duplicate_key(self, postgres_store, org_id):
        """Test unique violation maps to duplicate key"""
        lookup = StoreDimensionLookup(postgres_store)
        lookup.create_dimension("curral", "C-01", org_id)

        with pytest.raises(DuplicateKeyError):
            postgres_store.insert("dim_curral", {"organization_id": org_id, "code": "C-01"})
        # The lookup recovers the existing id instead
        assert lookup.create_dimension("curral", "c-01", org_id) == lookup.lookup_curral_id("C-01", org_id)

    def test_jsonb_metadata_round_trip(self, postgres_store, org_id):
        """Test jsonb metadata round trip"""
        dead_letters = DeadLetterStore(postgres_store)
        entry = dead_letters.enqueue(
            org_id, "etl_file", "file-1", "timeout", ErrorKind.TRANSIENT, 3,
            metadata={"step": "download", "max_retries": 3}
        )

        stored = dead_letters.get_entry(entry.id)

        assert stored.metadata == {"step": "download", "max_retries": 3}
        assert stored.error_type == ErrorKind.TRANSIENT


@pytest.mark.integration
class TestConsistencyOnPostgres:
    """Tests for the guarantees that rely on database constraints"""

    def test_only_one_concurrent_transition_wins(self, postgres_store, machine, org_id):
        """Test only one concurrent transition wins"""
        record = machine.register_file(org_id, "a.csv", "a", "feed_deviation")
        outcomes = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                machine.transition(record.id, FileState.UPLOADED, FileState.PARSING, "worker")
                outcomes.append("won")
            except InvalidTransition:
                outcomes.append("lost")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["lost", "lost", "lost", "won"]
        transitions = [
            e for e in query_run_log_by_file(postgres_store, record.id)
            if e.metadata.get("to_state") == "parsing"
        ]
        assert len(transitions) == 1

    def test_dead_letter_resolves_exactly_once(self, postgres_store, org_id):
        """Test dead letter resolves exactly once"""
        dead_letters = DeadLetterStore(postgres_store)
        entry = dead_letters.enqueue(org_id, "etl_file", "file-1", "timeout", ErrorKind.TRANSIENT, 3)

        assert dead_letters.resolve(entry.id, "alice") is True
        assert dead_letters.resolve(entry.id, "bob") is False
        assert dead_letters.get_entry(entry.id).resolved_by == "alice"

    def test_dead_letter_mark_and_cleanup(self, postgres_store, org_id):
        """Test marking and deleting dead letter entries through SQL"""
        dead_letters = DeadLetterStore(postgres_store)
        marked = dead_letters.enqueue(org_id, "etl_file", "file-1", "timeout", ErrorKind.TRANSIENT, 3)
        old = dead_letters.enqueue(org_id, "etl_file", "file-2", "timeout", ErrorKind.TRANSIENT, 3)
        dead_letters.resolve(old.id, "ops")
        postgres_store.update(
            "etl_dead_letter_queue",
            {"created_at": datetime.now(timezone.utc) - timedelta(days=40)},
            [eq("id", old.id)]
        )

        assert dead_letters.mark_for_retry(marked.id, "ops") is True
        assert [e.id for e in dead_letters.list_marked(org_id)] == [marked.id]
        assert dead_letters.cleanup_resolved(org_id, older_than_days=30) == 1
        assert dead_letters.get_entry(old.id) is None

    def test_duplicate_lookup_by_checksum(self, postgres_store, machine, org_id):
        """Test duplicate lookup by checksum"""
        first = machine.register_file(org_id, "a.csv", "a", "feed_deviation", checksum="abc123")
        machine.register_file(org_id, "b.csv", "b", "feed_deviation", checksum="def456")

        check = machine.find_duplicate_file("abc123", org_id)

        assert check.is_duplicate is True
        assert check.original_file.id == first.id
        assert check.allow_reprocessing is True

    def test_one_open_pending_entry_per_code(self, postgres_store, org_id):
        """Test one open pending entry per code"""
        lookup = StoreDimensionLookup(postgres_store)
        first = lookup.create_pending_curral("C-99", org_id)

        with pytest.raises(DuplicateKeyError):
            postgres_store.insert(
                "etl_pending_entry",
                {"type": "curral", "code": "C-99", "organization_id": org_id, "status": "pending"}
            )

        lookup.reject_pending_entry(first.id, "ops")
        reopened = lookup.create_pending_curral("C-99", org_id)
        assert reopened.id != first.id

    def test_upsert_skips_unchanged_numeric_rows(self, postgres_store, machine, org_id):
        """Test NUMERIC columns read back as Decimal still compare equal"""
        first = machine.register_file(org_id, "a.csv", "a", "feed_deviation")
        second = machine.register_file(org_id, "b.csv", "b", "feed_deviation")
        lookup = StoreDimensionLookup(postgres_store)
        lookup.create_dimension("curral", "C-01", org_id)
        resolver = DimensionResolver(lookup)
        engine = UpsertEngine(postgres_store)
        row = FeedDeviationRow(
            reference_date=date(2024, 1, 15), shift="MANHA", equipment="BAHMAN", curral_code="C-01",
            planned_kg=1000.1, actual_kg=950.35, deviation_kg=-49.75, deviation_pct=-4.97,
        )
        resolved = ResolvedRow(row=row, resolution=resolver.resolve(DimensionCodes(curral_code="C-01"), org_id))

        assert engine.upsert(resolved, org_id, first.id).action == "inserted"
        assert engine.upsert(resolved, org_id, second.id).action == "skipped"

        stored = postgres_store.select("fact_feed_deviation")[0]
        assert stored["actual_kg"] == Decimal("950.35")
        assert stored["source_file_id"] == first.id
