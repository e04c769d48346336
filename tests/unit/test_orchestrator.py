"""
Unit tests for the file processing orchestrator, on in-memory stores.
"""

from collections import defaultdict

import pytest

from feedlot_etl.core.errors import InvalidTransition, ParseError
from feedlot_etl.core.models.file_record import FileState
from feedlot_etl.core.models.run_log import LogCategory
from feedlot_etl.etl.orchestrator import Orchestrator, ProcessFileRequest
from feedlot_etl.etl.state_machine import FileStateMachine
from feedlot_etl.integrity.dimension_lookup import StoreDimensionLookup
from feedlot_etl.pipelines import VALIDATORS
from feedlot_etl.warehouse.store import eq
from feedlot_etl.warehouse.upsert import UpsertEngine
from tests.helpers import DictCsvParser, feed_deviation_csv, feeding_treatment_csv, recent_day


def deviation_rows(count=4, curral="C-01"):
    # One row per day, so every row has its own natural key
    return [
        (recent_day(i + 1), "BAHMAN", curral, "MANHA", "Engorda", 1000 + i, 990 + i)
        for i in range(count)
    ]


class FailingParser:
    def parse(self, data, options=None):
        raise ParseError("Failed to parse file: no content")


class ConstraintViolatingEngine(UpsertEngine):
    def upsert(self, resolved, organization_id, file_id):
        raise RuntimeError("foreign key constraint violated")


class FailingMidRunEngine(UpsertEngine):
    """Marks the file FAILED from outside on the first upsert."""

    def __init__(self, store, state_machine, file_id):
        super().__init__(store)
        self.state_machine = state_machine
        self.file_id = file_id
        self.calls = 0

    def upsert(self, resolved, organization_id, file_id):
        self.calls += 1
        if self.calls == 1:
            self.state_machine.fail(self.file_id, "operator", "cancelled by operator")
        return super().upsert(resolved, organization_id, file_id)


class ConnectionDroppingEngine(UpsertEngine):
    """The first row seen always loses its connection; the second loses it once."""

    def __init__(self, store):
        super().__init__(store)
        self.calls = defaultdict(int)
        self.keys = []

    def upsert(self, resolved, organization_id, file_id):
        key = resolved.row.natural_key
        if key not in self.keys:
            self.keys.append(key)
        self.calls[key] += 1
        if key == self.keys[0] or (len(self.keys) > 1 and key == self.keys[1] and self.calls[key] == 1):
            raise ConnectionError("connection reset by peer")
        return super().upsert(resolved, organization_id, file_id)


class CrashingValidator:
    def validate(self, rows):
        raise RuntimeError("validator crashed")


class FlakyBlobs:
    """Blob store whose first download times out."""

    def __init__(self, blobs):
        self.blobs = blobs
        self.downloads = 0

    def download(self, path):
        self.downloads += 1
        if self.downloads == 1:
            raise TimeoutError("timeout while downloading")
        return self.blobs.download(path)


@pytest.fixture
def state_machine(memory_store):
    return FileStateMachine(memory_store)


@pytest.fixture
def lookup(memory_store, org_id):
    lookup = StoreDimensionLookup(memory_store)
    lookup.create_dimension("curral", "C-01", org_id)
    lookup.create_dimension("dieta", "Engorda", org_id)
    return lookup


@pytest.fixture
def upload(state_machine, blobs, org_id):
    def _upload(data, pipeline="feed_deviation", filename="export.csv"):
        record = state_machine.register_file(org_id, filename, f"{org_id}/{filename}", pipeline)
        blobs.upload(record.filepath, data)
        return record.id
    return _upload


def make_orchestrator(memory_store, blobs, retry_service, fast_retry_config, **kwargs):
    options = {
        "validators": {name: cls() for name, cls in VALIDATORS.items()},
        "retry_service": retry_service,
        "retry_config": fast_retry_config,
        "batch_size": 3,
        "cancel_poll_interval": 0.01,
    }
    options.update(kwargs)
    parser = options.pop("parser", None)
    return Orchestrator(memory_store, blobs, parser or DictCsvParser(), **options)


@pytest.mark.unit
class TestProcessFile:
    """Tests for Orchestrator.process_file"""

    def test_happy_path_loads_every_row(self, orchestrator, upload, lookup, memory_store):
        """Test happy path loads every row"""
        file_id = upload(feed_deviation_csv(deviation_rows(4)))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.final_state == FileState.LOADED
        assert result.summary.total == 4
        assert result.summary.processed == 4
        assert result.summary.inserted == 4
        assert result.summary.failed == 0
        assert memory_store.count("fact_feed_deviation") == 4

        stored = orchestrator.state_machine.require_file(file_id)
        assert stored.current_state == FileState.LOADED
        assert stored.completed_at is not None

    def test_reprocessing_skips_unchanged_rows(self, orchestrator, upload, lookup, memory_store):
        """Test reprocessing skips unchanged rows"""
        file_id = upload(feed_deviation_csv(deviation_rows(4)))
        orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        result = orchestrator.retry_file(file_id, "ops")

        assert result.success is True
        assert result.summary.skipped == 4
        assert result.summary.inserted == 0
        assert memory_store.count("fact_feed_deviation") == 4

    def test_unknown_curral_rows_are_pending(self, orchestrator, upload, lookup, memory_store, org_id):
        """Test unknown curral rows are pending"""
        file_id = upload(feed_deviation_csv(deviation_rows(2, curral="C-99")))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.summary.pending == 2
        assert result.summary.processed == 2
        assert memory_store.count("fact_feed_deviation") == 0
        assert len(lookup.get_pending_entries(org_id)) == 1

    def test_file_not_uploaded_is_rejected(self, orchestrator, upload, lookup):
        """Test file not uploaded is rejected"""
        file_id = upload(feed_deviation_csv(deviation_rows(1)))
        orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        with pytest.raises(InvalidTransition):
            orchestrator.process_file(ProcessFileRequest(file_id=file_id))

    def test_parse_error_fails_file(self, memory_store, blobs, retry_service, fast_retry_config, upload):
        """Test parse error fails file"""
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config, parser=FailingParser()
        )
        file_id = upload(b"")

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        assert "Failed to parse file" in result.errors[0]
        assert orchestrator.state_machine.require_file(file_id).last_error.startswith("Failed to parse")

    def test_no_valid_rows_fails_file(self, orchestrator, upload):
        """Test no valid rows fails file"""
        day = recent_day()
        file_id = upload(feed_deviation_csv([(day, "UNKNOWN", "C-01", "MANHA", None, 100, 100)]))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        assert result.summary.failed == 1
        assert "Validation failed: no valid rows" in result.errors
        assert any(e.startswith("Row 2: equipment:") for e in result.errors)

    def test_invalid_rows_do_not_fail_file(self, orchestrator, upload, lookup):
        """Test invalid rows do not fail file"""
        day = recent_day()
        rows = deviation_rows(2) + [(day, "BAHMAN", "C-01", "NOITE", None, "abc", 10)]
        file_id = upload(feed_deviation_csv(rows))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.summary.total == 3
        assert result.summary.inserted == 2
        assert result.summary.failed == 1

    def test_every_row_failing_to_load_fails_file(
        self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup
    ):
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config,
            upsert_engine=ConstraintViolatingEngine(memory_store)
        )
        file_id = upload(feed_deviation_csv(deviation_rows(2)))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        assert result.summary.failed == 2
        assert "All 2 rows failed to load" in result.errors

    def test_missing_blob_is_dead_lettered(self, orchestrator, state_machine, org_id):
        """Test missing blob is dead lettered"""
        record = state_machine.register_file(org_id, "gone.csv", "org-test/gone.csv", "feed_deviation")

        result = orchestrator.process_file(ProcessFileRequest(file_id=record.id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        assert result.errors[0].startswith("Download failed: Blob not found")

        status = orchestrator.get_file_status(record.id)
        assert status.has_unresolved_dead_letter is True

    def test_parallel_row_workers(self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup):
        """Test parallel row workers"""
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config, row_workers=4, batch_size=5
        )
        rows = deviation_rows(10) + deviation_rows(2)
        file_id = upload(feed_deviation_csv(rows))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.summary.processed == 12
        assert result.summary.inserted == 10
        assert result.summary.skipped == 2
        assert memory_store.count("fact_feed_deviation") == 10

    def test_external_failure_aborts_run(
        self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup, state_machine
    ):
        file_id = upload(feed_deviation_csv(deviation_rows(6)))
        engine = FailingMidRunEngine(memory_store, state_machine, file_id)
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config, upsert_engine=engine, batch_size=3
        )

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        # First batch completes, the second never starts
        assert engine.calls == 3
        assert state_machine.require_file(file_id).last_error == "cancelled by operator"

    def test_each_row_gets_its_own_retry_budget(
        self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup, state_machine, org_id
    ):
        """Test a row exhausting its retries leaves the next row a full budget"""
        engine = ConnectionDroppingEngine(memory_store)
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config, upsert_engine=engine
        )
        file_id = upload(feed_deviation_csv(deviation_rows(2)))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.final_state == FileState.LOADED
        assert result.summary.failed == 1
        assert result.summary.inserted == 1
        first, second = engine.keys
        assert engine.calls[first] == fast_retry_config.max_retries + 1
        assert engine.calls[second] == 2
        assert memory_store.count("fact_feed_deviation") == 1

        entries = orchestrator.dead_letters.list_entries(org_id)
        assert len(entries) == 1
        assert entries[0].metadata["step"] == f"upsert:{first}"
        assert entries[0].total_retries == fast_retry_config.max_retries

        stored = state_machine.require_file(file_id)
        assert stored.retry_count == 0
        assert stored.next_retry_at is None

    def test_unexpected_error_fails_file(
        self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup
    ):
        """Test an unexpected error marks the file FAILED"""
        orchestrator = make_orchestrator(
            memory_store, blobs, retry_service, fast_retry_config,
            validators={"feed_deviation": CrashingValidator()}
        )
        file_id = upload(feed_deviation_csv(deviation_rows(1)))

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is False
        assert result.final_state == FileState.FAILED
        assert result.errors == ["validator crashed"]
        stored = orchestrator.state_machine.require_file(file_id)
        assert stored.current_state == FileState.FAILED
        assert stored.last_error == "validator crashed"

        # A FAILED file can be reset and picked up again
        orchestrator.validators = {name: cls() for name, cls in VALIDATORS.items()}
        assert orchestrator.retry_file(file_id, "ops").final_state == FileState.LOADED

    def test_feeding_treatment_file(self, orchestrator, upload, lookup, memory_store):
        """Test feeding treatment file"""
        day = recent_day()
        data = feeding_treatment_csv([
            (day, "07:30", "Manhã", "C-01", "Joao Silva", "Engorda", "Racao", "500"),
            (day, "13:00", "Tarde", "C-01", "Joao Silva", None, None, "250.5"),
        ])
        file_id = upload(data, pipeline="feeding_treatment")

        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert result.success is True
        assert result.summary.inserted == 2
        assert memory_store.count("dim_trateiro") == 1
        stored = memory_store.select("fact_feeding_treatment", order_by="feed_time")
        assert [row["quantity_kg"] for row in stored] == [500.0, 250.5]


@pytest.mark.unit
class TestFileStatusAndRetryQueue:
    """Tests for status queries and the retry queue"""

    def test_get_file_status(self, orchestrator, upload, lookup):
        """Test get file status"""
        file_id = upload(feed_deviation_csv(deviation_rows(2)))
        result = orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        status = orchestrator.get_file_status(file_id)

        assert status.file.current_state == FileState.LOADED
        assert status.has_unresolved_dead_letter is False
        categories = [entry.category for entry in status.run_log]
        assert LogCategory.STATE_TRANSITION in categories
        assert LogCategory.UPSERT in categories
        assert any(entry.run_id == result.run_id for entry in status.run_log)

    def test_retry_file_requires_terminal_state(self, orchestrator, upload):
        """Test retry file requires terminal state"""
        file_id = upload(feed_deviation_csv(deviation_rows(1)))

        with pytest.raises(InvalidTransition):
            orchestrator.retry_file(file_id, "ops")

    def test_process_retry_queue(self, orchestrator, upload, lookup, state_machine, memory_store, org_id):
        """Test process retry queue"""
        from datetime import datetime, timedelta, timezone

        due = upload(feed_deviation_csv(deviation_rows(2)), filename="due.csv")
        dead = upload(feed_deviation_csv(deviation_rows(2)), filename="dead.csv")
        for file_id in (due, dead):
            state_machine.fail(file_id, "worker", "worker crashed")
            memory_store.update(
                "etl_file",
                {"retry_count": 1, "next_retry_at": datetime.now(timezone.utc) - timedelta(minutes=1)},
                [eq("id", file_id)]
            )
        orchestrator.dead_letters.enqueue(org_id, "etl_file", dead, "timeout", "transient", 2)

        results = orchestrator.process_retry_queue(org_id)

        assert [r.file_id for r in results] == [due]
        assert results[0].success is True
        assert state_machine.require_file(due).retry_count == 0
        assert state_machine.require_file(dead).current_state == FileState.FAILED

    def test_operator_retry_starts_fresh_budget(
        self, memory_store, blobs, retry_service, fast_retry_config, upload, lookup, state_machine
    ):
        """Test an operator retry is not charged for earlier attempts"""
        flaky = FlakyBlobs(blobs)
        orchestrator = make_orchestrator(memory_store, flaky, retry_service, fast_retry_config)
        file_id = upload(feed_deviation_csv(deviation_rows(1)))
        state_machine.fail(file_id, "worker", "download kept timing out")
        memory_store.update(
            "etl_file", {"retry_count": fast_retry_config.max_retries}, [eq("id", file_id)]
        )

        result = orchestrator.retry_file(file_id, "ops")

        assert result.success is True
        assert flaky.downloads == 2
        assert state_machine.require_file(file_id).retry_count == 0


@pytest.mark.unit
class TestInFlightFiles:
    """Tests for the per-file in-flight guard"""

    def test_guard_is_released_after_each_run(self, orchestrator, upload, lookup):
        """Test no in-flight entry outlives its run"""
        loaded = upload(feed_deviation_csv(deviation_rows(1)), filename="ok.csv")
        empty = upload(b"", filename="empty.csv")

        orchestrator.process_file(ProcessFileRequest(file_id=loaded))
        orchestrator.process_file(ProcessFileRequest(file_id=empty))
        with pytest.raises(InvalidTransition):
            orchestrator.process_file(ProcessFileRequest(file_id=loaded))

        assert orchestrator._active_files == set()

    def test_file_in_flight_is_rejected(self, orchestrator, upload, state_machine):
        """Test a second call for a file in flight is rejected"""
        file_id = upload(feed_deviation_csv(deviation_rows(1)))
        assert orchestrator._claim(file_id) is True

        with pytest.raises(InvalidTransition):
            orchestrator.process_file(ProcessFileRequest(file_id=file_id))

        assert state_machine.require_file(file_id).current_state == FileState.UPLOADED
        orchestrator._release(file_id)
        assert orchestrator._active_files == set()


@pytest.mark.unit
class TestMarkedDeadLetters:
    """Tests for reprocessing files of marked dead-letter entries"""

    def test_file_reprocessed_once_for_all_its_marked_entries(
        self, orchestrator, upload, lookup, state_machine, org_id
    ):
        """Test a file is reprocessed once for all its marked entries"""
        file_id = upload(feed_deviation_csv(deviation_rows(2)))
        state_machine.fail(file_id, "worker", "connection reset")
        first = orchestrator.dead_letters.enqueue(org_id, "etl_file", file_id, "timeout", "transient", 2)
        second = orchestrator.dead_letters.enqueue(org_id, "etl_file", file_id, "timeout", "transient", 2)
        unmarked = orchestrator.dead_letters.enqueue(org_id, "etl_file", "other", "timeout", "transient", 2)
        orchestrator.dead_letters.mark_for_retry(first.id, "ops")
        orchestrator.dead_letters.mark_for_retry(second.id, "ops")

        results = orchestrator.process_marked_dead_letters(org_id, "ops")

        assert [r.file_id for r in results] == [file_id]
        assert results[0].final_state == FileState.LOADED
        for entry_id in (first.id, second.id):
            entry = orchestrator.dead_letters.get_entry(entry_id)
            assert entry.resolved is True
            assert results[0].run_id in entry.resolution_notes
        assert orchestrator.dead_letters.get_entry(unmarked.id).resolved is False

    def test_marked_entry_of_missing_file_is_left_open(self, orchestrator, org_id):
        """Test a marked entry whose file is gone stays unresolved"""
        entry = orchestrator.dead_letters.enqueue(org_id, "etl_file", "gone", "timeout", "transient", 2)
        orchestrator.dead_letters.mark_for_retry(entry.id, "ops")

        assert orchestrator.process_marked_dead_letters(org_id, "ops") == []
        assert orchestrator.dead_letters.get_entry(entry.id).resolved is False
