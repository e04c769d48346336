"""
Unit tests for the retry executor.
"""

import pytest

from feedlot_etl.core.backoff import RetryConfig
from feedlot_etl.core.errors import ErrorKind
from feedlot_etl.etl.state_machine import FileStateMachine
from feedlot_etl.retry.cancellation import CancellationToken
from feedlot_etl.retry.retry_logic import RetryLogicService
from feedlot_etl.warehouse.store import eq, select_one


class FlakyOperation:
    """Fails with the given messages, then returns 'ok'."""

    def __init__(self, *failures: str):
        self.failures = list(failures)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise RuntimeError(self.failures.pop(0))
        return "ok"


@pytest.fixture
def file_id(memory_store, org_id):
    return FileStateMachine(memory_store).register_file(
        org_id, "a.csv", "org-test/a.csv", "feed_deviation"
    ).id


def file_row(memory_store, file_id):
    return select_one(memory_store, "etl_file", [eq("id", file_id)])


@pytest.mark.unit
class TestExecuteWithRetry:
    """Tests for execute_with_retry"""

    def test_success_on_first_attempt(self, retry_service, memory_store, file_id, org_id):
        """Test success on first attempt"""
        result = retry_service.execute_with_retry(lambda: 42, "etl_file", file_id, org_id)

        assert result.success is True
        assert result.value == 42
        assert result.attempt_number == 1
        assert file_row(memory_store, file_id)["retry_count"] == 0

    def test_transient_failure_then_success_resets_bookkeeping(
        self, retry_service, memory_store, file_id, org_id
    ):
        operation = FlakyOperation("network timeout")

        result = retry_service.execute_with_retry(operation, "etl_file", file_id, org_id)

        assert result.success is True
        assert result.attempt_number == 2
        assert operation.calls == 2
        row = file_row(memory_store, file_id)
        assert row["retry_count"] == 0
        assert row["next_retry_at"] is None

    def test_always_transient_goes_to_dead_letter_once(
        self, retry_service, fast_retry_config, memory_store, file_id, org_id
    ):
        operation = FlakyOperation(*["connection reset"] * 10)

        result = retry_service.execute_with_retry(operation, "etl_file", file_id, org_id, step="download")

        assert result.success is False
        assert result.sent_to_dead_letter_queue is True
        assert result.final_attempt is True
        assert result.error_kind == ErrorKind.TRANSIENT
        assert operation.calls == fast_retry_config.max_retries + 1

        entries = retry_service.get_dead_letter_entries(org_id)
        assert len(entries) == 1
        assert entries[0].entity_id == file_id
        assert entries[0].total_retries == fast_retry_config.max_retries
        assert entries[0].metadata["step"] == "download"

    def test_permanent_failure_is_not_retried(self, retry_service, file_id, org_id):
        """Test permanent failure is not retried"""
        operation = FlakyOperation("Validation failed: missing field")

        result = retry_service.execute_with_retry(operation, "etl_file", file_id, org_id)

        assert result.success is False
        assert result.error_kind == ErrorKind.PERMANENT
        assert result.sent_to_dead_letter_queue is False
        assert operation.calls == 1
        assert retry_service.get_dead_letter_entries(org_id) == []

    def test_non_retryable_kind_by_config(self, retry_service, file_id, org_id):
        """Test non retryable kind by config"""
        config = RetryConfig(max_retries=3, base_delay_ms=0, retryable_error_kinds=[ErrorKind.TRANSIENT])
        operation = FlakyOperation("rate limit exceeded")

        result = retry_service.execute_with_retry(operation, "etl_file", file_id, org_id, config=config)

        assert result.success is False
        assert result.error_kind == ErrorKind.RATE_LIMITED
        assert operation.calls == 1

    def test_attempts_resume_from_persisted_count(self, retry_service, memory_store, file_id, org_id):
        """Test attempts resume from persisted count"""
        memory_store.update("etl_file", {"retry_count": 2}, [eq("id", file_id)])
        operation = FlakyOperation(*["timeout"] * 10)

        result = retry_service.execute_with_retry(operation, "etl_file", file_id, org_id)

        # max_retries=2, so attempt 3 is already the last one
        assert operation.calls == 1
        assert result.attempt_number == 3
        assert result.sent_to_dead_letter_queue is True

    def test_bookkeeping_persisted_between_attempts(self, memory_store, file_id, org_id):
        """Test bookkeeping persisted between attempts"""
        seen = []

        def operation():
            seen.append(file_row(memory_store, file_id)["retry_count"])
            raise RuntimeError("temporary failure")

        service = RetryLogicService(
            memory_store,
            config=RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter_enabled=False),
            sleep=lambda seconds: None,
        )
        service.execute_with_retry(operation, "etl_file", file_id, org_id)

        assert seen == [0, 1, 2]

    def test_unpersisted_step_ignores_entity_count(self, retry_service, memory_store, file_id, org_id):
        """Test an unpersisted step gets its full budget whatever the entity count"""
        memory_store.update("etl_file", {"retry_count": 2}, [eq("id", file_id)])
        operation = FlakyOperation("timeout", "timeout")

        result = retry_service.execute_with_retry(
            operation, "etl_file", file_id, org_id, step="upsert:row", persist=False
        )

        assert result.success is True
        assert result.attempt_number == 3
        assert operation.calls == 3
        # The entity row is neither advanced nor reset
        assert file_row(memory_store, file_id)["retry_count"] == 2
        assert file_row(memory_store, file_id)["next_retry_at"] is None

    def test_unpersisted_first_attempt_is_one(self, retry_service, memory_store, file_id, org_id):
        """Test first attempt number of an unpersisted step"""
        memory_store.update("etl_file", {"retry_count": 1}, [eq("id", file_id)])

        result = retry_service.execute_with_retry(
            lambda: "ok", "etl_file", file_id, org_id, persist=False
        )

        assert result.success is True
        assert result.attempt_number == 1

    def test_unpersisted_exhaustion_dead_letters(self, retry_service, memory_store, file_id, org_id, fast_retry_config):
        """Test an exhausted unpersisted step is dead-lettered with its own count"""
        operation = FlakyOperation(*["connection reset"] * 10)

        result = retry_service.execute_with_retry(
            operation, "etl_file", file_id, org_id, step="upsert:row", persist=False
        )

        assert result.sent_to_dead_letter_queue is True
        assert operation.calls == fast_retry_config.max_retries + 1
        entries = retry_service.get_dead_letter_entries(org_id)
        assert entries[0].total_retries == fast_retry_config.max_retries
        assert entries[0].metadata["step"] == "upsert:row"
        assert file_row(memory_store, file_id)["retry_count"] == 0

    def test_clear_retry_info(self, retry_service, memory_store, file_id):
        """Test clear retry info"""
        from datetime import datetime, timezone

        memory_store.update(
            "etl_file", {"retry_count": 3, "next_retry_at": datetime.now(timezone.utc)}, [eq("id", file_id)]
        )

        retry_service.clear_retry_info("etl_file", file_id)

        assert file_row(memory_store, file_id)["retry_count"] == 0
        assert file_row(memory_store, file_id)["next_retry_at"] is None

    def test_cancelled_wait_stops_retrying(self, memory_store, file_id, org_id):
        """Test cancelled wait stops retrying"""
        service = RetryLogicService(
            memory_store,
            config=RetryConfig(max_retries=5, base_delay_ms=60_000, jitter_enabled=False),
        )
        token = CancellationToken()
        token.cancel()
        operation = FlakyOperation(*["timeout"] * 10)

        result = service.execute_with_retry(operation, "etl_file", file_id, org_id, cancellation=token)

        assert result.cancelled is True
        assert result.success is False
        assert operation.calls == 1
        # Bookkeeping written before the wait stays
        assert file_row(memory_store, file_id)["retry_count"] == 1
        assert service.get_dead_letter_entries(org_id) == []

    def test_unknown_entity_type(self, retry_service, org_id):
        """Test unknown entity type"""
        with pytest.raises(ValueError):
            retry_service.execute_with_retry(lambda: 1, "etl_run", "x", org_id)


@pytest.mark.unit
class TestRetryQueries:
    """Tests for retry statistics and the retry queue"""

    def test_policy_helpers(self, retry_service):
        assert retry_service.classify_error("Out of memory") == ErrorKind.RESOURCE
        assert retry_service.is_retryable(ErrorKind.RESOURCE) is True
        assert retry_service.is_retryable(ErrorKind.PERMANENT) is False
        assert retry_service.calculate_next_retry_delay(1) == 0

    def test_statistics_with_nothing_retrying(self, retry_service, org_id):
        """Test statistics with nothing retrying"""
        stats = retry_service.get_retry_statistics(org_id)
        assert stats.active_retries == 0
        assert stats.dead_letter_queue_size == 0
        assert stats.success_rate == 100.0
        assert stats.average_retries == 0

    def test_statistics(self, retry_service, memory_store, org_id):
        machine = FileStateMachine(memory_store)
        ids = [machine.register_file(org_id, f"{i}.csv", f"p/{i}.csv", "feed_deviation").id for i in range(3)]
        memory_store.update("etl_file", {"retry_count": 1}, [eq("id", ids[0])])
        memory_store.update("etl_file", {"retry_count": 3}, [eq("id", ids[1])])
        retry_service.dead_letters.enqueue(org_id, "etl_file", ids[2], "timeout", ErrorKind.TRANSIENT, 3)

        stats = retry_service.get_retry_statistics(org_id)

        assert stats.active_retries == 2
        assert stats.dead_letter_queue_size == 1
        assert stats.success_rate == pytest.approx(200 / 3)
        assert stats.average_retries == 2

    def test_entities_ready_for_retry(self, retry_service, memory_store, file_id, org_id):
        """Test entities ready for retry"""
        from datetime import datetime, timedelta, timezone

        assert retry_service.get_entities_ready_for_retry(org_id) == []

        memory_store.update(
            "etl_file",
            {"retry_count": 1, "next_retry_at": datetime.now(timezone.utc) - timedelta(seconds=1)},
            [eq("id", file_id)]
        )
        assert [r["id"] for r in retry_service.get_entities_ready_for_retry(org_id)] == [file_id]

        memory_store.update(
            "etl_file",
            {"next_retry_at": datetime.now(timezone.utc) + timedelta(hours=1)},
            [eq("id", file_id)]
        )
        assert retry_service.get_entities_ready_for_retry(org_id) == []
