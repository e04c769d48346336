"""
Retry executor with persisted per-entity bookkeeping and dead-letter hand-off.

Retry counts live on the entity row (``etl_file.retry_count``), never in
process memory, so a restarted worker resumes at the right attempt. This
service is the only writer of ``retry_count`` and ``next_retry_at``.

Steps scoped below the entity (one row of a file) run with
``persist=False``: their attempts are counted locally and start at 1, so one
row exhausting its budget never shortens the budget of the next.
"""

from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel

from ..core.backoff import DEFAULT_RETRY_CONFIG, RetryConfig, calculate_delay, next_retry_at
from ..core.classifier import ErrorClassifier, error_message
from ..core.errors import ErrorKind
from ..core.models.dead_letter import DeadLetterEntry, EntityType
from ..core.models.file_record import FileRecord
from ..observability.logger import get_logger
from ..observability.metrics import errors_total, increment_counter, retry_attempts_total
from ..warehouse.store import TableStore, eq, gt, lte, select_one
from .cancellation import CancellationToken
from .dead_letter import DeadLetterStore

logger = get_logger(__name__)

ENTITY_TABLES: dict[str, str] = {
    "etl_file": FileRecord.TABLE,
}


class RetryResult(BaseModel):
    """
    Outcome of execute_with_retry.

    Attributes:
        success: The operation eventually returned
        value: What the operation returned on success
        attempt_number: Attempt that produced this result (1-based)
        error_kind: Classification of the final error
        error_message: Message of the final error
        final_attempt: The attempt budget was exhausted
        sent_to_dead_letter_queue: A DeadLetterEntry was written
        cancelled: A backoff wait was cancelled
    """

    success: bool
    value: Any = None
    attempt_number: int
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    final_attempt: bool = False
    sent_to_dead_letter_queue: bool = False
    cancelled: bool = False


class RetryStatistics(BaseModel):
    active_retries: int
    dead_letter_queue_size: int
    success_rate: float
    average_retries: float


class RetryLogicService:
    """
    Executes fallible steps with classification, exponential backoff and
    dead-letter hand-off.
    """

    def __init__(
        self,
        store: TableStore,
        dead_letters: DeadLetterStore | None = None,
        config: RetryConfig | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Any] | None = None,
    ):
        """
        Args:
            store: Table store holding entity rows
            dead_letters: Dead-letter store (built on ``store`` if omitted)
            config: Default retry configuration
            classifier: Error classifier (default vocabulary if omitted)
            sleep: Wait function used when no cancellation token is given
        """
        self.store = store
        self.dead_letters = dead_letters or DeadLetterStore(store)
        self.config = config or DEFAULT_RETRY_CONFIG
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep

    # =======================
    # CLASSIFICATION / POLICY
    # =======================

    def classify_error(self, error: BaseException | str) -> ErrorKind:
        return self.classifier.classify(error)

    def is_retryable(self, error_kind: ErrorKind, config: RetryConfig | None = None) -> bool:
        return ErrorKind(error_kind) in (config or self.config).retryable_error_kinds

    def calculate_next_retry_delay(self, attempt: int, config: RetryConfig | None = None) -> int:
        return calculate_delay(attempt, config or self.config)

    # =======================
    # EXECUTION
    # =======================

    def execute_with_retry(
        self,
        operation: Callable[[], Any],
        entity_type: EntityType,
        entity_id: str,
        organization_id: str,
        config: RetryConfig | None = None,
        cancellation: CancellationToken | None = None,
        step: str | None = None,
        persist: bool = True,
    ) -> RetryResult:
        """
        Run ``operation`` until it succeeds, fails permanently or exhausts
        ``config.max_retries`` retries.

        Args:
            operation: Zero-argument callable performing one attempt
            entity_type: Kind of entity whose bookkeeping is updated
            entity_id: Entity id
            organization_id: Owning organization (stored on DLQ entries)
            config: Overrides the service's default RetryConfig
            cancellation: Token that can cut backoff waits short
            step: Step name recorded in logs and DLQ metadata
            persist: Read and write the entity's retry_count; when False the
                attempt count starts at 1 and stays in this call

        Returns:
            RetryResult describing the final outcome
        """
        cfg = config or self.config
        table = self._table_for(entity_type)
        attempt = (self._current_retry_count(table, entity_id) if persist else 0) + 1
        first_failure_at: datetime | None = None
        log_extra = {"entity_type": entity_type, "entity_id": entity_id, "step": step}

        while True:
            try:
                value = operation()
            except Exception as e:
                message = error_message(e)
                kind = self.classify_error(e)
                retryable = self.is_retryable(kind, cfg)
                is_last_attempt = attempt >= cfg.max_retries + 1
                first_failure_at = first_failure_at or datetime.now(timezone.utc)
                increment_counter(errors_total, error_kind=kind.value)

                logger.info(
                    f"Attempt {attempt} failed",
                    extra={
                        **log_extra,
                        "attempt": attempt,
                        "error_kind": kind.value,
                        "error_message": message,
                        "retryable": retryable,
                    }
                )

                if not retryable or is_last_attempt:
                    sent = False
                    if retryable:
                        sent = self._send_to_dead_letter_queue(
                            entity_type, entity_id, organization_id, message, kind,
                            attempt - 1, first_failure_at, cfg, step
                        )
                        outcome = "dead_letter"
                    else:
                        outcome = "failed"
                    increment_counter(retry_attempts_total, entity_type=entity_type, outcome=outcome)
                    return RetryResult(
                        success=False,
                        attempt_number=attempt,
                        error_kind=kind,
                        error_message=message,
                        final_attempt=is_last_attempt,
                        sent_to_dead_letter_queue=sent,
                    )

                delay_ms = calculate_delay(attempt, cfg)
                if persist:
                    self._update_retry_info(table, entity_id, attempt, next_retry_at(delay_ms))
                increment_counter(retry_attempts_total, entity_type=entity_type, outcome="retry")
                logger.info(
                    f"Retrying in {delay_ms}ms",
                    extra={**log_extra, "attempt": attempt, "delay_ms": delay_ms}
                )

                if self._wait(delay_ms / 1000.0, cancellation):
                    increment_counter(retry_attempts_total, entity_type=entity_type, outcome="cancelled")
                    logger.warning(
                        "Retry wait cancelled",
                        extra={**log_extra, "attempt": attempt}
                    )
                    return RetryResult(
                        success=False,
                        attempt_number=attempt,
                        error_kind=kind,
                        error_message=message,
                        cancelled=True,
                    )
                attempt += 1
                continue

            if persist and attempt > 1:
                self._reset_retry_count(table, entity_id)
            increment_counter(retry_attempts_total, entity_type=entity_type, outcome="success")
            return RetryResult(success=True, value=value, attempt_number=attempt)

    def _wait(self, seconds: float, cancellation: CancellationToken | None) -> bool:
        if cancellation is not None:
            return cancellation.wait(seconds)
        if self._sleep is not None:
            self._sleep(seconds)
            return False
        return CancellationToken().wait(seconds)

    # =======================
    # BOOKKEEPING
    # =======================

    @staticmethod
    def _table_for(entity_type: str) -> str:
        try:
            return ENTITY_TABLES[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

    def _current_retry_count(self, table: str, entity_id: str) -> int:
        row = select_one(self.store, table, [eq("id", entity_id)])
        if row is None:
            logger.warning(
                "Entity not found while reading retry count",
                extra={"table": table, "entity_id": entity_id}
            )
            return 0
        return row.get("retry_count") or 0

    def _update_retry_info(self, table: str, entity_id: str, retry_count: int, retry_at: datetime) -> None:
        self.store.update(
            table,
            {
                "retry_count": retry_count,
                "next_retry_at": retry_at,
                "updated_at": datetime.now(timezone.utc),
            },
            [eq("id", entity_id)]
        )

    def clear_retry_info(self, entity_type: EntityType, entity_id: str) -> None:
        """Zero the retry count and drop any scheduled retry for an entity."""
        self._reset_retry_count(self._table_for(entity_type), entity_id)

    def _reset_retry_count(self, table: str, entity_id: str) -> None:
        self.store.update(
            table,
            {
                "retry_count": 0,
                "next_retry_at": None,
                "updated_at": datetime.now(timezone.utc),
            },
            [eq("id", entity_id)]
        )

    def _send_to_dead_letter_queue(
        self,
        entity_type: EntityType,
        entity_id: str,
        organization_id: str,
        message: str,
        kind: ErrorKind,
        total_retries: int,
        first_failure_at: datetime,
        cfg: RetryConfig,
        step: str | None,
    ) -> bool:
        try:
            self.dead_letters.enqueue(
                organization_id=organization_id,
                entity_type=entity_type,
                entity_id=entity_id,
                original_error=message,
                error_type=kind,
                total_retries=total_retries,
                first_failure_at=first_failure_at,
                metadata={"max_retries": cfg.max_retries, "step": step},
            )
            return True
        except Exception as e:
            logger.error(
                "Failed to insert into dead letter queue",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(e)},
                exc_info=True
            )
            return False

    # =======================
    # QUERIES
    # =======================

    def get_entities_ready_for_retry(self, organization_id: str, entity_type: EntityType = "etl_file") -> list[dict[str, Any]]:
        """Entity rows whose scheduled retry time has passed."""
        return self.store.select(
            self._table_for(entity_type),
            [
                eq("organization_id", organization_id),
                gt("retry_count", 0),
                lte("next_retry_at", datetime.now(timezone.utc)),
            ],
            order_by="next_retry_at"
        )

    def get_dead_letter_entries(
        self,
        organization_id: str,
        resolved: bool | None = False,
        limit: int = 100
    ) -> list[DeadLetterEntry]:
        return self.dead_letters.list_entries(organization_id, resolved=resolved, limit=limit)

    def resolve_dead_letter_entry(self, entry_id: str, resolved_by: str, notes: str | None = None) -> bool:
        return self.dead_letters.resolve(entry_id, resolved_by, notes)

    def get_retry_statistics(self, organization_id: str) -> RetryStatistics:
        """
        Aggregate retry health for an organization.

        success_rate is the share of retrying entities that have not (yet)
        been dead-lettered, in percent; 100 when nothing is retrying.
        """
        retrying = self.store.select(
            FileRecord.TABLE,
            [eq("organization_id", organization_id), gt("retry_count", 0)]
        )
        active_retries = len(retrying)
        dlq_size = self.dead_letters.count_unresolved(organization_id)

        total = active_retries + dlq_size
        success_rate = (active_retries / total) * 100 if total > 0 else 100.0
        average_retries = (
            sum(row.get("retry_count") or 0 for row in retrying) / max(active_retries, 1)
        )

        return RetryStatistics(
            active_retries=active_retries,
            dead_letter_queue_size=dlq_size,
            success_rate=success_rate,
            average_retries=average_retries,
        )
