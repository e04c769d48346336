"""
File processing orchestration.

Coordinates the flow: download -> parse -> validate -> resolve -> upsert,
moving the file through UPLOADED -> PARSING -> VALIDATING -> LOADING ->
LOADED (or FAILED). Every storage step runs under the retry executor; per-row
failures are recorded and the file keeps loading.
"""

import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from pydantic import BaseModel, Field

from ..core.backoff import RetryConfig
from ..core.classifier import error_message
from ..core.errors import DimensionLookupError, FileRecordNotFound, InvalidTransition, ParseError
from ..core.models.fact_row import FactRow
from ..core.models.file_record import FileRecord, FileState
from ..core.models.run_log import LogCategory, RunLogEntry
from ..integrity.dimension_lookup import StoreDimensionLookup
from ..integrity.resolver import DimensionResolver
from ..observability.logger import get_logger, log_operation
from ..observability.metrics import (
    file_processing_duration_seconds,
    files_processed_total,
    increment_counter,
    invalid_transitions_total,
    observe_histogram,
    rows_processed_total,
)
from ..pipelines.base import BaseValidator
from ..retry.cancellation import CancellationToken
from ..retry.dead_letter import DeadLetterStore
from ..retry.retry_logic import RetryLogicService
from ..warehouse.blob_store import BlobStore
from ..warehouse.run_log import log_event, query_run_log_by_file
from ..warehouse.store import TableStore, new_id
from ..warehouse.upsert import ResolvedRow, UpsertEngine
from .state_machine import FileStateMachine

logger = get_logger(__name__)

ACTOR = "orchestrator"
ENTITY_TYPE = "etl_file"


class CsvParser(Protocol):
    def parse(self, data: bytes, options: Any = None) -> list[dict[str, Any]]:
        ...


class ProcessFileRequest(BaseModel):
    file_id: str
    parse_options: dict[str, Any] | None = None


class RunSummary(BaseModel):
    total: int = 0
    processed: int = 0
    failed: int = 0
    pending: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


class OrchestratorResult(BaseModel):
    """
    Outcome of one processing run.

    Attributes:
        success: The file reached LOADED
        file_id: Processed file
        run_id: Id grouping this run's log entries
        final_state: State stored when the run ended
        summary: Row counters
        errors: Row and file level errors
        warnings: Validation and referential warnings
        duration_ms: Wall time of the run
    """

    success: bool
    file_id: str
    run_id: str
    final_state: FileState
    summary: RunSummary = Field(default_factory=RunSummary)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class FileStatus(BaseModel):
    file: FileRecord
    run_log: list[RunLogEntry]
    has_unresolved_dead_letter: bool


class _RunContext:
    """Mutable state of one run, shared by row workers."""

    def __init__(self, record: FileRecord, run_id: str, config: RetryConfig | None):
        self.record = record
        self.run_id = run_id
        self.config = config
        self.summary = RunSummary()
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.loadable = 0
        self.cancelled = False
        self.started = time.monotonic()
        self._lock = threading.Lock()

    def record_row(self, action: str, error: str | None = None, warnings: list[str] | None = None) -> None:
        with self._lock:
            if action == "failed":
                self.summary.failed += 1
                if error:
                    self.errors.append(error)
            else:
                setattr(self.summary, action, getattr(self.summary, action) + 1)
                self.summary.processed += 1
            if warnings:
                self.warnings.extend(warnings)


class Orchestrator:
    """
    Sequences one file through parsing, validation, resolution and upsert.

    One file is handled by one caller at a time: the in-flight set rejects a
    second concurrent call for the same file, and the conditional
    UPLOADED -> PARSING transition rejects concurrent workers in other
    processes.
    """

    def __init__(
        self,
        store: TableStore,
        blobs: BlobStore,
        parser: CsvParser,
        validators: dict[str, BaseValidator],
        state_machine: FileStateMachine | None = None,
        retry_service: RetryLogicService | None = None,
        resolver: DimensionResolver | None = None,
        upsert_engine: UpsertEngine | None = None,
        retry_config: RetryConfig | None = None,
        batch_size: int = 100,
        row_workers: int = 1,
        cancel_poll_interval: float = 1.0,
    ):
        """
        Args:
            store: Table store
            blobs: Blob store holding uploaded files
            parser: CSV parser
            validators: Validator per pipeline name
            state_machine: File state machine (built on ``store`` if omitted)
            retry_service: Retry executor (built on ``store`` if omitted)
            resolver: Dimension resolver (built on ``store`` if omitted)
            upsert_engine: Upsert engine (built on ``store`` if omitted)
            retry_config: Retry configuration for every step
            batch_size: Rows per loading sub-batch
            row_workers: Threads resolving and upserting rows within a batch
            cancel_poll_interval: Seconds between checks for an external FAILED mark
        """
        self.store = store
        self.blobs = blobs
        self.parser = parser
        self.validators = validators
        self.state_machine = state_machine or FileStateMachine(store)
        self.retry_service = retry_service or RetryLogicService(store)
        self.resolver = resolver or DimensionResolver(StoreDimensionLookup(store))
        self.upsert_engine = upsert_engine or UpsertEngine(store)
        self.retry_config = retry_config
        self.batch_size = batch_size
        self.row_workers = max(1, row_workers)
        self.cancel_poll_interval = cancel_poll_interval
        self._active_files: set[str] = set()
        self._active_guard = threading.Lock()

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self.retry_service.dead_letters

    def _claim(self, file_id: str) -> bool:
        with self._active_guard:
            if file_id in self._active_files:
                return False
            self._active_files.add(file_id)
            return True

    def _release(self, file_id: str) -> None:
        with self._active_guard:
            self._active_files.discard(file_id)

    # =======================
    # ENTRY POINTS
    # =======================

    def process_file(self, request: ProcessFileRequest) -> OrchestratorResult:
        """
        Process an UPLOADED file to LOADED or FAILED.

        Raises:
            InvalidTransition: The file is not UPLOADED or is already being
                processed by this process
            FileRecordNotFound: Unknown file id
        """
        if not self._claim(request.file_id):
            raise InvalidTransition(
                request.file_id, FileState.UPLOADED, FileState.PARSING,
                reason="file is already being processed"
            )
        try:
            record = self.state_machine.require_file(request.file_id)
            if FileState(record.current_state) != FileState.UPLOADED:
                increment_counter(invalid_transitions_total, to_state=FileState.PARSING.value)
                raise InvalidTransition(
                    record.id, FileState.UPLOADED, FileState.PARSING,
                    actual_state=record.current_state
                )

            ctx = _RunContext(record, new_id(), self.retry_config)
            with log_operation(
                "Processing file", logger=logger,
                file_id=record.id, run_id=ctx.run_id, pipeline=record.pipeline
            ):
                result = self._run(ctx, request)

            increment_counter(
                files_processed_total, pipeline=record.pipeline, final_state=result.final_state.value
            )
            observe_histogram(
                file_processing_duration_seconds, result.duration_ms / 1000.0, pipeline=record.pipeline
            )
            return result
        finally:
            self._release(request.file_id)

    def retry_file(
        self,
        file_id: str,
        actor: str,
        parse_options: dict[str, Any] | None = None,
        keep_retry_count: bool = False,
    ) -> OrchestratorResult:
        """
        Reset a FAILED or LOADED file to UPLOADED and reprocess it entirely.

        An operator retry starts with a fresh retry budget; the retry queue
        passes ``keep_retry_count`` so an interrupted backoff resumes.
        """
        self.state_machine.reset_for_retry(file_id, actor, reason=f"Reprocessing requested by {actor}")
        if not keep_retry_count:
            self.retry_service.clear_retry_info(ENTITY_TYPE, file_id)
        return self.process_file(ProcessFileRequest(file_id=file_id, parse_options=parse_options))

    def get_file_status(self, file_id: str) -> FileStatus:
        record = self.state_machine.require_file(file_id)
        return FileStatus(
            file=record,
            run_log=query_run_log_by_file(self.store, file_id),
            has_unresolved_dead_letter=self.dead_letters.has_unresolved(ENTITY_TYPE, file_id),
        )

    def process_retry_queue(self, organization_id: str, actor: str = "retry-queue") -> list[OrchestratorResult]:
        """
        Reprocess FAILED files whose scheduled retry is due.

        Files with an unresolved dead-letter entry are left for an operator.
        """
        results = []
        for row in self.retry_service.get_entities_ready_for_retry(organization_id, ENTITY_TYPE):
            file_id = row["id"]
            if FileState(row["current_state"]) != FileState.FAILED:
                continue
            if self.dead_letters.has_unresolved(ENTITY_TYPE, file_id):
                logger.info("Skipping dead-lettered file", extra={"file_id": file_id})
                continue
            try:
                results.append(self.retry_file(file_id, actor, keep_retry_count=True))
            except InvalidTransition as e:
                logger.warning(
                    "Retry queue skipped file",
                    extra={"file_id": file_id, "error": str(e)}
                )
        return results

    def process_marked_dead_letters(self, organization_id: str, actor: str) -> list[OrchestratorResult]:
        """
        Reprocess files whose dead-letter entries an operator marked for retry.

        A file is reprocessed once however many of its entries are marked;
        those entries are resolved once the new run has finished.
        """
        by_file: OrderedDict[str, list[str]] = OrderedDict()
        for entry in self.dead_letters.list_marked(organization_id):
            by_file.setdefault(entry.entity_id, []).append(entry.id)

        results = []
        for file_id, entry_ids in by_file.items():
            try:
                result = self.retry_file(file_id, actor)
            except (InvalidTransition, FileRecordNotFound) as e:
                logger.warning(
                    "Marked dead letter entry skipped",
                    extra={"file_id": file_id, "entries": entry_ids, "error": str(e)}
                )
                continue
            for entry_id in entry_ids:
                self.dead_letters.resolve(
                    entry_id, actor, notes=f"Reprocessed in run {result.run_id}: {result.final_state.value}"
                )
            results.append(result)
        return results

    # =======================
    # RUN
    # =======================

    def _run(self, ctx: _RunContext, request: ProcessFileRequest) -> OrchestratorResult:
        record = ctx.record
        token = CancellationToken(
            predicate=lambda: self._is_failed(record.id),
            poll_interval=self.cancel_poll_interval
        )

        try:
            self._transition(ctx, FileState.UPLOADED, FileState.PARSING, "Processing started")

            download = self._with_retry(ctx, lambda: self.blobs.download(record.filepath), token, "download")
            if not download.success:
                return self._fail(ctx, f"Download failed: {download.error_message}")

            try:
                rows = self.parser.parse(download.value, request.parse_options)
            except ParseError as e:
                return self._fail(ctx, str(e))
            self._log(ctx, LogCategory.PARSING, f"Parsed {len(rows)} rows", {"rows": len(rows)})

            self._transition(ctx, FileState.PARSING, FileState.VALIDATING, "Parsing completed")
            validator = self.validators[record.pipeline]
            outcome = validator.validate(rows)
            ctx.summary.total = outcome.total_rows
            ctx.summary.failed = outcome.invalid_row_count
            ctx.errors.extend(f"Row {i.row_number}: {i.field}: {i.message}" for i in outcome.errors)
            ctx.warnings.extend(f"Row {i.row_number}: {i.field}: {i.message}" for i in outcome.warnings)
            self._log(
                ctx, LogCategory.VALIDATION,
                f"{len(outcome.valid_rows)} of {outcome.total_rows} rows valid",
                {
                    "valid_rows": len(outcome.valid_rows),
                    "errors": len(outcome.errors),
                    "warnings": len(outcome.warnings),
                },
                level="warning" if outcome.errors else "info"
            )
            if outcome.total_rows > 0 and not outcome.valid_rows:
                return self._fail(ctx, "Validation failed: no valid rows")

            self._transition(ctx, FileState.VALIDATING, FileState.LOADING, "Validation completed")
            ctx.loadable = len(outcome.valid_rows)
            self._load_rows(ctx, outcome.valid_rows, token)
            if ctx.cancelled:
                return self._result(ctx, success=False)

            loaded = ctx.summary.processed
            if ctx.loadable > 0 and loaded == 0:
                return self._fail(ctx, f"All {ctx.loadable} rows failed to load")

            self.retry_service.clear_retry_info(ENTITY_TYPE, record.id)
            self._transition(
                ctx, FileState.LOADING, FileState.LOADED, "Loading completed",
                metadata={"summary": ctx.summary.model_dump()}
            )
            return self._result(ctx, success=True)

        except InvalidTransition as e:
            # Typically the file was marked FAILED by someone else mid-run
            logger.error(
                "Run aborted by invalid transition",
                extra={"file_id": record.id, "run_id": ctx.run_id, "error": str(e)}
            )
            ctx.errors.append(str(e))
            return self._result(ctx, success=False)
        except Exception as e:
            logger.error(
                "Run aborted by unexpected error",
                extra={"file_id": record.id, "run_id": ctx.run_id, "error": str(e)},
                exc_info=True
            )
            return self._fail(ctx, error_message(e))

    def _load_rows(self, ctx: _RunContext, rows: list[FactRow], token: CancellationToken) -> None:
        for start in range(0, len(rows), self.batch_size):
            if token.is_cancelled:
                ctx.cancelled = True
                break

            # Rows sharing a natural key run in order on one worker
            groups: OrderedDict[str, list[FactRow]] = OrderedDict()
            for row in rows[start:start + self.batch_size]:
                groups.setdefault(row.natural_key, []).append(row)

            def run_group(group: list[FactRow]) -> None:
                for row in group:
                    self._process_row(ctx, row, token)

            if self.row_workers == 1:
                for group in groups.values():
                    run_group(group)
            else:
                with ThreadPoolExecutor(max_workers=self.row_workers) as pool:
                    for future in [pool.submit(run_group, g) for g in groups.values()]:
                        future.result()

            self._log(
                ctx, LogCategory.UPSERT,
                f"Loaded rows {start + 1}-{min(start + self.batch_size, len(rows))}",
                {"summary": ctx.summary.model_dump()}
            )

    def _process_row(self, ctx: _RunContext, row: FactRow, token: CancellationToken) -> None:
        record = ctx.record
        if ctx.cancelled:
            return

        resolution = self._with_retry(
            ctx, lambda: self._resolve(row, record.organization_id), token, f"resolve:{row.natural_key}",
            persist=False
        )
        if resolution.cancelled:
            ctx.cancelled = True
            return
        if not resolution.success:
            self._row_failed(ctx, row, f"dimension resolution failed: {resolution.error_message}")
            return

        check = resolution.value
        upsert = self._with_retry(
            ctx,
            lambda: self.upsert_engine.upsert(
                ResolvedRow(row=row, resolution=check), record.organization_id, record.id
            ),
            token,
            f"upsert:{row.natural_key}",
            persist=False
        )
        if upsert.cancelled:
            ctx.cancelled = True
            return
        if not upsert.success:
            self._row_failed(ctx, row, f"upsert failed: {upsert.error_message}")
            return

        warnings = [f"{row.natural_key}: {w.field}: {w.message}" for w in check.warnings]
        ctx.record_row(upsert.value.action, warnings=warnings)
        increment_counter(
            rows_processed_total, pipeline=record.pipeline,
            status="pending" if upsert.value.action == "pending" else "processed"
        )

    def _row_failed(self, ctx: _RunContext, row: FactRow, message: str) -> None:
        ctx.record_row("failed", error=f"{row.natural_key}: {message}")
        increment_counter(rows_processed_total, pipeline=ctx.record.pipeline, status="failed")
        self._log(
            ctx, LogCategory.UPSERT, f"Row failed: {message}",
            {"natural_key": row.natural_key}, level="error"
        )

    def _resolve(self, row: FactRow, organization_id: str):
        check = self.resolver.resolve(row.dimension_codes(), organization_id)
        if not check.is_valid:
            failures = "; ".join(i.message for i in check.errors if i.severity == "error")
            raise DimensionLookupError(failures)
        return check

    # =======================
    # HELPERS
    # =======================

    def _with_retry(self, ctx: _RunContext, operation, token: CancellationToken, step: str, persist: bool = True):
        return self.retry_service.execute_with_retry(
            operation,
            ENTITY_TYPE,
            ctx.record.id,
            ctx.record.organization_id,
            config=ctx.config,
            cancellation=token,
            step=step,
            persist=persist,
        )

    def _is_failed(self, file_id: str) -> bool:
        record = self.state_machine.get_file(file_id)
        return record is not None and FileState(record.current_state) == FileState.FAILED

    def _transition(
        self,
        ctx: _RunContext,
        from_state: FileState,
        to_state: FileState,
        reason: str,
        metadata: dict[str, Any] | None = None
    ) -> None:
        self.state_machine.transition(
            ctx.record.id, from_state, to_state, ACTOR, reason, ctx.run_id, metadata
        )

    def _log(
        self,
        ctx: _RunContext,
        category: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        level: str = "info"
    ) -> None:
        log_event(
            self.store,
            run_id=ctx.run_id,
            file_id=ctx.record.id,
            organization_id=ctx.record.organization_id,
            category=category,
            message=message,
            level=level,
            metadata=metadata,
        )

    def _fail(self, ctx: _RunContext, reason: str) -> OrchestratorResult:
        ctx.errors.append(reason)
        try:
            self.state_machine.fail(ctx.record.id, ACTOR, reason, ctx.run_id)
        except InvalidTransition as e:
            logger.warning(
                "File could not be marked FAILED",
                extra={"file_id": ctx.record.id, "error": error_message(e)}
            )
        return self._result(ctx, success=False)

    def _result(self, ctx: _RunContext, success: bool) -> OrchestratorResult:
        final_state = self.state_machine.require_file(ctx.record.id).current_state
        return OrchestratorResult(
            success=success,
            file_id=ctx.record.id,
            run_id=ctx.run_id,
            final_state=final_state,
            summary=ctx.summary,
            errors=ctx.errors,
            warnings=ctx.warnings,
            duration_ms=int((time.monotonic() - ctx.started) * 1000),
        )
