"""
File lifecycle state machine.

Every write of ``etl_file.current_state`` goes through transition(), which is
a conditional update on the expected current state. Concurrent workers can
therefore never both win the same edge, and a file marked FAILED elsewhere
cannot be silently moved forward.
"""

from datetime import datetime, timezone
from typing import Any

from ..core.errors import DuplicateFileError, FileRecordNotFound, InvalidTransition
from ..core.models.file_record import FileRecord, FileState, PipelineName
from ..core.models.run_log import LogCategory
from ..observability.logger import get_logger
from ..observability.metrics import increment_counter, invalid_transitions_total, state_transitions_total
from ..warehouse.run_log import log_event
from ..warehouse.store import TableStore, eq, ne, new_id, select_one
from .checksum import DuplicateCheck, check_duplicate

logger = get_logger(__name__)

TABLE = FileRecord.TABLE

ALLOWED_TRANSITIONS: dict[FileState, frozenset[FileState]] = {
    FileState.UPLOADED: frozenset({FileState.PARSING, FileState.FAILED}),
    FileState.PARSING: frozenset({FileState.VALIDATING, FileState.FAILED}),
    FileState.VALIDATING: frozenset({FileState.LOADING, FileState.FAILED}),
    FileState.LOADING: frozenset({FileState.LOADED, FileState.FAILED}),
    # Reset edges, used only for explicit retry and reprocessing
    FileState.LOADED: frozenset({FileState.UPLOADED}),
    FileState.FAILED: frozenset({FileState.UPLOADED}),
}

# Attempts at reading and failing a file whose state keeps moving underneath us
FAIL_ATTEMPTS = 3


def is_allowed(from_state: FileState, to_state: FileState) -> bool:
    return FileState(to_state) in ALLOWED_TRANSITIONS.get(FileState(from_state), frozenset())


class FileStateMachine:
    """Registers files and moves them through their lifecycle."""

    def __init__(self, store: TableStore):
        self.store = store

    def register_file(
        self,
        organization_id: str,
        filename: str,
        filepath: str,
        pipeline: PipelineName,
        file_id: str | None = None,
        checksum: str | None = None,
        force: bool = False,
    ) -> FileRecord:
        """
        Create a FileRecord in state UPLOADED.

        Args:
            checksum: Content digest; when given, duplicates are checked
            force: Register a blocked duplicate anyway

        Raises:
            DuplicateFileError: The content matches a recently loaded file
                and ``force`` is not set
        """
        duplicate = None
        if checksum is not None:
            duplicate = self.find_duplicate_file(checksum, organization_id)
            if duplicate.is_duplicate and not duplicate.allow_reprocessing and not force:
                logger.warning(
                    "Duplicate upload rejected",
                    extra={
                        "organization_id": organization_id,
                        "filename": filename,
                        "original_file_id": duplicate.original_file.id,
                    }
                )
                raise DuplicateFileError(checksum, duplicate.original_file.id, duplicate.reason)

        record = FileRecord(
            id=file_id or new_id(),
            organization_id=organization_id,
            filename=filename,
            filepath=filepath,
            pipeline=pipeline,
            checksum=checksum,
        )
        metadata = {"to_state": FileState.UPLOADED.value, "pipeline": pipeline}
        if duplicate is not None and duplicate.is_duplicate:
            metadata["duplicate_of"] = duplicate.original_file.id
            metadata["forced"] = not duplicate.allow_reprocessing
        row = self.store.insert(TABLE, record.model_dump())
        log_event(
            self.store,
            run_id=new_id(),
            file_id=record.id,
            organization_id=organization_id,
            category=LogCategory.STATE_TRANSITION,
            message=f"File registered: {filename}",
            metadata=metadata,
        )
        logger.info(
            "File registered",
            extra={"file_id": record.id, "organization_id": organization_id, "pipeline": pipeline}
        )
        return FileRecord(**row)

    def get_file(self, file_id: str) -> FileRecord | None:
        row = select_one(self.store, TABLE, [eq("id", file_id)])
        return FileRecord(**row) if row else None

    def require_file(self, file_id: str) -> FileRecord:
        record = self.get_file(file_id)
        if record is None:
            raise FileRecordNotFound(file_id)
        return record

    def list_files(self, organization_id: str, state: FileState | None = None) -> list[FileRecord]:
        where = [eq("organization_id", organization_id)]
        if state is not None:
            where.append(eq("current_state", FileState(state)))
        return [FileRecord(**row) for row in self.store.select(TABLE, where, order_by="created_at")]

    def get_checksum_history(
        self,
        checksum: str,
        organization_id: str,
        exclude_file_id: str | None = None
    ) -> list[FileRecord]:
        """Files of an organization with this content checksum, newest first."""
        where = [eq("organization_id", organization_id), eq("checksum", checksum)]
        if exclude_file_id is not None:
            where.append(ne("id", exclude_file_id))
        rows = self.store.select(TABLE, where, order_by="created_at", descending=True)
        return [FileRecord(**row) for row in rows]

    def find_duplicate_file(
        self,
        checksum: str,
        organization_id: str,
        exclude_file_id: str | None = None
    ) -> DuplicateCheck:
        return check_duplicate(self.get_checksum_history(checksum, organization_id, exclude_file_id))

    def transition(
        self,
        file_id: str,
        from_state: FileState,
        to_state: FileState,
        actor: str,
        reason: str | None = None,
        run_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FileRecord:
        """
        Move a file from ``from_state`` to ``to_state``.

        Raises:
            InvalidTransition: The edge is not allowed or the stored state is
                not ``from_state``; nothing was written
            FileRecordNotFound: No file with this id
        """
        from_state = FileState(from_state)
        to_state = FileState(to_state)

        if not is_allowed(from_state, to_state):
            increment_counter(invalid_transitions_total, to_state=to_state.value)
            raise InvalidTransition(file_id, from_state, to_state)

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"current_state": to_state, "updated_at": now}
        if to_state == FileState.PARSING:
            values["processing_started_at"] = now
        elif to_state in (FileState.LOADED, FileState.FAILED):
            values["completed_at"] = now
        elif to_state == FileState.UPLOADED:
            values["processing_started_at"] = None
            values["completed_at"] = None
        if to_state == FileState.FAILED:
            values["last_error"] = reason

        updated = self.store.update(
            TABLE, values, [eq("id", file_id), eq("current_state", from_state)]
        )
        if not updated:
            current = self.require_file(file_id)
            increment_counter(invalid_transitions_total, to_state=to_state.value)
            logger.warning(
                "Transition rejected: stored state differs",
                extra={
                    "file_id": file_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                    "actual_state": FileState(current.current_state).value,
                    "actor": actor,
                }
            )
            raise InvalidTransition(file_id, from_state, to_state, actual_state=current.current_state)

        record = self.require_file(file_id)
        increment_counter(
            state_transitions_total, from_state=from_state.value, to_state=to_state.value
        )
        log_event(
            self.store,
            run_id=run_id or new_id(),
            file_id=file_id,
            organization_id=record.organization_id,
            category=LogCategory.STATE_TRANSITION,
            level="error" if to_state == FileState.FAILED else "info",
            message=f"{from_state.value} -> {to_state.value}" + (f": {reason}" if reason else ""),
            metadata={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor": actor,
                "reason": reason,
                **(metadata or {}),
            },
        )
        logger.info(
            "File state transition",
            extra={
                "file_id": file_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor": actor,
            }
        )
        return record

    def fail(self, file_id: str, actor: str, reason: str, run_id: str | None = None) -> FileRecord:
        """
        Mark a file FAILED from whatever non-terminal state it is in.

        Raises:
            InvalidTransition: The file is already LOADED or FAILED
        """
        for _ in range(FAIL_ATTEMPTS):
            current = self.require_file(file_id).current_state
            if FileState(current).is_terminal:
                raise InvalidTransition(
                    file_id, current, FileState.FAILED, reason="file is in a terminal state"
                )
            try:
                return self.transition(file_id, current, FileState.FAILED, actor, reason, run_id)
            except InvalidTransition:
                continue
        raise InvalidTransition(
            file_id, current, FileState.FAILED, reason="state kept changing during fail"
        )

    def reset_for_retry(self, file_id: str, actor: str, reason: str, run_id: str | None = None) -> FileRecord:
        """Move a FAILED or LOADED file back to UPLOADED for reprocessing."""
        current = self.require_file(file_id).current_state
        if not FileState(current).is_terminal:
            raise InvalidTransition(
                file_id, current, FileState.UPLOADED, reason="only FAILED or LOADED files can be reset"
            )
        return self.transition(file_id, current, FileState.UPLOADED, actor, reason, run_id)
