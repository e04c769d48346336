"""
Error taxonomy for the ETL engine.

ErrorKind drives retry decisions; the exception classes mark the failure
modes the engine raises itself.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failure for retry decisions."""

    TRANSIENT = "transient"  # network issues, temporary database unavailability
    PERMANENT = "permanent"  # schema errors, validation failures, malformed data
    RATE_LIMITED = "rate_limited"  # upstream rate limiting
    RESOURCE = "resource"  # memory, disk space, connection pool exhaustion


class EtlError(Exception):
    """Base class for errors raised by the ETL engine."""


class InvalidTransition(EtlError):
    """
    A state transition was attempted from a state that does not match the
    stored one, or along an edge the state machine does not allow.

    The write is rejected before it is applied, so stored state is unchanged.
    """

    def __init__(self, file_id: str, from_state, to_state, actual_state=None, reason: str | None = None):
        self.file_id = file_id
        self.from_state = from_state
        self.to_state = to_state
        self.actual_state = actual_state
        detail = reason or (
            f"stored state is {_state_name(actual_state)}"
            if actual_state is not None
            else "edge not allowed"
        )
        super().__init__(
            f"Invalid transition for file {file_id}: "
            f"{_state_name(from_state)} -> {_state_name(to_state)} ({detail})"
        )


class FileRecordNotFound(EtlError):
    """No FileRecord exists for the given id."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"ETL file record not found: {file_id}")


class DuplicateKeyError(EtlError):
    """An insert collided with a unique key in the store."""

    def __init__(self, table: str, key: dict):
        self.table = table
        self.key = key
        super().__init__(f"Duplicate key in {table}: {key}")


class DuplicateFileError(EtlError):
    """An upload matches the content of a recent file that must not be reprocessed."""

    def __init__(self, checksum: str, original_file_id: str, reason: str):
        self.checksum = checksum
        self.original_file_id = original_file_id
        super().__init__(f"Duplicate of file {original_file_id}: {reason}")


class DimensionLookupError(EtlError):
    """A dimension lookup failed at the infrastructure level (not a miss)."""


class ParseError(EtlError):
    """The source file could not be parsed into rows."""


def _state_name(state) -> str:
    if state is None:
        return "None"
    return getattr(state, "value", str(state))
