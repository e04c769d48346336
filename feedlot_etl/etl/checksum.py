"""
Content checksums and duplicate-upload detection.
"""

import hashlib
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from ..core.models.file_record import FileRecord, FileState

DEFAULT_ALGORITHM = "sha256"

# A duplicate older than this may be loaded again whatever its state
REPROCESS_AFTER = timedelta(days=30)


def calculate_checksum(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Hex digest of ``data`` (sha256 unless another hashlib algorithm is named)."""
    digest = hashlib.new(algorithm)
    digest.update(data)
    return digest.hexdigest()


class DuplicateCheck(BaseModel):
    """
    Outcome of a duplicate lookup.

    Attributes:
        is_duplicate: Another file of the organization has the same checksum
        original_file: Most recent file with that checksum
        allow_reprocessing: Registering the upload again is permitted
        reason: Why reprocessing is or is not allowed
    """

    is_duplicate: bool
    original_file: FileRecord | None = None
    allow_reprocessing: bool = True
    reason: str


def reprocessing_allowed(original: FileRecord, now: datetime | None = None) -> bool:
    """
    A duplicate may be loaded again unless its original loaded recently.

    Failed originals are always retryable; files still in flight may be stuck.
    """
    now = now or datetime.now(timezone.utc)
    if FileState(original.current_state) == FileState.FAILED:
        return True
    if original.created_at < now - REPROCESS_AFTER:
        return True
    return FileState(original.current_state) != FileState.LOADED


def check_duplicate(history: list[FileRecord]) -> DuplicateCheck:
    """Decide on an upload given the files sharing its checksum, newest first."""
    if not history:
        return DuplicateCheck(is_duplicate=False, reason="No duplicate files found")

    original = history[0]
    allowed = reprocessing_allowed(original)
    return DuplicateCheck(
        is_duplicate=True,
        original_file=original,
        allow_reprocessing=allowed,
        reason=(
            "Duplicate found but reprocessing allowed"
            if allowed
            else f"Duplicate of {original.filename}, loaded {original.created_at:%Y-%m-%d}"
        ),
    )
