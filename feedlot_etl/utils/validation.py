"""
Input validation for operator-supplied values.

Guards the identifiers, names and limits that reach the store from the admin
CLI, so malformed input fails fast with a readable message.
"""

import re

from ..core.errors import ErrorKind

ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]+$")
MAX_ID_LENGTH = 255
MAX_ACTOR_LENGTH = 100
MAX_NOTES_LENGTH = 2000
MAX_PATH_LENGTH = 4096


class InputValidationError(ValueError):
    """Raised when operator input is rejected."""
    pass


def validate_id(value: str, field_name: str = "id") -> str:
    """
    Validate an entity identifier (file, dead-letter entry, pending entry, organization).

    Identifiers are non-empty strings of letters, digits, hyphens,
    underscores and dots.

    Returns:
        The identifier stripped of surrounding whitespace

    Raises:
        InputValidationError: If validation fails

    Examples:
        >>> validate_id("8f14e45f-ceea-467f-a8f0-3c9f1b4f3a10")
        '8f14e45f-ceea-467f-a8f0-3c9f1b4f3a10'
        >>> validate_id("org 1")  # doctest: +SKIP
        InputValidationError: id contains invalid characters
    """
    if not value or not isinstance(value, str):
        raise InputValidationError(f"{field_name} must be a non-empty string")

    value = value.strip()
    if not value:
        raise InputValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not ID_PATTERN.match(value):
        raise InputValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    if len(value) > MAX_ID_LENGTH:
        raise InputValidationError(f"{field_name} exceeds maximum length of {MAX_ID_LENGTH} characters")

    return value


def validate_actor(actor: str, field_name: str = "actor") -> str:
    """Validate the name of the operator performing an action."""
    if not actor or not isinstance(actor, str) or not actor.strip():
        raise InputValidationError(f"{field_name} must be a non-empty string")

    actor = actor.strip()
    if len(actor) > MAX_ACTOR_LENGTH:
        raise InputValidationError(f"{field_name} exceeds maximum length of {MAX_ACTOR_LENGTH} characters")
    if "\x00" in actor:
        raise InputValidationError(f"{field_name} contains null bytes")

    return actor


def validate_notes(notes: str | None, field_name: str = "notes") -> str | None:
    if notes is None:
        return None
    notes = notes.strip()
    if len(notes) > MAX_NOTES_LENGTH:
        raise InputValidationError(f"{field_name} exceeds maximum length of {MAX_NOTES_LENGTH} characters")
    return notes or None


def validate_error_kind(value: str, field_name: str = "error_kind") -> ErrorKind:
    """
    Parse an error kind name.

    Examples:
        >>> validate_error_kind("PERMANENT")
        <ErrorKind.PERMANENT: 'permanent'>
    """
    try:
        return ErrorKind(value.strip().lower())
    except (AttributeError, ValueError):
        allowed = ", ".join(kind.value for kind in ErrorKind)
        raise InputValidationError(f"{field_name} must be one of: {allowed}") from None


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a query limit.

    Examples:
        >>> validate_limit(100)
        100
        >>> validate_limit(0)  # doctest: +SKIP
        InputValidationError: limit must be a positive integer
    """
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise InputValidationError(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise InputValidationError(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise InputValidationError(f"{field_name} exceeds maximum of {max_limit}")

    return limit


def validate_file_path(file_path: str, field_name: str = "file_path") -> str:
    """
    Validate a blob path.

    Rejects path traversal, null bytes and wildcards.

    Examples:
        >>> validate_file_path("org-1/2024-05-01/desvio.csv")
        'org-1/2024-05-01/desvio.csv'
        >>> validate_file_path("../../etc/passwd")  # doctest: +SKIP
        InputValidationError: file_path contains path traversal characters (..)
    """
    if not file_path or not isinstance(file_path, str):
        raise InputValidationError(f"{field_name} must be a non-empty string")

    file_path = file_path.strip()
    if not file_path:
        raise InputValidationError(f"{field_name} cannot be empty or whitespace-only")

    if ".." in file_path:
        raise InputValidationError(f"{field_name} contains path traversal characters (..)")

    if "\x00" in file_path:
        raise InputValidationError(f"{field_name} contains null bytes")

    if "*" in file_path or "?" in file_path:
        raise InputValidationError(f"{field_name} contains wildcards (* or ?)")

    if len(file_path) > MAX_PATH_LENGTH:
        raise InputValidationError(f"{field_name} exceeds maximum length of {MAX_PATH_LENGTH} characters")

    return file_path
