"""
Error classification for retry decisions.

Classification is a case-insensitive substring match over an ordered rule
table; the first rule with a matching pattern wins. Unrecognized errors are
classified as TRANSIENT so they are retried up to ``max_retries`` before being
dead-lettered.
"""

from typing import Iterable, NamedTuple, Sequence

from .errors import ErrorKind


class ClassificationRule(NamedTuple):
    """A set of lowercase substrings that map to one ErrorKind."""

    kind: ErrorKind
    patterns: tuple[str, ...]


DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ErrorKind.TRANSIENT,
        ("network", "timeout", "connection", "econnreset", "enotfound", "temporary"),
    ),
    ClassificationRule(
        ErrorKind.RATE_LIMITED,
        ("rate limit", "too many requests", "429"),
    ),
    ClassificationRule(
        ErrorKind.RESOURCE,
        ("memory", "disk space", "pool exhausted", "resource", "lock timeout"),
    ),
    ClassificationRule(
        ErrorKind.PERMANENT,
        ("validation", "schema", "constraint", "foreign key", "parse", "invalid data", "malformed"),
    ),
)

DEFAULT_ERROR_KIND = ErrorKind.TRANSIENT


def error_message(error: BaseException | str) -> str:
    """Message text used for classification and logging."""
    if isinstance(error, str):
        return error
    message = str(error)
    return message if message else type(error).__name__


class ErrorClassifier:
    """
    Maps an error to an ErrorKind.

    Extra rules are consulted before the default table, which lets callers
    extend the vocabulary (e.g. mark a vendor error code as PERMANENT)
    without changing the default for unknown errors.
    """

    def __init__(self, extra_rules: Iterable[ClassificationRule] = ()):
        normalized = [
            ClassificationRule(rule.kind, tuple(p.lower() for p in rule.patterns))
            for rule in extra_rules
        ]
        self.rules: Sequence[ClassificationRule] = (*normalized, *DEFAULT_RULES)

    def classify(self, error: BaseException | str) -> ErrorKind:
        text = error_message(error).lower()
        for rule in self.rules:
            if any(pattern in text for pattern in rule.patterns):
                return rule.kind
        return DEFAULT_ERROR_KIND


_default_classifier = ErrorClassifier()


def classify_error(error: BaseException | str) -> ErrorKind:
    """Classify an error with the default rule table."""
    return _default_classifier.classify(error)
