"""
Pipeline validators for the feedlot CSV exports.
"""

from .base import BaseValidator, RowIssue, ValidationOutcome
from .feed_deviation import FeedDeviationValidator
from .feeding_treatment import FeedingTreatmentValidator

VALIDATORS: dict[str, type[BaseValidator]] = {
    "feed_deviation": FeedDeviationValidator,
    "feeding_treatment": FeedingTreatmentValidator,
}


def get_validator(pipeline: str, **kwargs) -> BaseValidator:
    try:
        return VALIDATORS[pipeline](**kwargs)
    except KeyError:
        raise ValueError(f"Unknown pipeline: {pipeline}") from None


__all__ = [
    "BaseValidator",
    "FeedDeviationValidator",
    "FeedingTreatmentValidator",
    "RowIssue",
    "VALIDATORS",
    "ValidationOutcome",
    "get_validator",
]
