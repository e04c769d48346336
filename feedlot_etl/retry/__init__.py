"""
Retry executor, dead-letter queue and cancellation.
"""

from .cancellation import CancellationToken
from .dead_letter import DeadLetterStore
from .retry_logic import RetryLogicService, RetryResult, RetryStatistics

__all__ = [
    "CancellationToken",
    "DeadLetterStore",
    "RetryLogicService",
    "RetryResult",
    "RetryStatistics",
]
