"""
Cancellation token for backoff waits.
"""

import threading
import time
from typing import Callable


class CancellationToken:
    """
    Cancels in-flight waits either explicitly or when a predicate turns true.

    The predicate (for example "the file was marked FAILED elsewhere") is
    polled every ``poll_interval`` seconds while a wait is in progress.
    """

    def __init__(self, predicate: Callable[[], bool] | None = None, poll_interval: float = 1.0):
        self._event = threading.Event()
        self._predicate = predicate
        self.poll_interval = poll_interval

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._predicate is not None and self._predicate():
            self._event.set()
            return True
        return False

    def wait(self, seconds: float) -> bool:
        """
        Block for up to ``seconds``.

        Returns:
            True if the wait ended because of cancellation
        """
        deadline = time.monotonic() + seconds
        while True:
            if self.is_cancelled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            step = remaining if self._predicate is None else min(remaining, self.poll_interval)
            if self._event.wait(step):
                return True
