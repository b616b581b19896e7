import logging
import threading
import time
from typing import Optional

from .exceptions import QueryCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation handle passed through a query and all of its
    range retrieval sub-searches.

    A token is cancelled either explicitly through cancel() or implicitly when
    its deadline passes. The query engine checks it before every network
    round trip.
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = deadline
        self._reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """Create a token that expires after the given number of seconds."""
        if seconds <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "Query cancelled by caller") -> None:
        self._reason = reason
        self._event.set()
        logger.debug(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._reason = self._reason or "Query deadline exceeded"
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise QueryCancelledError(self._reason or "Query cancelled")
