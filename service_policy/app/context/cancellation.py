"""
Cancellation tokens for resolution and evaluation calls.
"""

import threading
import time
from typing import Optional

from ..errors import EvaluationCanceledError


class CancellationToken:
    """Cooperative cancellation with an optional deadline.

    ``deadline`` is a ``time.monotonic()`` value. Tokens are thread-safe and may
    be cancelled from any thread.
    """

    def __init__(self, deadline: Optional[float] = None):
        self.deadline = deadline
        self._event = threading.Event()

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_cancelled(self, operation: str) -> None:
        if self.cancelled:
            raise EvaluationCanceledError(operation)


def check_cancelled(token: Optional[CancellationToken], operation: str) -> None:
    if token is not None:
        token.raise_if_cancelled(operation)
