# asset_loader/core/cancel.py
from __future__ import annotations
import logging
import threading
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import LoadCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

class CancelToken:
    """Shared abort flag checked at every suspension point (chunk, cache round-trip)."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "aborted") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise LoadCancelled(f"load {self.reason or 'aborted'}")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))

def retry_with_backoff(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.3,
    token: Optional[CancelToken] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    Call fn() up to `attempts` times, sleeping base_delay * 2**n between tries.
    The last error is re-raised; cancellation stops the loop immediately.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    token = token or CancelToken()
    for n in range(attempts):
        token.raise_if_cancelled()
        try:
            return fn()
        except retry_on as e:
            if n == attempts - 1:
                raise
            delay = base_delay * (2 ** n)
            logger.debug("Attempt %d/%d failed (%s); retrying in %.2fs", n + 1, attempts, e, delay)
            if token.wait(delay):
                token.raise_if_cancelled()
    raise AssertionError("unreachable")
