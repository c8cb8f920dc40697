"""Retry helpers with bounded backoff."""
import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
    max_delay_seconds: float = 2.0,
    retry_if: Callable[[BaseException], bool] = lambda exc: True,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call func until it succeeds, retry_if rejects the error, or attempts run out.

    The last error is re-raised unchanged.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as exc:
            if attempt >= attempts or not retry_if(exc):
                raise
            delay = min(base_delay_seconds * (2 ** (attempt - 1)), max_delay_seconds)
            if on_retry:
                on_retry(attempt, delay, exc)
            if delay > 0:
                sleep(delay)
    raise RuntimeError("RETRY_FAILED")  # pragma: no cover
