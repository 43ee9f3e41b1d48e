"""Retry helper for store calls that may fail transiently."""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, ConnectionError, TimeoutError)


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    on_retry: Callable[[BaseException], None] | None = None,
    label: str = "store call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` and retry it with exponential backoff on transient errors.

    Args:
        fn: Zero-argument callable to execute
        attempts: Total number of tries (>= 1)
        delay: Seconds to wait before the first retry
        backoff: Multiplier applied to the delay after each failure
        retry_on: Exception types considered transient
        on_retry: Hook run after a failed attempt (e.g. session rollback)
        label: Name used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``fn`` returns

    Raises:
        The last transient exception once all attempts are used; any
        non-transient exception immediately.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    wait = delay
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            if on_retry is not None:
                on_retry(exc)
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %s", label, attempts, exc)
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label, attempt, attempts, exc, wait,
            )
            sleep(wait)
            wait *= backoff
            attempt += 1
