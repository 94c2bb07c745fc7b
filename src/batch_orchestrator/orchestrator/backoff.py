"""Bounded retry with exponential backoff for calls the queue does not retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def backoff_delay(*, attempt: int, base_seconds: float, max_seconds: float | None = None) -> float:
    """Delay before retry number ``attempt`` (0-based): ``base * 2**attempt``."""

    delay = base_seconds * (2 ** max(attempt, 0))
    if max_seconds is not None:
        return min(delay, max_seconds)
    return delay


def retry_with_backoff(  # noqa: PLR0913
    operation: Callable[[], _T],
    *,
    max_attempts: int,
    base_seconds: float,
    max_seconds: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> _T:
    """Call ``operation`` up to ``max_attempts`` times, re-raising the last error."""

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    for attempt in range(max_attempts - 1):
        try:
            return operation()
        except retry_on as error:
            delay = backoff_delay(
                attempt=attempt,
                base_seconds=base_seconds,
                max_seconds=max_seconds,
            )
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt + 1,
                max_attempts,
                error,
                delay,
            )
            sleep(delay)
    return operation()
