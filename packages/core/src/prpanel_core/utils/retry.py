"""Bounded retry for blocking external calls (reviewer invocations, host API)."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SECONDS = 5


def call_with_retry(
    fn: Callable[[], T],
    label: str,
    retries: int = 1,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying up to ``retries`` times after a fixed backoff.

    The exception from the final attempt propagates to the caller, which
    decides whether the failure is fatal.
    """
    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempt(s): %s", label, attempts, e)
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %ss...",
                label,
                attempt,
                attempts,
                e,
                backoff,
            )
            sleep(backoff)
    raise AssertionError("unreachable")
