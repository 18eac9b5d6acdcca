"""Bounded exponential-backoff retry for transient store errors."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

import skein.errors as errors

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    description: str,
) -> tuple[T, int]:
    """Call ``fn`` until it succeeds or retries are exhausted.

    Only ``TransientStoreError`` is retried. Every other exception
    propagates immediately.

    Args:
        fn: Zero-argument unit of work.
        max_retries: Retries after the first attempt.
        backoff_seconds: Base delay; doubles after every failed attempt.
        description: Unit-of-work label used in log messages.

    Returns:
        Tuple of (result, attempts used).
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except errors.TransientStoreError as exc:
            if attempt > max_retries:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Transient store error on %s (attempt %d/%d), retrying in %.3fs: %s",
                description,
                attempt,
                max_retries + 1,
                delay,
                exc.cause,
            )
            time.sleep(delay)
