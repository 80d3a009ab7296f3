"""Retry with exponential backoff for transient network failures."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from dilarxiv.errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_status(status: int) -> bool:
    """Server errors, request timeouts and rate limiting are worth retrying."""
    return status >= 500 or status in (408, 429)


def backoff_delay(backoff_seconds: float, attempt: int) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return backoff_seconds * (2 ** (attempt - 1))


def call_with_retries(
    action: Callable[[], T],
    *,
    describe: str,
    retries: int = 3,
    backoff_seconds: float = 1.0,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run ``action`` until it succeeds or fails for good.

    Args:
        action: Callable raising :class:`NetworkError` on failure
        describe: What ``action`` does, for log messages
        retries: Retries allowed after the first attempt
        backoff_seconds: Initial delay, doubled after every attempt
        cancel_event: Stops waiting and gives up when set

    Returns:
        The value returned by the first successful attempt

    Raises:
        NetworkError: The last error, once it is not retryable or the
            retries are exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return action()
        except NetworkError as exc:
            if not exc.retryable or attempt > retries:
                raise
            delay = backoff_delay(backoff_seconds, attempt)
            logger.info(
                "Retrying %s in %.1fs (attempt %d/%d): %s", describe, delay, attempt, retries, exc
            )
            event = cancel_event or threading.Event()
            if event.wait(delay):
                raise NetworkError(f"{describe} cancelled", retryable=False) from exc
