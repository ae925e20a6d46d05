"""Retry a callable with exponential backoff for transient collaborator failures."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar

from loguru import logger

from .constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_FACTOR,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from .errors import CollaboratorError

T = TypeVar("T")


def backoff_delays(
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    *,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
    factor: float = DEFAULT_RETRY_FACTOR,
) -> list[float]:
    """Delays slept between `attempts` tries: base, base*factor, ... capped at max_delay."""
    return [min(base_delay * (factor**i), max_delay) for i in range(max(attempts - 1, 0))]


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CollaboratorError) and exc.transient


def with_retry(
    operation: Callable[[], T],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
    factor: float = DEFAULT_RETRY_FACTOR,
    retry_on: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    cancel_event: Optional[threading.Event] = None,
    label: str = "operation",
) -> T:
    """Run `operation`, retrying while `retry_on` accepts the raised error.

    Args:
        operation: Zero-argument callable.
        attempts: Total tries, including the first.
        base_delay: Delay before the second try, in seconds.
        max_delay: Upper bound for any single delay.
        factor: Multiplier applied per retry.
        retry_on: Predicate selecting retryable exceptions.
        sleep: Sleep function, replaceable in tests.
        cancel_event: When set, stop retrying and re-raise the last error.
        label: Name used in log messages.

    Returns:
        The operation's result.

    Raises:
        The last exception once retries are exhausted, or immediately for
        non-retryable errors.
    """
    delays = backoff_delays(attempts, base_delay=base_delay, max_delay=max_delay, factor=factor)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not retry_on(exc) or attempt >= attempts:
                raise
            if cancel_event is not None and cancel_event.is_set():
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise RuntimeError("unreachable")
