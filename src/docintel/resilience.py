"""Timeout and bounded exponential backoff for calls into external services."""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from docintel.config import RetrySettings
from docintel.errors import ServiceTimeoutError, TransientServiceError
from docintel.telemetry import emit_service_retry

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(settings: RetrySettings, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at the maximum."""

    return min(settings.backoff_seconds * (2 ** (attempt - 1)), settings.backoff_max_seconds)


def call_with_timeout(fn: Callable[[], T], *, service: str, timeout_seconds: Optional[float]) -> T:
    """Run ``fn`` and raise :class:`ServiceTimeoutError` when it overruns.

    The worker thread is not interrupted on timeout; the call is left to finish
    in the background and its result is discarded.
    """

    if not timeout_seconds or timeout_seconds <= 0:
        return fn()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"docintel-{service}")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError as exc:
            raise ServiceTimeoutError(
                f"{service} did not answer within {timeout_seconds:g}s", cause=exc
            ) from exc
    finally:
        executor.shutdown(wait=False)


def call_with_retry(
    fn: Callable[[], T],
    *,
    service: str,
    settings: Optional[RetrySettings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` with a timeout, retrying transient failures with backoff.

    Only :class:`TransientServiceError` (timeouts included) is retried; any
    other exception propagates on the first attempt. When every attempt fails
    the last transient error is raised.
    """

    settings = settings or RetrySettings()
    attempts = max(1, settings.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return call_with_timeout(fn, service=service, timeout_seconds=settings.timeout_seconds)
        except TransientServiceError as error:
            if attempt == attempts:
                LOGGER.warning("%s failed after %s attempts: %s", service, attempts, error)
                raise
            delay = backoff_delay(settings, attempt)
            emit_service_retry(service=service, attempt=attempt, delay=delay, error=error)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["backoff_delay", "call_with_retry", "call_with_timeout"]
