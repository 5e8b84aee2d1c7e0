"""
Single retry-with-bounded-backoff utility.

Used by the exchange client wrapper for transient exchange failures and by the
store helpers for write-conflict retries, so attempt counts, jitter and logging
behave the same everywhere.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from django.conf import settings
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)


def build_retrying(
    retry_on: type[BaseException] | Iterable[type[BaseException]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    jitter: float | None = None,
    sleep: Callable[[float], Any] | None = None,
    log: logging.Logger | None = None,
) -> Retrying:
    """
    Build a tenacity ``Retrying`` controller.

    Unset knobs fall back to the ``RETRY_*`` settings. ``attempts`` counts the first
    call, so ``attempts=3`` means at most three calls in total. The last exception is
    re-raised unchanged once attempts are exhausted.
    """
    if not isinstance(retry_on, type):
        retry_on = tuple(retry_on)
    if attempts is None:
        attempts = int(getattr(settings, "RETRY_ATTEMPTS", 3) or 3)
    if base_delay is None:
        base_delay = float(getattr(settings, "RETRY_BASE_DELAY_SECONDS", 0.5))
    if max_delay is None:
        max_delay = float(getattr(settings, "RETRY_MAX_DELAY_SECONDS", 8.0))
    if jitter is None:
        jitter = float(getattr(settings, "RETRY_JITTER_SECONDS", 0.25))
    return Retrying(
        stop=stop_after_attempt(max(1, int(attempts))),
        # base, 2x base, 4x base... capped at max_delay, plus up to `jitter` seconds
        wait=wait_exponential(multiplier=max(0.0, base_delay), max=max(0.0, max_delay))
        + wait_random(0, max(0.0, jitter)),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
        sleep=sleep or time.sleep,
        before_sleep=before_sleep_log(log or logger, logging.WARNING),
    )


def call_with_retry(
    fn: Callable[..., Any],
    *args: Any,
    retry_on: type[BaseException] | Iterable[type[BaseException]],
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    jitter: float | None = None,
    sleep: Callable[[float], Any] | None = None,
    **kwargs: Any,
) -> Any:
    retrying = build_retrying(
        retry_on,
        attempts=attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=jitter,
        sleep=sleep,
    )
    return retrying(fn, *args, **kwargs)
