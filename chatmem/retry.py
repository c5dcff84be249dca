"""Bounded exponential backoff for flaky async calls."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import tenacity

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retrying(
    *,
    retries: int,
    base_seconds: float,
    retry_on: tuple[type[BaseException], ...],
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> tenacity.AsyncRetrying:
    """Policy with ``retries`` extra attempts.

    The n-th wait is ``base * 2**(n-1)`` plus up to ``base`` seconds of jitter.
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(retries + 1),
        wait=tenacity.wait_exponential(multiplier=base_seconds)
        + tenacity.wait_random(0, base_seconds),
        retry=tenacity.retry_if_exception_type(retry_on),
        before_sleep=lambda rs: logger.debug(
            "%s failed (attempt %d), retrying: %s",
            label,
            rs.attempt_number,
            rs.outcome.exception() if rs.outcome else None,
        ),
        reraise=True,
        **kwargs,
    )


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_seconds: float,
    retry_on: tuple[type[BaseException], ...],
    label: str = "operation",
) -> T:
    """Call *fn* up to ``retries + 1`` times, sleeping with backoff between attempts.

    *fn* may be any zero-argument callable returning an awaitable. Only
    exceptions in *retry_on* are retried; anything else propagates
    immediately. The last retryable exception is re-raised once attempts
    run out.
    """
    policy = retrying(retries=retries, base_seconds=base_seconds, retry_on=retry_on, label=label)

    async def attempt() -> T:
        return await fn()

    try:
        return await policy(attempt)
    except retry_on as exc:
        logger.warning("%s failed after %d attempt(s): %s", label, retries + 1, exc)
        raise
