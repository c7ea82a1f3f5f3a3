"""Retry with exponential backoff for request/reply uplink messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from marvin_drone.models.policy import RetryPolicy

logger = logging.getLogger("marvin_drone.retry")

T = TypeVar("T")

__all__ = ["RetryPolicy", "retry_with_backoff"]


def _reason(exc: BaseException) -> str:
    # CallError and ConnectError carry a reason enum; anything else is named by type.
    reason = getattr(exc, "reason", None)
    return str(reason) if reason is not None else type(exc).__name__


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    policy: RetryPolicy,
    *args: Any,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """Await *fn* until it succeeds or *policy* runs out of retries.

    Only exceptions matching *retry_on* are retried; anything else
    propagates immediately. Each retry is logged with the failure reason
    (``timeout``, ``rejected`` and so on for a ``CallError``). The last
    exception is raised once retries are exhausted.
    """
    attempts = 1 + policy.max_retries
    for attempt in range(1, attempts + 1):
        try:
            return await fn(*args, **kwargs)
        except retry_on as exc:
            if attempt == attempts:
                raise
            delay = min(
                policy.base_delay_seconds * (policy.exponential_base ** (attempt - 1)),
                policy.max_delay_seconds,
            )
            reason = _reason(exc)
            logger.warning(
                "Attempt %d/%d failed with %s (%s), retrying in %.1fs",
                attempt,
                attempts,
                reason,
                exc,
                delay,
                extra={"attempt": attempt, "delay": delay, "reason": reason},
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
