"""Exponential backoff with full jitter."""

from __future__ import annotations

import random
from collections.abc import Iterator

from marvin_drone.models.policy import BackoffPolicy

__all__ = ["BackoffPolicy", "backoff_ceiling", "full_jitter", "jittered_delays"]


def backoff_ceiling(policy: BackoffPolicy, attempt: int) -> float:
    """Upper bound of the delay before *attempt* (0-based)."""
    return min(
        policy.base_delay_seconds * (policy.exponential_base**attempt),
        policy.max_delay_seconds,
    )


def full_jitter(policy: BackoffPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Pick a delay uniformly in ``[0, ceiling(attempt)]``."""
    return (rng or random).uniform(0.0, backoff_ceiling(policy, attempt))


def jittered_delays(policy: BackoffPolicy, rng: random.Random | None = None) -> Iterator[float]:
    """Endless sequence of jittered delays, one per attempt."""
    attempt = 0
    while True:
        yield full_jitter(policy, attempt, rng)
        # The ceiling saturates; stop growing the exponent once it does.
        if backoff_ceiling(policy, attempt) < policy.max_delay_seconds:
            attempt += 1
