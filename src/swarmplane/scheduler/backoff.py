"""Subtask retry backoff."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from swarmplane.models import RetryPolicy


def backoff_delay(policy: RetryPolicy, retry_count: int) -> float:
    """Seconds to wait before retry number ``retry_count + 1``.

    ``retry_count`` is the number of retries already consumed, so the first
    retry waits ``backoff_seconds``.
    """
    return policy.backoff_seconds * (policy.backoff_multiplier ** retry_count)


def retry_schedule(policy: RetryPolicy) -> list[float]:
    return [backoff_delay(policy, n) for n in range(policy.max_retries)]


def next_attempt_time(policy: RetryPolicy, retry_count: int, now: datetime) -> Optional[datetime]:
    """When the next attempt may start, or None once retries are exhausted."""
    if retry_count >= policy.max_retries:
        return None
    return now + timedelta(seconds=backoff_delay(policy, retry_count))
