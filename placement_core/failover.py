"""
placement_core/failover.py
──────────────────────────
Exponential backoff between relaunch attempts of a failed instance.

The delay doubles with every consecutive failure and is capped at max_delay:

    failures │ delay (interval=1s, max_delay=5s)
    ─────────┼──────────────────────────────────
       0     │ 0s
       1     │ 1s
       2     │ 2s
       3     │ 4s
       4     │ 5s   ← capped
      100    │ 5s

An optional max_tries turns the backoff into a hard stop: once the failure
count reaches it, the scheduler never launches the instance again until an
operator restarts it.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field

EPOCH: datetime = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_FAILOVER_DELAY: timedelta = timedelta(minutes=1)
"""Backoff after the first failure. Doubles on each subsequent failure."""

DEFAULT_FAILOVER_MAX_DELAY: timedelta = timedelta(minutes=10)
"""Upper bound for the backoff, however many failures have happened."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Failover(BaseModel):
    """
    Per-instance failure counter and backoff policy.

    Fields:
        failures     → consecutive failures since the last confirmed run.
        failure_time → when the most recent failure was registered.
        interval     → base backoff unit (delay after the first failure).
        max_delay    → backoff ceiling.
        max_tries    → optional cap on failures. None = retry forever.
    """
    failures: int = Field(0, ge=0)
    failure_time: Optional[datetime] = None
    interval: timedelta = Field(default=DEFAULT_FAILOVER_DELAY)
    max_delay: timedelta = Field(default=DEFAULT_FAILOVER_MAX_DELAY)
    max_tries: Optional[int] = Field(None, ge=1)

    @property
    def current_delay(self) -> timedelta:
        if self.failures == 0:
            return timedelta(0)
        # Double step by step and stop at the ceiling, so a huge failure
        # count never overflows timedelta.
        delay = self.interval
        for _ in range(self.failures - 1):
            if delay >= self.max_delay or delay <= timedelta(0):
                break
            delay *= 2
        return min(delay, self.max_delay)

    @property
    def delay_expires(self) -> datetime:
        start = self.failure_time if self.failure_time is not None else EPOCH
        return start + self.current_delay

    @property
    def is_max_tries_exceeded(self) -> bool:
        return self.max_tries is not None and self.failures >= self.max_tries

    def is_waiting_delay(self, now: datetime) -> bool:
        return now < self.delay_expires

    def register_failure(self, now: Optional[datetime] = None) -> None:
        self.failures += 1
        self.failure_time = now if now is not None else utc_now()

    def reset_failures(self) -> None:
        self.failures = 0
        self.failure_time = None
