"""
placement_core/stickiness.py
────────────────────────────
Host affinity for a single managed instance.

Why stickiness exists
──────────────────────
A ZooKeeper member keeps its snapshot and transaction log on local disk.
When the instance stops and comes back, landing on the same agent means the
data directory is still there and the member rejoins the ensemble quickly.
Landing elsewhere means a full resync from the leader.

So after a stop the instance is pinned to its previous host for `period`.
Once that affinity window has elapsed, any host is acceptable again.

Lifecycle
──────────
  register_start("host0")   → hostname=host0, stop_time=None
  register_stop(t0)         → hostname=host0, stop_time=t0
  allows_hostname("host1", t0)           → False (inside the window)
  allows_hostname("host1", t0 + period)  → True  (window elapsed)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_STICKINESS_PERIOD: timedelta = timedelta(minutes=10)
"""How long an instance prefers its previous host after a stop."""


class Stickiness(BaseModel):
    """
    Affinity window tracker owned by exactly one Server.

    Fields:
        hostname  → last host the instance was started on. None = never started.
        stop_time → when the instance last stopped. None = running, or never
                    stopped since the last start.
        period    → length of the affinity window.
    """
    hostname: Optional[str] = None
    stop_time: Optional[datetime] = None
    period: timedelta = Field(default=DEFAULT_STICKINESS_PERIOD)

    @property
    def expires(self) -> Optional[datetime]:
        """End of the current affinity window, or None if not stopped."""
        if self.stop_time is None:
            return None
        return self.stop_time + self.period

    def allows_hostname(self, hostname: str, now: datetime) -> bool:
        if self.hostname is None:
            return True
        if hostname == self.hostname:
            return True
        expires = self.expires
        return expires is not None and now >= expires

    def register_start(self, hostname: str) -> None:
        self.hostname = hostname
        self.stop_time = None

    def register_stop(self, now: datetime) -> None:
        self.stop_time = now
