"""
exhibitor_mesos/shared/config.py
────────────────────────────────
Process-level settings, read once at startup from EXHIBITOR_MESOS_* variables.

    EXHIBITOR_MESOS_STORAGE             file:exhibitor-mesos.json | zk:host:2181/chroot
    EXHIBITOR_MESOS_ZK_TIMEOUT_S        seconds, connect/read/write bound for zk storage
    EXHIBITOR_MESOS_FAILOVER_DELAY      period, backoff after the first failure
    EXHIBITOR_MESOS_FAILOVER_MAX_DELAY  period, backoff ceiling
    EXHIBITOR_MESOS_FAILOVER_MAX_TRIES  integer, unset = retry forever
    EXHIBITOR_MESOS_STICKINESS_PERIOD   period, affinity window after a stop
    EXHIBITOR_MESOS_LOG_LEVEL           DEBUG | INFO | WARNING | ERROR

Periods use placement_core.period syntax ("30s", "10m", "1h").
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from placement_core import Failover, Stickiness, parse_period
from placement_core.failover import DEFAULT_FAILOVER_DELAY, DEFAULT_FAILOVER_MAX_DELAY
from placement_core.stickiness import DEFAULT_STICKINESS_PERIOD

ENV_PREFIX = "EXHIBITOR_MESOS_"

DEFAULT_STORAGE = "file:exhibitor-mesos.json"

DEFAULT_ZK_TIMEOUT_S: float = 30.0
"""Bound on every zk storage connect/read/write. A stuck ensemble fails the
operation with StorageIOError instead of hanging the scheduler lock."""


class SchedulerConfig(BaseSettings):
    """
    Settings shared by the storage factory and the orchestration service.

    Keyword arguments win over the environment, so tests and embedding code
    can pin any field.
    """
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        env_ignore_empty=True,
    )

    storage: str = DEFAULT_STORAGE
    zk_timeout_s: float = Field(DEFAULT_ZK_TIMEOUT_S, gt=0)
    failover_delay: timedelta = DEFAULT_FAILOVER_DELAY
    failover_max_delay: timedelta = DEFAULT_FAILOVER_MAX_DELAY
    failover_max_tries: Optional[int] = Field(None, ge=1)
    stickiness_period: timedelta = DEFAULT_STICKINESS_PERIOD
    log_level: str = "INFO"

    @field_validator("failover_delay", "failover_max_delay", "stickiness_period", mode="before")
    @classmethod
    def _parse_period(cls, value):
        if isinstance(value, str):
            return parse_period(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    def new_failover(self) -> Failover:
        return Failover(
            interval=self.failover_delay,
            max_delay=self.failover_max_delay,
            max_tries=self.failover_max_tries,
        )

    def new_stickiness(self) -> Stickiness:
        return Stickiness(period=self.stickiness_period)
