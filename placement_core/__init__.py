"""
placement_core - placement policy primitives for managed instances.

Public API:
    Stickiness         - host affinity window after a stop
    Failover           - exponential backoff + optional max tries
    LikeConstraint,
    UniqueConstraint   - attribute constraints (closed set)
    Range              - inclusive port range
    allocate_port()    - pick a port from an offer for a set of wanted ranges
    first_free_port()  - lowest offered port not already taken
    parse_period()     - "10m" → timedelta

Usage:
    from placement_core import Failover, Stickiness, allocate_port

    failover = Failover(interval=parse_period("1s"), max_delay=parse_period("5s"))
    if not failover.is_waiting_delay(now):
        port = allocate_port(config.ports, offer.ports)
"""

from placement_core.constraints import (
    Constraint,
    LikeConstraint,
    UniqueConstraint,
    UsesLookup,
    evaluate_all,
    parse_constraint,
    parse_constraints,
)
from placement_core.failover import EPOCH, Failover, utc_now
from placement_core.period import format_period, parse_period
from placement_core.ranges import (
    Range,
    allocate_port,
    first_free_port,
    format_ranges,
    offers_port,
    parse_ranges,
)
from placement_core.stickiness import Stickiness

__all__ = [
    "Constraint",
    "LikeConstraint",
    "UniqueConstraint",
    "UsesLookup",
    "evaluate_all",
    "parse_constraint",
    "parse_constraints",
    "EPOCH",
    "Failover",
    "utc_now",
    "format_period",
    "parse_period",
    "Range",
    "allocate_port",
    "first_free_port",
    "format_ranges",
    "offers_port",
    "parse_ranges",
    "Stickiness",
]
