"""
placement_core/ranges.py
────────────────────────
Inclusive numeric ranges and the port allocation algorithm.

Text form
─────────
  "31000..32000"          → Range(31000, 32000)
  "31010"                 → Range(31010, 31010)
  "4000..4100,31020"      → [Range(4000, 4100), Range(31020, 31020)]

Ranges are kept in the order they were written. The allocator walks the
configured ranges in that order, so an operator lists preferred ports first.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, model_validator


class Range(BaseModel):
    """
    An inclusive [start, end] interval of non-negative integers.

    Used for both sides of port allocation:
        TaskConfig.ports → the ports an instance is allowed to bind.
        Offer.ports      → the ports a Mesos agent is currently offering.
    """
    model_config = {"frozen": True}

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "Range":
        if self.start > self.end:
            raise ValueError(f"range start {self.start} > end {self.end}")
        return self

    @classmethod
    def parse(cls, text: str) -> "Range":
        """Parse "lo..hi" or a single number."""
        text = text.strip()
        if ".." in text:
            lo, hi = text.split("..", 1)
            return cls(start=int(lo), end=int(hi))
        port = int(text)
        return cls(start=port, end=port)

    @classmethod
    def single(cls, value: int) -> "Range":
        return cls(start=value, end=value)

    def contains(self, value: int) -> bool:
        return self.start <= value <= self.end

    def overlap(self, other: "Range") -> Optional["Range"]:
        """The intersection of two ranges, or None if they are disjoint."""
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if start > end:
            return None
        return Range(start=start, end=end)

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}..{self.end}"


def parse_ranges(text: str) -> List[Range]:
    """Parse a comma-separated list of ranges. Blank input means no ranges."""
    if not text or not text.strip():
        return []
    return [Range.parse(token) for token in text.split(",") if token.strip()]


def format_ranges(ranges: Iterable[Range]) -> str:
    return ",".join(str(r) for r in ranges)


def allocate_port(wanted: List[Range], offered: List[Range]) -> Optional[int]:
    """
    Pick a port for a task from what an agent offers.

    Rules:
        • wanted is empty → any port will do: the first port of the first
          offered range.
        • otherwise, walk wanted ranges in listed order and return the lowest
          port of the first one that intersects any offered range.
        • no intersection → None (the offer cannot host the task).

    Examples (offer "31000..32000"):
        wanted ""                       → 31000
        wanted "31010"                  → 31010
        wanted "4000..4100,31020..31100" → 31020
        wanted "4000..4100"             → None
    """
    if not offered:
        return None
    if not wanted:
        return offered[0].start

    for wanted_range in wanted:
        candidates = [
            common.start
            for common in (wanted_range.overlap(r) for r in offered)
            if common is not None
        ]
        if candidates:
            return min(candidates)
    return None


def first_free_port(offered: List[Range], taken: Iterable[int]) -> Optional[int]:
    """
    The lowest offered port, in offer order, that is not already taken.

        first_free_port([Range(4000, 4003)], {4000, 4001}) → 4002
    """
    taken = set(taken)
    for offered_range in offered:
        port = offered_range.start
        while port <= offered_range.end:
            if port not in taken:
                return port
            port += 1
    return None


def offers_port(offered: List[Range], port: int) -> bool:
    return any(r.contains(port) for r in offered)
