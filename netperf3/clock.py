"""Monotonic timestamps with microsecond resolution."""

from __future__ import annotations

import time
from dataclasses import dataclass

USECS_PER_SEC = 1_000_000
_UINT32_MASK = 0xFFFFFFFF


@dataclass(order=True)
class Timestamp:
    """A point in time as whole seconds plus microseconds."""

    secs: int = 0
    usecs: int = 0

    def add_usecs(self, usecs: int) -> Timestamp:
        """Advance this timestamp in place by ``usecs`` microseconds."""
        self.secs = (self.secs + usecs // USECS_PER_SEC) & _UINT32_MASK
        self.usecs += usecs % USECS_PER_SEC
        if self.usecs >= USECS_PER_SEC:
            self.secs = (self.secs + self.usecs // USECS_PER_SEC) & _UINT32_MASK
            self.usecs %= USECS_PER_SEC
        return self

    def in_usecs(self) -> int:
        """Return the timestamp as a total number of microseconds."""
        return self.secs * USECS_PER_SEC + self.usecs

    def in_secs(self) -> float:
        """Return the timestamp as fractional seconds."""
        return self.secs + self.usecs / 1_000_000.0


def now() -> Timestamp:
    """Return the current value of the monotonic clock."""
    ns = time.monotonic_ns()
    secs, rem = divmod(ns, 1_000_000_000)
    return Timestamp(secs & _UINT32_MASK, rem // 1000)


def compare(time1: Timestamp, time2: Timestamp) -> int:
    """Return -1 if time1 is earlier, 1 if later, 0 if equal."""
    key1 = (time1.secs, time1.usecs)
    key2 = (time2.secs, time2.usecs)
    if key1 < key2:
        return -1
    if key1 > key2:
        return 1
    return 0


def _span(later: Timestamp, earlier: Timestamp) -> Timestamp:
    secs = later.secs - earlier.secs
    usecs = later.usecs
    if usecs < earlier.usecs:
        secs -= 1
        usecs += USECS_PER_SEC
    return Timestamp(secs, usecs - earlier.usecs)


def diff(time1: Timestamp, time2: Timestamp) -> tuple[Timestamp, bool]:
    """Return the absolute distance between two timestamps.

    The second item is True when time1 is not later than time2.
    """
    cmp = compare(time1, time2)
    if cmp == 0:
        return Timestamp(0, 0), True
    if cmp == 1:
        return _span(time1, time2), False
    return _span(time2, time1), True