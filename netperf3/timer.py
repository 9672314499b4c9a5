"""A sorted queue of one-shot and periodic timers driven by explicit polling."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from netperf3.clock import Timestamp, compare, diff, now as clock_now

TimerCallback = Callable[[Any, Timestamp], None]


def _sort_key(timer: Timer) -> tuple[int, int]:
    return (timer.time.secs, timer.time.usecs)


def _current(now: Optional[Timestamp]) -> Timestamp:
    if now is None:
        return clock_now()
    return Timestamp(now.secs, now.usecs)


@dataclass(eq=False)
class Timer:
    """A scheduled callback; ``time`` is when it next expires."""

    callback: TimerCallback
    client_data: Any
    usecs: int
    periodic: bool
    time: Timestamp = field(default_factory=Timestamp)


class TimerQueue:
    """Timers kept in expiry order; earlier-created timers win ties."""

    def __init__(self) -> None:
        self._timers: list[Timer] = []

    def __len__(self) -> int:
        return len(self._timers)

    def __iter__(self) -> Iterator[Timer]:
        return iter(list(self._timers))

    def __contains__(self, timer: object) -> bool:
        return any(t is timer for t in self._timers)

    def _add(self, timer: Timer) -> None:
        bisect.insort_right(self._timers, timer, key=_sort_key)

    def _remove(self, timer: Timer) -> bool:
        for index, candidate in enumerate(self._timers):
            if candidate is timer:
                del self._timers[index]
                return True
        return False

    def _resort(self, timer: Timer) -> None:
        self._remove(timer)
        self._add(timer)

    def _next_of(self, timer: Timer) -> Optional[Timer]:
        for index, candidate in enumerate(self._timers):
            if candidate is timer:
                following = index + 1
                return self._timers[following] if following < len(self._timers) else None
        return None

    def create(
        self,
        callback: TimerCallback,
        client_data: Any = None,
        usecs: int = 0,
        periodic: bool = False,
        now: Optional[Timestamp] = None,
    ) -> Timer:
        """Schedule ``callback`` to run ``usecs`` microseconds after ``now``."""
        start = _current(now)
        timer = Timer(callback, client_data, usecs, bool(periodic), start.add_usecs(usecs))
        self._add(timer)
        return timer

    def timeout(self, now: Optional[Timestamp] = None) -> Optional[float]:
        """Return seconds until the next timer expires, or None if none are pending."""
        current = _current(now)
        if not self._timers:
            return None
        span, past = diff(self._timers[0].time, current)
        usecs = 0 if past else span.in_usecs()
        return usecs / 1_000_000

    def run(self, now: Optional[Timestamp] = None) -> None:
        """Fire every timer that has expired at ``now``."""
        current = _current(now)
        timer = self._timers[0] if self._timers else None
        while timer is not None:
            following = self._next_of(timer)
            if compare(timer.time, current) > 0:
                break
            timer.callback(timer.client_data, Timestamp(current.secs, current.usecs))
            if timer.periodic:
                timer.time.add_usecs(timer.usecs)
                self._resort(timer)
            else:
                self.cancel(timer)
            timer = following if following is not None and following in self else None

    def reset(self, timer: Timer, now: Optional[Timestamp] = None) -> None:
        """Restart ``timer`` so it expires its original interval after ``now``."""
        timer.time = _current(now).add_usecs(timer.usecs)
        self._resort(timer)

    def cancel(self, timer: Timer) -> None:
        """Remove ``timer`` from the queue; cancelling twice is harmless."""
        self._remove(timer)

    def destroy(self) -> None:
        """Cancel every pending timer."""
        self._timers.clear()