"""Accumulate the time spent in named categories of work."""

from __future__ import annotations

import json as _json
import threading
import time
from dataclasses import dataclass
from typing import Callable

Clock = Callable[[], float]


@dataclass(frozen=True)
class Timer:
    """A running timer for one category, started at ``start_time`` seconds."""

    category: str
    start_time: float


def start(category: str, clock: Clock = time.monotonic) -> Timer:
    """Start a new timer for ``category``."""
    return Timer(category=category, start_time=clock())


def _fraction(value: int, precision: int) -> str:
    if value == 0:
        return ""
    return "." + str(value).zfill(precision).rstrip("0")


def format_duration(seconds: float) -> str:
    """Render a duration the way ``1h2m3.5s``, ``1.5ms`` or ``0s`` are written."""
    nanos = round(seconds * 1_000_000_000)
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)

    if nanos < 1_000_000_000:
        if nanos < 1_000:
            return f"{sign}{nanos}ns"
        if nanos < 1_000_000:
            unit, precision = "µs", 3
        else:
            unit, precision = "ms", 6
        whole, frac = divmod(nanos, 10**precision)
        return f"{sign}{whole}{_fraction(frac, precision)}{unit}"

    secs, frac = divmod(nanos, 1_000_000_000)
    text = f"{secs % 60}{_fraction(frac, 9)}s"
    minutes = secs // 60
    if minutes:
        text = f"{minutes % 60}m{text}"
        hours = minutes // 60
        if hours:
            text = f"{hours}h{text}"
    return sign + text


class TimedRun:
    """A running store of how long is spent in each category."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.categories: dict[str, float] = {}

    def stop(self, timer: Timer) -> None:
        """Stop ``timer`` and add its elapsed time to its category."""
        stopped = self._clock()
        with self._lock:
            elapsed = stopped - timer.start_time
            self.categories[timer.category] = (
                self.categories.get(timer.category, 0.0) + elapsed
            )

    def summary(self) -> str:
        """One ``category: duration`` line per category, sorted by name."""
        with self._lock:
            items = sorted(self.categories.items())
        return "".join(f"{name}: {format_duration(spent)}\n" for name, spent in items)

    def json(self) -> str:
        """The categories as a JSON object of nanosecond totals."""
        with self._lock:
            payload = {
                name: round(spent * 1_000_000_000)
                for name, spent in self.categories.items()
            }
        return _json.dumps(payload, sort_keys=True, separators=(",", ":"))


DEFAULT_RUN = TimedRun()


def summary() -> str:
    """Summary of the default run."""
    return DEFAULT_RUN.summary()


def json_summary() -> str:
    """JSON summary of the default run."""
    return DEFAULT_RUN.json()