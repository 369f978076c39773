# src/factcounters/engine/clock.py
"""Clock abstraction for windows and deadlines.

Counter windows are relative to "now" in wall-clock epoch milliseconds;
request deadlines are measured on the monotonic clock. Both come from one
Clock so tests can pin "now" and step through timeouts without sleeping.

Production code uses SystemClock (the default).
Tests inject MockClock.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for windows and timeouts.

    Implementations:
    - SystemClock: time.time() / time.monotonic() (production)
    - MockClock: controllable values (testing)
    """

    def now_ms(self) -> int:
        """Return wall-clock time in epoch milliseconds."""
        ...

    def monotonic(self) -> float:
        """Return monotonic time in seconds, for elapsed time and deadlines."""
        ...


class SystemClock:
    """Production clock."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Advancing the clock moves wall time and monotonic time together.

    Example:
        clock = MockClock(now_ms=1_700_000_000_000)
        processor = FactProcessor(..., clock=clock)
        clock.advance(3600)  # one hour later
    """

    def __init__(self, now_ms: int = 0, start: float = 0.0) -> None:
        """Initialize mock clock.

        Args:
            now_ms: Initial wall-clock epoch milliseconds.
            start: Initial monotonic time in seconds.
        """
        self._now_ms = now_ms
        self._monotonic = start

    def now_ms(self) -> int:
        return self._now_ms

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Advance both clocks.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._monotonic += seconds
        self._now_ms += int(seconds * 1000)

    def set_now_ms(self, value: int) -> None:
        """Set wall-clock time; monotonic time is unaffected."""
        self._now_ms = value


DEFAULT_CLOCK: Clock = SystemClock()
