# src/tokenflow/engine/clock.py
"""Clock abstraction for wall-clock timestamps.

Simulation time is the integer tick counter owned by the scheduler. Wall
time only appears in activity-log ``epoch_timestamp`` fields and in the
``real_timestamp`` of recorded core events, and is never compared when
checking replay determinism.

Production code uses SystemClock (the default).
Tests inject MockClock to pin wall-clock values.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract wall clock.

    Implementations:
    - SystemClock: Uses time.time() (production)
    - MockClock: Returns controllable times (testing)
    """

    def epoch_ms(self) -> int:
        """Return wall-clock time in epoch milliseconds."""
        ...


class SystemClock:
    """Production clock using time.time()."""

    def epoch_ms(self) -> int:
        return int(time.time() * 1000)


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(start_ms=1_700_000_000_000)
        scheduler = Scheduler(settings, clock=clock)
        scheduler.tick()
        clock.advance(1000)
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._current = start_ms

    def epoch_ms(self) -> int:
        return self._current

    def advance(self, ms: int) -> None:
        """Advance mock time.

        Raises:
            ValueError: If ms is negative.
        """
        if ms < 0:
            raise ValueError(f"Cannot advance time by negative amount: {ms}")
        self._current += ms

    def set(self, value_ms: int) -> None:
        self._current = value_ms


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
