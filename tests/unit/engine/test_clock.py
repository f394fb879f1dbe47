# tests/unit/engine/test_clock.py
"""Tests for wall-clock abstractions."""

import time

import pytest

from tokenflow.engine.clock import DEFAULT_CLOCK, MockClock, SystemClock


class TestMockClock:
    def test_starts_at_given_time(self) -> None:
        assert MockClock(start_ms=1000).epoch_ms() == 1000

    def test_advance(self) -> None:
        clock = MockClock()
        clock.advance(250)
        clock.advance(0)
        assert clock.epoch_ms() == 250

    def test_negative_advance_rejected(self) -> None:
        with pytest.raises(ValueError, match="negative"):
            MockClock().advance(-1)

    def test_set(self) -> None:
        clock = MockClock(start_ms=5)
        clock.set(1)
        assert clock.epoch_ms() == 1


def test_system_clock_is_epoch_milliseconds() -> None:
    before = int(time.time() * 1000)
    now = SystemClock().epoch_ms()
    assert before <= now <= int(time.time() * 1000)
    assert isinstance(DEFAULT_CLOCK, SystemClock)
