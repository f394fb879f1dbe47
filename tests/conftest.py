# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/

Schedulers built by these fixtures use a MockClock so that wall-clock
fields are pinned, and a recording EventBus so tests can assert on the
observability events a run emitted.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from tokenflow.core.config import LimitSettings, TokenflowSettings
from tokenflow.core.events import EventBus
from tokenflow.engine.clock import MockClock
from tokenflow.engine.scheduler import Scheduler

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))

EPOCH_MS = 1_700_000_000_000


class RecordingBus(EventBus):
    """EventBus that also keeps every emitted event, in order."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[Any] = []

    def emit(self, event: Any) -> None:
        self.events.append(event)
        super().emit(event)

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock(start_ms=EPOCH_MS)


@pytest.fixture
def engine_settings() -> TokenflowSettings:
    return TokenflowSettings()


@pytest.fixture
def event_bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def make_scheduler(mock_clock: MockClock, event_bus: RecordingBus) -> Callable[..., Scheduler]:
    """Factory: load a scenario into a fresh scheduler, failing the test on config errors."""

    def _make(scenario: dict[str, Any], *, seed: int = 0, **limits: int) -> Scheduler:
        engine = TokenflowSettings(
            limits=LimitSettings(**limits),
            playback={"seed": seed},
        )
        scheduler = Scheduler(engine, clock=mock_clock, event_bus=event_bus)
        errors = scheduler.load_scenario(scenario)
        assert errors == [], errors
        return scheduler

    return _make


@pytest.fixture
def reset_logging() -> Iterator[None]:
    """Undo configure_logging() so later tests don't write to a closed capture stream."""
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    root.handlers = []
    root.setLevel(logging.WARNING)
