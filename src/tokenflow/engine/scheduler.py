# src/tokenflow/engine/scheduler.py
"""Scheduler: the single owner of engine state.

The Scheduler owns the running scenario (a frozen, shared model) and the
EngineState (exclusively owned). Every mutation goes through one of its
methods under one lock:

- tick(): advance time by one and run the four behavior passes
- step(n): n ticks, rejected while play() is running
- play() / pause(): real-time ticking on a background thread
- inject_token(): external token creation
- reset(), upgrade_model(), update_node_config(), undo(), redo()

Everything else is a read-only projection (view(), derive_lineage()).

When an EventRecorder is attached, every external input is captured as a
core event so the run can be replayed.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING, Any

from tokenflow.contracts import (
    Action,
    ControlAction,
    CoreEventType,
    HistoryEntry,
    ModelUpgraded,
    NodeState,
    SimulationStatus,
    SimulationStatusChanged,
    TickCompleted,
    Token,
)
from tokenflow.core.config import TokenflowSettings
from tokenflow.core.events import EventBusProtocol, NullEventBus
from tokenflow.core.logging import get_logger
from tokenflow.core.scenario import ScenarioConfig, validate_scenario
from tokenflow.engine.activity import ErrorChannel
from tokenflow.engine.behaviors import NodeBehaviors
from tokenflow.engine.clock import DEFAULT_CLOCK, Clock
from tokenflow.engine.lineage import LineageResult
from tokenflow.engine.state import EngineState

if TYPE_CHECKING:
    from tokenflow.engine.replay import EventRecorder

logger = get_logger(__name__)


class SchedulerBusyError(RuntimeError):
    """Raised when step() or play() is called while play() is running."""


class NoScenarioLoadedError(RuntimeError):
    """Raised when a simulation operation needs a scenario and none is loaded."""


class Scheduler:
    """Discrete-tick simulation driver.

    Example:
        scheduler = Scheduler(load_settings())
        errors = scheduler.load_scenario(yaml.safe_load(text))
        if not errors:
            scheduler.step(10)
            print(scheduler.view()["current_time"])  # 10
    """

    def __init__(
        self,
        settings: TokenflowSettings | None = None,
        *,
        clock: Clock | None = None,
        event_bus: EventBusProtocol | None = None,
    ) -> None:
        self._settings = settings if settings is not None else TokenflowSettings()
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._bus: EventBusProtocol = event_bus if event_bus is not None else NullEventBus()
        self._errors = ErrorChannel()
        self._state: EngineState | None = None
        self._behaviors: NodeBehaviors | None = None
        self._status = SimulationStatus.STOPPED
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._recorder: EventRecorder | None = None
        max_undo = self._settings.limits.max_undo_snapshots
        self._undo: deque[ScenarioConfig] = deque(maxlen=max_undo)
        self._redo: deque[ScenarioConfig] = deque(maxlen=max_undo)

    # -- read-only projections ---------------------------------------------

    @property
    def settings(self) -> TokenflowSettings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def status(self) -> SimulationStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == SimulationStatus.RUNNING

    @property
    def scenario(self) -> ScenarioConfig | None:
        return self._state.scenario if self._state is not None else None

    @property
    def time(self) -> int:
        return self._state.time if self._state is not None else 0

    @property
    def errors(self) -> list[str]:
        return self._errors.messages

    def clear_errors(self) -> None:
        self._errors.clear()

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def _require_state(self) -> EngineState:
        if self._state is None:
            raise NoScenarioLoadedError("No scenario loaded; call load_scenario() first")
        return self._state

    def _require_behaviors(self) -> NodeBehaviors:
        self._require_state()
        assert self._behaviors is not None
        return self._behaviors

    @property
    def node_states(self) -> dict[str, NodeState]:
        return dict(self._require_state().node_states)

    def node_activity(self, node_id: str) -> list[HistoryEntry]:
        return self._require_state().activity.for_node(node_id)

    @property
    def global_activity(self) -> list[HistoryEntry]:
        return self._require_state().activity.global_entries

    def derive_lineage(self, token_id: str) -> LineageResult:
        """Lineage of a token.

        Raises:
            KeyError: If the token is unknown or evicted from the index
        """
        return self._require_state().lineage.derive_lineage(token_id)

    def view(self) -> dict[str, Any]:
        """Plain-data snapshot for presentation: scenario, node states, time, log, counter."""
        with self._lock:
            state = self._require_state()
            data = state.to_dict()
            return {
                "scenario": data["scenario"],
                "node_states": data["node_states"],
                "tokens": data["tokens"],
                "current_time": state.time,
                "global_activity_log": data["activity"]["global"],
                "event_counter": state.activity.sequence,
            }

    def snapshot_state(self) -> dict[str, Any]:
        """Full engine state as plain data (see EngineState.to_dict)."""
        with self._lock:
            return self._require_state().to_dict()

    # -- recording -----------------------------------------------------------

    def attach_recorder(self, recorder: EventRecorder | None) -> None:
        self._recorder = recorder

    def _capture(
        self,
        event_type: CoreEventType,
        *,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if self._recorder is not None:
            self._recorder.capture(event_type, timestamp=self.time, node_id=node_id, payload=payload or {})

    # -- loading -------------------------------------------------------------

    def _install(self, state: EngineState) -> None:
        self._state = state
        self._behaviors = NodeBehaviors(state, self._bus)

    def load_scenario(self, data: Any) -> list[str]:
        """Validate and load a scenario, replacing any running one.

        Args:
            data: Parsed scenario mapping or a ScenarioConfig

        Returns:
            Configuration errors. When non-empty nothing is loaded and
            scenario is None.

        Raises:
            SchedulerBusyError: If play() is running
        """
        if self.is_running:
            raise SchedulerBusyError("Cannot load a scenario while running; call pause() first")
        scenario, errors = validate_scenario(data)
        with self._lock:
            self._undo.clear()
            self._redo.clear()
            if scenario is None:
                self._state = None
                self._behaviors = None
                logger.warning("Scenario load failed", error_count=len(errors))
                return errors
            self._install(EngineState.initial(scenario, self._settings, errors=self._errors, clock=self._clock))
        logger.info("Scenario loaded", name=scenario.name, node_count=len(scenario.nodes))
        return []

    def load_state(self, data: dict[str, Any], *, model: ScenarioConfig | None = None) -> None:
        """Install a captured engine state verbatim, optionally under another model.

        With a model, nodes whose id and type survive keep the captured
        state; the rest start fresh.

        Raises:
            SchedulerBusyError: If play() is running
            ValueError: If the captured scenario is invalid
        """
        if self.is_running:
            raise SchedulerBusyError("Cannot restore state while running; call pause() first")
        scenario, errors = validate_scenario(data["scenario"])
        if scenario is None:
            raise ValueError(f"Captured scenario is invalid: {errors}")
        with self._lock:
            state = EngineState.initial(scenario, self._settings, errors=self._errors, clock=self._clock)
            state.restore(data)
            if model is not None:
                state.apply_model(model)
            self._install(state)

    # -- ticking -------------------------------------------------------------

    def tick(self) -> int:
        """Advance time by one and run the four behavior passes.

        Returns:
            Simulation time after the tick

        Raises:
            NoScenarioLoadedError: If no scenario is loaded
        """
        with self._lock:
            state = self._require_state()
            behaviors = self._require_behaviors()
            sequence_before = state.activity.sequence
            tokens_before = state.tokens.next_id

            state.time += 1
            behaviors.run_tick(state.time)

            self._capture(CoreEventType.TIMER_TICK)
            if self._recorder is not None:
                self._recorder.after_tick(self)
            now = state.time
            entries = state.activity.sequence - sequence_before
            created = state.tokens.next_id - tokens_before

        logger.debug("Tick complete", time=now, entries_logged=entries, tokens_created=created)
        self._bus.emit(TickCompleted(time=now, entries_logged=entries, tokens_created=created))
        return now

    def step(self, n: int = 1) -> int:
        """Run n ticks synchronously.

        Raises:
            SchedulerBusyError: If play() is running
            NoScenarioLoadedError: If no scenario is loaded
            ValueError: If n < 1
        """
        if self.is_running:
            raise SchedulerBusyError("Cannot step while running; call pause() first")
        if n < 1:
            raise ValueError(f"step count must be >= 1, got {n}")
        self._require_state()
        self._capture(CoreEventType.USER_INTERACTION, payload={"action": ControlAction.STEP.value, "count": n})
        for _ in range(n):
            self.tick()
        return self.time

    def play(self) -> None:
        """Start ticking every 1000ms / speed on a background thread.

        Raises:
            SchedulerBusyError: If already running
            NoScenarioLoadedError: If no scenario is loaded
        """
        if self.is_running:
            raise SchedulerBusyError("Simulation is already running")
        self._require_state()
        self._stop.clear()
        self._status = SimulationStatus.RUNNING
        self._capture(CoreEventType.USER_INTERACTION, payload={"action": ControlAction.PLAY.value})
        interval = self._settings.playback.tick_interval_seconds
        self._thread = threading.Thread(target=self._run_loop, args=(interval,), name="tokenflow-play", daemon=True)
        self._thread.start()
        logger.info("Playback started", speed=self._settings.playback.speed)
        self._bus.emit(SimulationStatusChanged(status=SimulationStatus.RUNNING))

    def _run_loop(self, interval: float) -> None:
        try:
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(interval)
        finally:
            self._status = SimulationStatus.STOPPED

    def pause(self) -> None:
        """Stop play() after the in-flight tick completes. No-op when stopped."""
        if not self.is_running:
            return
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self._status = SimulationStatus.STOPPED
        self._capture(CoreEventType.USER_INTERACTION, payload={"action": ControlAction.PAUSE.value})
        logger.info("Playback paused", time=self.time)
        self._bus.emit(SimulationStatusChanged(status=SimulationStatus.STOPPED))

    # -- external input ------------------------------------------------------

    def inject_token(self, node_id: str, value: Any, *, input_node_id: str | None = None) -> Token:
        """Create a token from outside the model at node_id, at the current time.

        Raises:
            NoScenarioLoadedError: If no scenario is loaded
            KeyError: If node_id is not in the running model
            ValueError: If input_node_id is not a declared input of a process node
        """
        with self._lock:
            state = self._require_state()
            if node_id not in state.configs:
                raise KeyError(f"Unknown node {node_id!r}")
            token = self._require_behaviors().inject(node_id, value, state.time, input_node_id=input_node_id)
            payload: dict[str, Any] = {"value": value}
            if input_node_id is not None:
                payload["input_node_id"] = input_node_id
            self._capture(CoreEventType.MANUAL_INPUT, node_id=node_id, payload=payload)
        return token

    def reset(self) -> None:
        """Reinitialise node state, logs, counters, random generator and time.

        Raises:
            SchedulerBusyError: If play() is running
            NoScenarioLoadedError: If no scenario is loaded
        """
        if self.is_running:
            raise SchedulerBusyError("Cannot reset while running; call pause() first")
        with self._lock:
            scenario = self._require_state().scenario
            self._capture(CoreEventType.USER_INTERACTION, payload={"action": ControlAction.RESET.value})
            self._errors.clear()
            self._install(EngineState.initial(scenario, self._settings, errors=self._errors, clock=self._clock))
        logger.info("Simulation reset", name=scenario.name)

    # -- model changes -------------------------------------------------------

    def upgrade_model(self, data: Any, reason: str = "model upgrade") -> list[str]:
        """Replace the running model, keeping state of nodes that survive.

        Returns:
            Configuration errors; when non-empty the running model is unchanged

        Raises:
            NoScenarioLoadedError: If no scenario is loaded
        """
        scenario, errors = validate_scenario(data)
        if scenario is None:
            return errors
        self._apply_model(scenario, reason)
        return []

    def _apply_model(self, scenario: ScenarioConfig, reason: str) -> None:
        with self._lock:
            state = self._require_state()
            if self._recorder is not None:
                self._recorder.before_model_upgrade(self)
            state.apply_model(scenario)
            self._require_behaviors().log_system(
                state.time,
                Action.MODEL_UPGRADED,
                f"Model upgraded: {reason}",
                value=len(scenario.nodes),
            )
            self._capture(
                CoreEventType.MODEL_UPGRADE,
                payload={"model": scenario.model_dump(mode="json"), "reason": reason},
            )
        logger.info("Model upgraded", reason=reason, node_count=len(scenario.nodes))
        self._bus.emit(ModelUpgraded(reason=reason, node_count=len(scenario.nodes)))

    def update_node_config(self, node_id: str, changes: dict[str, Any]) -> list[str]:
        """Edit one node's config as an undoable model upgrade.

        Returns:
            Configuration errors; when non-empty nothing changes

        Raises:
            NoScenarioLoadedError: If no scenario is loaded
            KeyError: If node_id is not in the running model
        """
        current = self._require_state().scenario
        scenario, errors = validate_scenario(current.with_node_changes(node_id, changes))
        if scenario is None:
            return errors
        self._undo.append(current)
        self._redo.clear()
        self._apply_model(scenario, f"edit {node_id}")
        return []

    def undo(self) -> bool:
        """Revert the last node edit. Returns False when there is nothing to undo."""
        if not self._undo:
            return False
        self._redo.append(self._require_state().scenario)
        self._apply_model(self._undo.pop(), "undo")
        return True

    def redo(self) -> bool:
        """Re-apply the last undone edit. Returns False when there is nothing to redo."""
        if not self._redo:
            return False
        self._undo.append(self._require_state().scenario)
        self._apply_model(self._redo.pop(), "redo")
        return True
