# src/tokenflow/engine/replay.py
"""Event capture, scenario records, and deterministic replay.

Only external inputs are recorded (ticks, manual injections, user
controls, model upgrades); everything else is recomputed. Replaying a
record against its own model reproduces the recorded state exactly.
Replaying it against another model diverges in a diffable way, which is
what compare() reports (A/B comparison of model versions).

Snapshots bound replay cost: a replay towards a target time starts from
the latest snapshot at or before that time and applies only the events
captured after it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tokenflow.contracts import (
    ControlAction,
    CoreEvent,
    CoreEventType,
    DifferenceSignificance,
    SnapshotType,
)
from tokenflow.core.canonical import CANONICAL_VERSION
from tokenflow.core.config import TokenflowSettings, resolve_config
from tokenflow.core.logging import get_logger
from tokenflow.core.scenario import ScenarioConfig, scenario_hash, validate_scenario
from tokenflow.core.serialization import SnapshotFormatError, snapshot_dumps, snapshot_loads
from tokenflow.engine.clock import DEFAULT_CLOCK, Clock
from tokenflow.engine.scheduler import Scheduler

logger = get_logger(__name__)


class ReplayError(Exception):
    """Raised when a record cannot be replayed at all (as opposed to diverging)."""


@dataclass(frozen=True)
class Snapshot:
    """Full engine state captured after ``event_index`` recorded events."""

    id: str
    type: SnapshotType
    description: str
    event_index: int
    timestamp: int
    real_timestamp: int
    state: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "event_index": self.event_index,
            "timestamp": self.timestamp,
            "real_timestamp": self.real_timestamp,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            id=data["id"],
            type=SnapshotType(data["type"]),
            description=data["description"],
            event_index=data["event_index"],
            timestamp=data["timestamp"],
            real_timestamp=data["real_timestamp"],
            state=data["state"],
        )


@dataclass
class ScenarioRecord:
    """A named recording: starting model and state, settings, events, snapshots."""

    id: str
    name: str
    model: dict[str, Any]
    settings: dict[str, Any]
    initial_state: dict[str, Any]
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    events: list[CoreEvent] = field(default_factory=list)
    snapshots: list[Snapshot] = field(default_factory=list)
    model_hash: str = ""
    canonical_version: str = CANONICAL_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "model": self.model,
            "model_hash": self.model_hash,
            "canonical_version": self.canonical_version,
            "settings": self.settings,
            "initial_state": self.initial_state,
            "events": [event.to_dict() for event in self.events],
            "snapshots": [snapshot.to_dict() for snapshot in self.snapshots],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScenarioRecord:
        return cls(
            id=data["id"],
            name=data["name"],
            description=data["description"],
            created_at=data["created_at"],
            model=data["model"],
            model_hash=data["model_hash"],
            canonical_version=data["canonical_version"],
            settings=data["settings"],
            initial_state=data["initial_state"],
            events=[CoreEvent.from_dict(item) for item in data["events"]],
            snapshots=[Snapshot.from_dict(item) for item in data["snapshots"]],
        )


class EventRecorder:
    """Captures a scheduler's external inputs into a ScenarioRecord.

    Example:
        recorder = EventRecorder("baseline", snapshot_interval=50)
        recorder.start(scheduler)
        scheduler.step(200)
        scheduler.inject_token("q", 10)
        record = recorder.stop()
    """

    def __init__(
        self,
        name: str,
        *,
        description: str = "",
        snapshot_interval: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._name = name
        self._description = description
        self._snapshot_interval = snapshot_interval
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._session_id = uuid.uuid4().hex
        self._record: ScenarioRecord | None = None
        self._scheduler: Scheduler | None = None

    @property
    def record(self) -> ScenarioRecord:
        if self._record is None:
            raise ReplayError("Recorder has not been started")
        return self._record

    @property
    def is_recording(self) -> bool:
        return self._scheduler is not None

    def start(self, scheduler: Scheduler) -> ScenarioRecord:
        """Begin recording from the scheduler's current state.

        Raises:
            NoScenarioLoadedError: If the scheduler has no scenario
        """
        initial_state = scheduler.snapshot_state()
        scenario = scheduler.scenario
        assert scenario is not None
        self._record = ScenarioRecord(
            id=uuid.uuid4().hex,
            name=self._name,
            description=self._description,
            model=scenario.model_dump(mode="json"),
            model_hash=scenario_hash(scenario),
            settings=resolve_config(scheduler.settings),
            initial_state=initial_state,
        )
        self._scheduler = scheduler
        scheduler.attach_recorder(self)
        self.capture(CoreEventType.SIMULATION_START, timestamp=scheduler.time, payload={"model_hash": self._record.model_hash})
        logger.info("Recording started", name=self._name, time=scheduler.time)
        return self._record

    def stop(self) -> ScenarioRecord:
        """Detach, taking a final automatic snapshot of the end state."""
        record = self.record
        if self._scheduler is not None:
            self.snapshot("final state", snapshot_type=SnapshotType.AUTOMATIC)
            self._scheduler.attach_recorder(None)
            self._scheduler = None
        logger.info("Recording stopped", name=self._name, events=len(record.events), snapshots=len(record.snapshots))
        return record

    def capture(
        self,
        event_type: CoreEventType,
        *,
        timestamp: int,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> CoreEvent:
        record = self.record
        sequence = len(record.events)
        event = CoreEvent(
            id=f"evt-{sequence}",
            type=event_type,
            timestamp=timestamp,
            real_timestamp=self._clock.epoch_ms(),
            sequence=sequence,
            session_id=self._session_id,
            node_id=node_id,
            payload=dict(payload) if payload is not None else {},
        )
        record.events.append(event)
        return event

    def snapshot(self, description: str = "", *, snapshot_type: SnapshotType = SnapshotType.MANUAL) -> Snapshot:
        """Capture the attached scheduler's full state.

        Raises:
            ReplayError: If the recorder is not attached to a scheduler
        """
        if self._scheduler is None:
            raise ReplayError("Cannot snapshot: recorder is not attached to a scheduler")
        record = self.record
        snapshot = Snapshot(
            id=f"snap-{len(record.snapshots)}",
            type=snapshot_type,
            description=description,
            event_index=len(record.events),
            timestamp=self._scheduler.time,
            real_timestamp=self._clock.epoch_ms(),
            state=self._scheduler.snapshot_state(),
        )
        record.snapshots.append(snapshot)
        logger.debug("Snapshot taken", snapshot_id=snapshot.id, type=snapshot_type.value, time=snapshot.timestamp)
        return snapshot

    def after_tick(self, scheduler: Scheduler) -> None:
        if self._snapshot_interval is not None and scheduler.time % self._snapshot_interval == 0:
            self.snapshot(f"automatic at t={scheduler.time}", snapshot_type=SnapshotType.AUTOMATIC)

    def before_model_upgrade(self, scheduler: Scheduler) -> None:
        self.snapshot(f"before model upgrade at t={scheduler.time}", snapshot_type=SnapshotType.BEFORE_MODEL_UPGRADE)


# -- comparison ---------------------------------------------------------------


def strip_wall_clock(data: Any) -> Any:
    """Drop epoch_timestamp fields, which legitimately differ between runs.

    Tuples become lists so that in-memory captures compare equal to ones
    read back from JSON.
    """
    if isinstance(data, dict):
        return {k: strip_wall_clock(v) for k, v in data.items() if k != "epoch_timestamp"}
    if isinstance(data, list | tuple):
        return [strip_wall_clock(v) for v in data]
    return data


@dataclass
class ValidationReport:
    """Divergence between a replayed state and a recorded snapshot.

    Errors are state divergence (node states, time); warnings are counter
    and activity-log differences.
    """

    snapshot_id: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_against_snapshot(expected: dict[str, Any], actual: dict[str, Any], snapshot_id: str | None = None) -> ValidationReport:
    """Compare two EngineState.to_dict() captures, ignoring wall-clock fields."""
    report = ValidationReport(snapshot_id=snapshot_id)
    expected = strip_wall_clock(expected)
    actual = strip_wall_clock(actual)

    if expected["time"] != actual["time"]:
        report.errors.append(f"Simulation time differs: expected {expected['time']}, got {actual['time']}")

    expected_nodes: dict[str, Any] = expected["node_states"]
    actual_nodes: dict[str, Any] = actual["node_states"]
    for node_id in sorted(expected_nodes.keys() | actual_nodes.keys()):
        if node_id not in actual_nodes:
            report.errors.append(f"Node {node_id}: missing from replayed state")
            continue
        if node_id not in expected_nodes:
            report.errors.append(f"Node {node_id}: not present in recorded state")
            continue
        for key in sorted(expected_nodes[node_id].keys() | actual_nodes[node_id].keys()):
            want = expected_nodes[node_id].get(key)
            got = actual_nodes[node_id].get(key)
            if want != got:
                report.errors.append(f"Node {node_id}: {key} differs (expected {want!r}, got {got!r})")

    if expected["tokens"] != actual["tokens"]:
        report.errors.append("Buffered token contents differ")

    if expected["next_token_id"] != actual["next_token_id"]:
        report.warnings.append(f"Token counter differs: expected {expected['next_token_id']}, got {actual['next_token_id']}")
    if expected["activity"]["sequence"] != actual["activity"]["sequence"]:
        report.warnings.append(
            f"Activity sequence differs: expected {expected['activity']['sequence']}, got {actual['activity']['sequence']}"
        )
    if expected["activity"]["global"] != actual["activity"]["global"]:
        report.warnings.append("Global activity log differs")
    return report


@dataclass(frozen=True)
class StateDifference:
    """One diverging field between two replays of the same events."""

    timestamp: int
    field: str
    value_a: Any
    value_b: Any
    significance: DifferenceSignificance


def _node_metrics(node: dict[str, Any]) -> dict[str, tuple[Any, DifferenceSignificance]]:
    major = DifferenceSignificance.MAJOR
    minor = DifferenceSignificance.MINOR
    metrics: dict[str, tuple[Any, DifferenceSignificance]] = {
        "current_state": (node["state_machine"]["current_state"], minor),
    }
    if "input_buffer" in node:
        metrics["input_buffer_size"] = (len(node["input_buffer"]), major)
        metrics["output_buffer_size"] = (len(node["output_buffer"]), major)
        metrics["last_aggregation_time"] = (node["last_aggregation_time"], minor)
    if "input_buffers" in node:
        metrics["input_buffer_size"] = (sum(len(ids) for ids in node["input_buffers"].values()), major)
        metrics["last_fired_time"] = (node["last_fired_time"], minor)
    if "consumed_token_count" in node:
        metrics["consumed_token_count"] = (node["consumed_token_count"], major)
        metrics["last_consumed_time"] = (node["last_consumed_time"], minor)
    if "last_emission_time" in node:
        metrics["last_emission_time"] = (node["last_emission_time"], minor)
    return metrics


def diff_states(state_a: dict[str, Any], state_b: dict[str, Any]) -> list[StateDifference]:
    """Diff two engine-state captures at the level a model comparison cares about."""
    timestamp = max(state_a["time"], state_b["time"])
    differences: list[StateDifference] = []
    major = DifferenceSignificance.MAJOR

    if state_a["time"] != state_b["time"]:
        differences.append(StateDifference(timestamp, "time", state_a["time"], state_b["time"], major))
    created_a = state_a["next_token_id"] - 1
    created_b = state_b["next_token_id"] - 1
    if created_a != created_b:
        differences.append(StateDifference(timestamp, "tokens_created", created_a, created_b, major))

    nodes_a: dict[str, Any] = state_a["node_states"]
    nodes_b: dict[str, Any] = state_b["node_states"]
    for node_id in sorted(nodes_a.keys() | nodes_b.keys()):
        if node_id not in nodes_a or node_id not in nodes_b:
            differences.append(
                StateDifference(
                    timestamp,
                    f"{node_id}.present",
                    node_id in nodes_a,
                    node_id in nodes_b,
                    major,
                )
            )
            continue
        metrics_a = _node_metrics(nodes_a[node_id])
        metrics_b = _node_metrics(nodes_b[node_id])
        for name in sorted(metrics_a.keys() | metrics_b.keys()):
            value_a, significance = metrics_a.get(name, metrics_b.get(name, (None, major)))
            value_b = metrics_b[name][0] if name in metrics_b else None
            if name not in metrics_a:
                value_a = None
            if value_a != value_b:
                differences.append(StateDifference(timestamp, f"{node_id}.{name}", value_a, value_b, significance))
    return differences


# -- replay -------------------------------------------------------------------


@dataclass
class ReplayResult:
    """Outcome of one replay."""

    scheduler: Scheduler
    events_applied: int
    started_from_snapshot: str | None = None
    validation: ValidationReport | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def state(self) -> dict[str, Any]:
        return self.scheduler.snapshot_state()


@dataclass
class ComparisonResult:
    result_a: ReplayResult
    result_b: ReplayResult
    differences: list[StateDifference]

    @property
    def major_differences(self) -> list[StateDifference]:
        return [d for d in self.differences if d.significance == DifferenceSignificance.MAJOR]


def validate_event_sequence(events: list[CoreEvent]) -> tuple[bool, list[str]]:
    """Check a recorded event list is replayable.

    Returns:
        (is_valid, errors): the first event must be simulation_start and
        timestamps must never decrease (except across a reset) and sequence
        numbers must increase
    """
    errors: list[str] = []
    if not events:
        return False, ["Event sequence is empty"]
    if events[0].type != CoreEventType.SIMULATION_START:
        errors.append(f"First event must be simulation_start, got {events[0].type.value}")
    for previous, current in zip(events, events[1:], strict=False):
        if current.sequence <= previous.sequence:
            errors.append(f"Event {current.id} has sequence {current.sequence} after {previous.sequence}")
        if previous.action == ControlAction.RESET:
            continue
        if current.timestamp < previous.timestamp:
            errors.append(
                f"Event {current.id} at t={current.timestamp} is before event {previous.id} at t={previous.timestamp}"
            )
    return not errors, errors


def verify_model_hash(record: ScenarioRecord) -> list[str]:
    """Check the recorded model against its stored fingerprint.

    Returns:
        Warnings; empty when the hash matches or the record carries none
    """
    if not record.model_hash:
        return []
    if record.canonical_version != CANONICAL_VERSION:
        return [f"Model hash version {record.canonical_version!r} is not {CANONICAL_VERSION!r}; hash not checked"]
    model, errors = validate_scenario(record.model)
    if model is None:
        return [f"Recorded model is invalid: {errors}"]
    if scenario_hash(model) != record.model_hash:
        logger.warning("Recorded model does not match its hash", record=record.name)
        return ["Recorded model does not match model_hash; the record may have been edited"]
    return []


class ReplayEngine:
    """Re-executes recorded events against the recorded model or another one.

    Example:
        engine = ReplayEngine()
        result = engine.replay(record)
        assert result.validation is not None and result.validation.is_valid

        comparison = engine.compare(record, upgraded_model)
        for diff in comparison.major_differences:
            print(diff.field, diff.value_a, diff.value_b)
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock

    def _settings(self, record: ScenarioRecord) -> TokenflowSettings:
        return TokenflowSettings.model_validate(record.settings)

    def replay(
        self,
        record: ScenarioRecord,
        *,
        model: ScenarioConfig | dict[str, Any] | None = None,
        target_time: int | None = None,
        use_snapshots: bool = True,
        validate: bool | None = None,
    ) -> ReplayResult:
        """Replay a record.

        Args:
            record: The recording
            model: Alternative starting model (A/B comparison); None replays
                against the recorded model
            target_time: Stop after the last event at or before this time
            use_snapshots: Start from the latest snapshot at or before
                target_time (recorded model only)
            validate: Compare against the latest snapshot reached; defaults
                to the record's replay.validate setting. Only applies to
                replays against the recorded model.

        Raises:
            ReplayError: If the record's event list is not replayable or the
                alternative model is invalid
        """
        ok, sequence_errors = validate_event_sequence(record.events)
        if not ok:
            raise ReplayError(f"Event sequence is not replayable: {sequence_errors}")

        settings = self._settings(record)
        if validate is None:
            validate = settings.replay.validate_replay

        alternative: ScenarioConfig | None = None
        if model is not None:
            alternative, errors = validate_scenario(model)
            if alternative is None:
                raise ReplayError(f"Replay model is invalid: {errors}")

        scheduler = Scheduler(settings, clock=self._clock)
        start_index = 0
        started_from: str | None = None
        snapshot = None
        if alternative is None and use_snapshots and target_time is not None:
            snapshot = self._best_snapshot(record, target_time)
        if snapshot is not None:
            scheduler.load_state(snapshot.state)
            start_index = snapshot.event_index
            started_from = snapshot.id
        else:
            scheduler.load_state(record.initial_state, model=alternative)

        end_index = len(record.events)
        if target_time is not None:
            end_index = next(
                (i for i in range(start_index, len(record.events)) if record.events[i].timestamp > target_time),
                len(record.events),
            )

        logger.info(
            "Replay started",
            record=record.name,
            from_snapshot=started_from,
            alternative_model=alternative is not None,
            events=end_index - start_index,
        )

        check_against = None
        captured_state: dict[str, Any] | None = None
        if validate and alternative is None:
            check_against = self._validation_snapshot(record, start_index, end_index)
            if check_against is not None and check_against.event_index == start_index:
                captured_state = scheduler.snapshot_state()

        result = ReplayResult(scheduler=scheduler, events_applied=0, started_from_snapshot=started_from)
        result.warnings.extend(verify_model_hash(record))
        for index in range(start_index, end_index):
            self._apply(scheduler, record.events[index], result)
            result.events_applied += 1
            if check_against is not None and check_against.event_index == index + 1:
                captured_state = scheduler.snapshot_state()

        if check_against is not None and captured_state is not None:
            result.validation = validate_against_snapshot(check_against.state, captured_state, check_against.id)

        logger.info(
            "Replay finished",
            record=record.name,
            events_applied=result.events_applied,
            time=scheduler.time,
            valid=result.validation.is_valid if result.validation is not None else None,
        )
        return result

    def _best_snapshot(self, record: ScenarioRecord, target_time: int) -> Snapshot | None:
        eligible = [s for s in record.snapshots if s.timestamp <= target_time]
        if not eligible:
            return None
        return max(eligible, key=lambda s: (s.event_index, s.timestamp))

    def _validation_snapshot(self, record: ScenarioRecord, start_index: int, end_index: int) -> Snapshot | None:
        # Latest snapshot the replay actually passes through
        candidates = [s for s in record.snapshots if start_index <= s.event_index <= end_index]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.event_index)

    def _apply(self, scheduler: Scheduler, event: CoreEvent, result: ReplayResult) -> None:
        match event.type:
            case CoreEventType.SIMULATION_START:
                return
            case CoreEventType.TIMER_TICK:
                now = scheduler.tick()
                if now != event.timestamp:
                    result.warnings.append(f"{event.id}: tick reached t={now}, recorded t={event.timestamp}")
            case CoreEventType.MANUAL_INPUT:
                assert event.node_id is not None
                try:
                    scheduler.inject_token(
                        event.node_id,
                        event.payload["value"],
                        input_node_id=event.payload.get("input_node_id"),
                    )
                except (KeyError, ValueError) as e:
                    result.warnings.append(f"{event.id}: injection at {event.node_id} skipped: {e}")
            case CoreEventType.USER_INTERACTION:
                if event.action == ControlAction.RESET:
                    scheduler.reset()
            case CoreEventType.MODEL_UPGRADE:
                errors = scheduler.upgrade_model(event.payload["model"], reason=event.payload["reason"])
                if errors:
                    result.warnings.append(f"{event.id}: model upgrade rejected: {errors}")

    def compare(self, record: ScenarioRecord, model_b: ScenarioConfig | dict[str, Any]) -> ComparisonResult:
        """Replay the same events against the recorded model and model_b and diff the outcomes."""
        result_a = self.replay(record, validate=False)
        result_b = self.replay(record, model=model_b, validate=False)
        differences = diff_states(result_a.state, result_b.state)
        logger.info("Comparison finished", record=record.name, differences=len(differences))
        return ComparisonResult(result_a=result_a, result_b=result_b, differences=differences)


class ScenarioStore:
    """In-memory store of scenario records with JSON export and import."""

    def __init__(self) -> None:
        self._records: dict[str, ScenarioRecord] = {}

    def create(self, record: ScenarioRecord) -> ScenarioRecord:
        """Add a record. Raises ValueError if its id is already stored."""
        if record.id in self._records:
            raise ValueError(f"Scenario record {record.id!r} already exists")
        self._records[record.id] = record
        return record

    def get(self, record_id: str) -> ScenarioRecord:
        """Raises KeyError for unknown ids."""
        return self._records[record_id]

    def list_records(self) -> list[dict[str, Any]]:
        return [
            {
                "id": r.id,
                "name": r.name,
                "created_at": r.created_at,
                "event_count": len(r.events),
                "snapshot_count": len(r.snapshots),
            }
            for r in sorted(self._records.values(), key=lambda r: r.created_at)
        ]

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def export_json(self, record_id: str) -> str:
        return snapshot_dumps(self.get(record_id).to_dict(), indent=2)

    def import_json(self, text: str) -> ScenarioRecord:
        """Import an exported record under a fresh id.

        Raises:
            ReplayError: If the text is not a valid exported record
        """
        record = load_record(text)
        record.id = uuid.uuid4().hex
        return self.create(record)


def load_record(text: str) -> ScenarioRecord:
    """Parse an exported record.

    Raises:
        ReplayError: If the text is not a valid exported record
    """
    try:
        return ScenarioRecord.from_dict(snapshot_loads(text))
    except (ValueError, KeyError, TypeError) as e:
        # JSONDecodeError and SnapshotFormatError are both ValueErrors
        raise ReplayError(f"Not a valid scenario record: {e}") from e


__all__ = [
    "ComparisonResult",
    "EventRecorder",
    "ReplayEngine",
    "ReplayError",
    "ReplayResult",
    "ScenarioRecord",
    "ScenarioStore",
    "Snapshot",
    "SnapshotFormatError",
    "StateDifference",
    "ValidationReport",
    "diff_states",
    "load_record",
    "strip_wall_clock",
    "validate_against_snapshot",
    "validate_event_sequence",
]
