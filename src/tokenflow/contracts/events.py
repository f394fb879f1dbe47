"""Core events and observability events.

Core events are the externally generated inputs that drive a simulation
(ticks, manual injections, user controls, model upgrades). They are the
unit of recording and replay.

Observability events are emitted by the scheduler on the EventBus for
CLI progress output. They are never recorded.
"""

from dataclasses import dataclass, field
from typing import Any

from tokenflow.contracts.enums import ControlAction, CoreEventType, SimulationStatus


@dataclass(frozen=True, slots=True)
class CoreEvent:
    """One recorded external input.

    Attributes:
        id: Unique event id within the recording session
        type: What kind of input this is
        timestamp: Simulation time at which the event applied
        real_timestamp: Wall-clock capture time in epoch milliseconds
        sequence: Position in the recording session (0-based, gapless)
        session_id: Recording session that captured the event
        node_id: Target node (manual_input only)
        payload: Event-specific data (value, action, model, reason)
    """

    id: str
    type: CoreEventType
    timestamp: int
    real_timestamp: int
    sequence: int
    session_id: str
    node_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> ControlAction | None:
        """Control action for user_interaction events."""
        if self.type != CoreEventType.USER_INTERACTION:
            return None
        return ControlAction(self.payload["action"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "real_timestamp": self.real_timestamp,
            "sequence": self.sequence,
            "session_id": self.session_id,
            "node_id": self.node_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CoreEvent":
        return cls(
            id=data["id"],
            type=CoreEventType(data["type"]),
            timestamp=data["timestamp"],
            real_timestamp=data["real_timestamp"],
            sequence=data["sequence"],
            session_id=data["session_id"],
            node_id=data["node_id"],
            payload=dict(data["payload"]),
        )


@dataclass(frozen=True, slots=True)
class TickCompleted:
    """Emitted after every tick.

    Attributes:
        time: Simulation time after the tick
        entries_logged: Activity entries written during the tick
        tokens_created: Tokens created during the tick
    """

    time: int
    entries_logged: int
    tokens_created: int


@dataclass(frozen=True, slots=True)
class SimulationStatusChanged:
    """Emitted when play()/pause() moves the scheduler between states."""

    status: SimulationStatus


@dataclass(frozen=True, slots=True)
class FormulaFailed:
    """Emitted when one output formula of a process node fails."""

    node_id: str
    output_index: int
    error: str


@dataclass(frozen=True, slots=True)
class ModelUpgraded:
    """Emitted when the running model is replaced."""

    reason: str
    node_count: int
