"""Per-node runtime state.

These types answer: "Where is every node in its lifecycle right now?"

One state object exists per node and is mutated only by the scheduler.
Buffers are FIFO: tokens are appended at the tail and consumed from the
head. Buffers hold Token references; serialization to plain dicts is done
by the engine state (engine/state.py), which writes tokens once by id so
that shared references survive a snapshot round-trip.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from tokenflow.contracts.enums import NodeFSMState, NodeType
from tokenflow.contracts.tokens import Token


@dataclass(frozen=True)
class StateTransition:
    """One recorded FSM transition."""

    from_state: NodeFSMState
    to_state: NodeFSMState
    timestamp: int
    trigger: str | None = None


@dataclass
class StateMachineInfo:
    """Current FSM position plus a bounded ring of past transitions."""

    current_state: NodeFSMState
    previous_state: NodeFSMState | None = None
    state_changed_at: int | None = None
    transition_history: deque[StateTransition] = field(default_factory=deque)


@dataclass
class DataSourceState:
    state_machine: StateMachineInfo
    last_emission_time: int = -1

    node_type = NodeType.DATA_SOURCE


@dataclass
class QueueState:
    """Queue buffers.

    input_buffer holds unconsumed arrivals; output_buffer holds aggregated
    tokens awaiting forwarding.
    """

    state_machine: StateMachineInfo
    input_buffer: deque[Token] = field(default_factory=deque)
    output_buffer: deque[Token] = field(default_factory=deque)
    last_aggregation_time: int = -1

    node_type = NodeType.QUEUE


@dataclass
class ProcessNodeState:
    """Per-source input buffers, keyed by upstream node id."""

    state_machine: StateMachineInfo
    input_buffers: dict[str, deque[Token]] = field(default_factory=dict)
    last_fired_time: int = -1

    node_type = NodeType.PROCESS_NODE

    def buffer_for(self, source_node_id: str) -> deque[Token]:
        """Return the buffer for an upstream node, creating it on first use."""
        if source_node_id not in self.input_buffers:
            self.input_buffers[source_node_id] = deque()
        return self.input_buffers[source_node_id]


@dataclass
class SinkState:
    """Consumption counters plus a bounded ring of the most recent tokens."""

    state_machine: StateMachineInfo
    consumed_token_count: int = 0
    last_consumed_time: int = -1
    consumed_tokens: deque[Token] = field(default_factory=deque)

    node_type = NodeType.SINK


NodeState = DataSourceState | QueueState | ProcessNodeState | SinkState
