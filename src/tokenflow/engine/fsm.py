# src/tokenflow/engine/fsm.py
"""Fixed per-archetype node state machines.

Transitions are bookkeeping: behavior handlers decide what happens from
buffer contents and timers, act, and only then record the transition.
A transition missing from the table is still recorded (the handler has
already acted) and logged at debug level so table drift is visible.
"""

from __future__ import annotations

from collections import deque

from tokenflow.contracts import NodeFSMState, NodeType, StateMachineInfo, StateTransition
from tokenflow.core.logging import get_logger

logger = get_logger(__name__)

S = NodeFSMState

INITIAL_STATES: dict[NodeType, NodeFSMState] = {
    NodeType.DATA_SOURCE: S.SOURCE_IDLE,
    NodeType.QUEUE: S.QUEUE_IDLE,
    NodeType.PROCESS_NODE: S.PROCESS_IDLE,
    NodeType.SINK: S.SINK_IDLE,
}

TRANSITIONS: dict[NodeType, frozenset[tuple[NodeFSMState, NodeFSMState]]] = {
    NodeType.DATA_SOURCE: frozenset(
        {
            (S.SOURCE_IDLE, S.SOURCE_GENERATING),
            (S.SOURCE_WAITING, S.SOURCE_GENERATING),
            (S.SOURCE_GENERATING, S.SOURCE_EMITTING),
            (S.SOURCE_EMITTING, S.SOURCE_IDLE),
            (S.SOURCE_EMITTING, S.SOURCE_WAITING),
        }
    ),
    NodeType.QUEUE: frozenset(
        {
            (S.QUEUE_IDLE, S.QUEUE_ACCUMULATING),
            (S.QUEUE_EMITTING, S.QUEUE_ACCUMULATING),
            (S.QUEUE_ACCUMULATING, S.QUEUE_IDLE),
            (S.QUEUE_EMITTING, S.QUEUE_IDLE),
            (S.QUEUE_ACCUMULATING, S.QUEUE_PROCESSING),
            # Full buffer after a capacity drop
            (S.QUEUE_IDLE, S.QUEUE_PROCESSING),
            (S.QUEUE_PROCESSING, S.QUEUE_EMITTING),
            (S.QUEUE_IDLE, S.QUEUE_EMITTING),
            (S.QUEUE_ACCUMULATING, S.QUEUE_EMITTING),
        }
    ),
    NodeType.PROCESS_NODE: frozenset(
        {
            (S.PROCESS_IDLE, S.PROCESS_COLLECTING),
            (S.PROCESS_COLLECTING, S.PROCESS_CALCULATING),
            (S.PROCESS_CALCULATING, S.PROCESS_EMITTING),
            (S.PROCESS_EMITTING, S.PROCESS_IDLE),
            (S.PROCESS_EMITTING, S.PROCESS_COLLECTING),
        }
    ),
    NodeType.SINK: frozenset(
        {
            (S.SINK_IDLE, S.SINK_PROCESSING),
            (S.SINK_PROCESSING, S.SINK_IDLE),
        }
    ),
}


def is_allowed(node_type: NodeType, from_state: NodeFSMState, to_state: NodeFSMState) -> bool:
    return (from_state, to_state) in TRANSITIONS[node_type]


def new_state_machine(node_type: NodeType, max_history: int) -> StateMachineInfo:
    """Fresh machine in the archetype's initial state with a bounded history ring."""
    return StateMachineInfo(
        current_state=INITIAL_STATES[node_type],
        transition_history=deque(maxlen=max_history),
    )


def transition(
    machine: StateMachineInfo,
    *,
    node_id: str,
    node_type: NodeType,
    new_state: NodeFSMState,
    timestamp: int,
    trigger: str | None = None,
) -> StateTransition:
    """Record a transition and move the machine to new_state.

    Args:
        machine: The node's machine (mutated in place)
        node_id: Owning node, for diagnostics
        node_type: Archetype whose table applies
        new_state: Target state
        timestamp: Simulation tick
        trigger: What caused the transition

    Returns:
        The recorded transition
    """
    record = StateTransition(
        from_state=machine.current_state,
        to_state=new_state,
        timestamp=timestamp,
        trigger=trigger,
    )
    if not is_allowed(node_type, record.from_state, new_state):
        logger.debug(
            "Off-table node transition",
            node_id=node_id,
            node_type=node_type.value,
            from_state=record.from_state.value,
            to_state=new_state.value,
            trigger=trigger,
        )
    machine.transition_history.append(record)
    machine.previous_state = machine.current_state
    machine.current_state = new_state
    machine.state_changed_at = timestamp
    return record
