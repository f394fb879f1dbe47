"""All status codes, tags, and kinds used across subsystem boundaries.

Every enum here is a StrEnum so values serialize as plain strings in
snapshots, exported scenario records and the activity log.
"""

from enum import StrEnum


class NodeType(StrEnum):
    """Archetype of a node in the scenario graph.

    Values match the ``type`` discriminator used in scenario files.
    """

    DATA_SOURCE = "DataSource"
    QUEUE = "Queue"
    PROCESS_NODE = "ProcessNode"
    SINK = "Sink"


class AggregationMethod(StrEnum):
    """Reduction applied by a Queue when its aggregation window elapses."""

    SUM = "sum"
    AVERAGE = "average"
    COUNT = "count"
    FIRST = "first"
    LAST = "last"


class NodeFSMState(StrEnum):
    """Fixed per-archetype FSM states.

    Prefixes identify the archetype that owns the state. Transition tables
    live in engine/fsm.py.
    """

    SOURCE_IDLE = "source_idle"
    SOURCE_GENERATING = "source_generating"
    SOURCE_EMITTING = "source_emitting"
    SOURCE_WAITING = "source_waiting"

    QUEUE_IDLE = "queue_idle"
    QUEUE_ACCUMULATING = "queue_accumulating"
    QUEUE_PROCESSING = "queue_processing"
    QUEUE_EMITTING = "queue_emitting"

    PROCESS_IDLE = "process_idle"
    PROCESS_COLLECTING = "process_collecting"
    PROCESS_CALCULATING = "process_calculating"
    PROCESS_EMITTING = "process_emitting"

    SINK_IDLE = "sink_idle"
    SINK_PROCESSING = "sink_processing"


class OperationType(StrEnum):
    """Classification of an activity-log entry.

    Derived from the entry's action tag (see ``operation_type_for``).
    """

    CREATION = "creation"
    AGGREGATION = "aggregation"
    TRANSFORMATION = "transformation"
    CONSUMPTION = "consumption"
    TRANSFER = "transfer"


class Action(StrEnum):
    """Action tags written to the activity log.

    Aggregation actions are ``AGGREGATED_<METHOD>``; use
    ``Action.aggregated(method)`` to build them.
    """

    CREATED = "CREATED"
    EMIT_TOKEN = "EMIT_TOKEN"
    TOKEN_ARRIVED = "TOKEN_ARRIVED"
    DROPPED_AT_QUEUE_INPUT_FULL = "DROPPED_AT_QUEUE_INPUT_FULL"
    TOKEN_FORWARDED = "TOKEN_FORWARDED"
    TOKEN_CONSUMED = "TOKEN_CONSUMED"
    INPUT_CONSUMED = "INPUT_CONSUMED"
    PROCESS_FIRED = "PROCESS_FIRED"
    OUTPUT_GENERATED = "OUTPUT_GENERATED"
    FORMULA_ERROR = "FORMULA_ERROR"
    AGGREGATED_SUM = "AGGREGATED_SUM"
    AGGREGATED_AVERAGE = "AGGREGATED_AVERAGE"
    AGGREGATED_COUNT = "AGGREGATED_COUNT"
    AGGREGATED_FIRST = "AGGREGATED_FIRST"
    AGGREGATED_LAST = "AGGREGATED_LAST"
    AGGREGATION_EMPTY = "AGGREGATION_EMPTY"
    TOKEN_INJECTED = "token_injected"
    MODEL_UPGRADED = "MODEL_UPGRADED"

    @classmethod
    def aggregated(cls, method: AggregationMethod) -> "Action":
        return cls(f"AGGREGATED_{method.value.upper()}")


def operation_type_for(action: str) -> OperationType:
    """Classify an action tag.

    CREATED is a creation, AGGREGATED_* (and the empty-window marker) an
    aggregation, OUTPUT_GENERATED/FORMULA_ERROR a transformation, anything
    mentioning CONSUMED a consumption. Everything else is a transfer.
    """
    if action == Action.CREATED:
        return OperationType.CREATION
    if action.startswith("AGGREGATED_") or action == Action.AGGREGATION_EMPTY:
        return OperationType.AGGREGATION
    if action in (Action.OUTPUT_GENERATED, Action.FORMULA_ERROR):
        return OperationType.TRANSFORMATION
    if "CONSUMED" in action:
        return OperationType.CONSUMPTION
    return OperationType.TRANSFER


class SimulationStatus(StrEnum):
    """Scheduler-level run state."""

    STOPPED = "stopped"
    RUNNING = "running"


class CoreEventType(StrEnum):
    """Externally generated inputs recorded for deterministic replay."""

    SIMULATION_START = "simulation_start"
    TIMER_TICK = "timer_tick"
    MANUAL_INPUT = "manual_input"
    USER_INTERACTION = "user_interaction"
    MODEL_UPGRADE = "model_upgrade"


class ControlAction(StrEnum):
    """User control commands carried by user_interaction events."""

    PLAY = "play"
    PAUSE = "pause"
    STEP = "step"
    RESET = "reset"


class SnapshotType(StrEnum):
    """Why a snapshot was taken."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    BEFORE_MODEL_UPGRADE = "before_model_upgrade"


class DifferenceSignificance(StrEnum):
    """Weight of a divergence found when comparing two engine states."""

    MAJOR = "major"
    MINOR = "minor"
