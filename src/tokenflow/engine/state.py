# src/tokenflow/engine/state.py
"""Exclusively owned engine state and its snapshot form.

EngineState bundles everything a tick mutates: simulation time, per-node
runtime state, the activity log, the token id counter, the lineage index
and the random generator. The scenario it runs is a shared, frozen model.

Snapshot form (to_dict) is plain JSON-compatible data. Buffers hold token
ids; each token is written once in a ``tokens`` table so that one token
referenced from several buffers (a queue output broadcast to two
destinations) is still a single object after restore.
"""

from __future__ import annotations

import random
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from tokenflow.contracts import (
    DataSourceState,
    NodeFSMState,
    NodeState,
    NodeType,
    ProcessNodeState,
    QueueState,
    SinkState,
    StateMachineInfo,
    StateTransition,
    Token,
)
from tokenflow.core.config import LimitSettings, TokenflowSettings
from tokenflow.core.scenario import (
    DataSourceConfig,
    ProcessNodeConfig,
    QueueConfig,
    ScenarioConfig,
    SinkConfig,
    validate_scenario,
)
from tokenflow.engine.activity import ActivityLog, ErrorChannel
from tokenflow.engine.clock import Clock
from tokenflow.engine.fsm import new_state_machine
from tokenflow.engine.lineage import LineageIndex, TokenManager

AnyNodeConfig = DataSourceConfig | QueueConfig | ProcessNodeConfig | SinkConfig


def initial_node_state(config: AnyNodeConfig, limits: LimitSettings) -> NodeState:
    """Fresh runtime state for a node config."""
    node_type = NodeType(config.type)
    machine = new_state_machine(node_type, limits.max_transition_history)
    if isinstance(config, DataSourceConfig):
        return DataSourceState(state_machine=machine)
    if isinstance(config, QueueConfig):
        return QueueState(state_machine=machine)
    if isinstance(config, ProcessNodeConfig):
        return ProcessNodeState(
            state_machine=machine,
            input_buffers={process_input.node_id: deque() for process_input in config.inputs},
        )
    return SinkState(state_machine=machine, consumed_tokens=deque(maxlen=limits.max_sink_tokens))


def _machine_to_dict(machine: StateMachineInfo) -> dict[str, Any]:
    return {
        "current_state": machine.current_state.value,
        "previous_state": machine.previous_state.value if machine.previous_state is not None else None,
        "state_changed_at": machine.state_changed_at,
        "transition_history": [
            {
                "from_state": t.from_state.value,
                "to_state": t.to_state.value,
                "timestamp": t.timestamp,
                "trigger": t.trigger,
            }
            for t in machine.transition_history
        ],
    }


def _machine_from_dict(data: dict[str, Any], max_history: int) -> StateMachineInfo:
    previous = data["previous_state"]
    return StateMachineInfo(
        current_state=NodeFSMState(data["current_state"]),
        previous_state=NodeFSMState(previous) if previous is not None else None,
        state_changed_at=data["state_changed_at"],
        transition_history=deque(
            (
                StateTransition(
                    from_state=NodeFSMState(t["from_state"]),
                    to_state=NodeFSMState(t["to_state"]),
                    timestamp=t["timestamp"],
                    trigger=t["trigger"],
                )
                for t in data["transition_history"]
            ),
            maxlen=max_history,
        ),
    )


def _ids(tokens: deque[Token]) -> list[str]:
    return [token.id for token in tokens]


def node_state_to_dict(state: NodeState) -> dict[str, Any]:
    """Plain form of a node state; buffers are written as token ids."""
    data: dict[str, Any] = {
        "node_type": state.node_type.value,
        "state_machine": _machine_to_dict(state.state_machine),
    }
    match state:
        case DataSourceState():
            data["last_emission_time"] = state.last_emission_time
        case QueueState():
            data["input_buffer"] = _ids(state.input_buffer)
            data["output_buffer"] = _ids(state.output_buffer)
            data["last_aggregation_time"] = state.last_aggregation_time
        case ProcessNodeState():
            data["input_buffers"] = {source: _ids(buffer) for source, buffer in state.input_buffers.items()}
            data["last_fired_time"] = state.last_fired_time
        case SinkState():
            data["consumed_token_count"] = state.consumed_token_count
            data["last_consumed_time"] = state.last_consumed_time
            data["consumed_tokens"] = _ids(state.consumed_tokens)
    return data


def node_state_from_dict(data: dict[str, Any], tokens: dict[str, Token], limits: LimitSettings) -> NodeState:
    """Rebuild a node state, resolving token ids against the shared table.

    Raises:
        KeyError: If a buffer references a token missing from the table
        ValueError: If node_type is unknown
    """
    machine = _machine_from_dict(data["state_machine"], limits.max_transition_history)
    node_type = NodeType(data["node_type"])
    if node_type == NodeType.DATA_SOURCE:
        return DataSourceState(state_machine=machine, last_emission_time=data["last_emission_time"])
    if node_type == NodeType.QUEUE:
        return QueueState(
            state_machine=machine,
            input_buffer=deque(tokens[t] for t in data["input_buffer"]),
            output_buffer=deque(tokens[t] for t in data["output_buffer"]),
            last_aggregation_time=data["last_aggregation_time"],
        )
    if node_type == NodeType.PROCESS_NODE:
        return ProcessNodeState(
            state_machine=machine,
            input_buffers={source: deque(tokens[t] for t in ids) for source, ids in data["input_buffers"].items()},
            last_fired_time=data["last_fired_time"],
        )
    return SinkState(
        state_machine=machine,
        consumed_token_count=data["consumed_token_count"],
        last_consumed_time=data["last_consumed_time"],
        consumed_tokens=deque((tokens[t] for t in data["consumed_tokens"]), maxlen=limits.max_sink_tokens),
    )


def buffered_tokens(state: NodeState) -> Iterator[Token]:
    """Every token currently held by a node state."""
    match state:
        case QueueState():
            yield from state.input_buffer
            yield from state.output_buffer
        case ProcessNodeState():
            for buffer in state.input_buffers.values():
                yield from buffer
        case SinkState():
            yield from state.consumed_tokens
        case _:
            return


def _rng_state_to_list(rng: random.Random) -> list[Any]:
    version, internal, gauss_next = rng.getstate()
    return [version, list(internal), gauss_next]


def _rng_state_from_list(data: list[Any]) -> tuple[Any, ...]:
    version, internal, gauss_next = data
    return (version, tuple(internal), gauss_next)


@dataclass
class EngineState:
    """Everything a tick mutates, owned by one Scheduler.

    Use EngineState.initial() to build; fields are wired together
    (the token manager writes to this state's activity log and lineage
    index).
    """

    scenario: ScenarioConfig
    limits: LimitSettings
    activity: ActivityLog
    errors: ErrorChannel
    lineage: LineageIndex
    tokens: TokenManager
    rng: random.Random
    node_states: dict[str, NodeState] = field(default_factory=dict)
    configs: dict[str, AnyNodeConfig] = field(default_factory=dict)
    time: int = 0

    @classmethod
    def initial(
        cls,
        scenario: ScenarioConfig,
        settings: TokenflowSettings,
        *,
        errors: ErrorChannel,
        clock: Clock | None = None,
    ) -> EngineState:
        limits = settings.limits
        activity = ActivityLog(
            max_node_entries=limits.max_node_activity_logs,
            max_global_entries=limits.max_global_activity_logs,
            errors=errors,
            clock=clock,
        )
        lineage = LineageIndex(limits.max_lineage_records)
        state = cls(
            scenario=scenario,
            limits=limits,
            activity=activity,
            errors=errors,
            lineage=lineage,
            tokens=TokenManager(activity, lineage),
            rng=random.Random(settings.playback.seed),
        )
        state.apply_model(scenario)
        return state

    def apply_model(self, scenario: ScenarioConfig) -> None:
        """Switch to a new model, keeping state for nodes whose id and type survive.

        New nodes start from their initial state; removed nodes are dropped
        along with their per-node log.
        """
        previous = self.node_states
        self.scenario = scenario
        self.configs = {node.node_id: node for node in scenario.nodes}
        self.node_states = {}
        for node in scenario.nodes:
            kept = previous.get(node.node_id)
            if kept is not None and kept.node_type == node.type:
                self.node_states[node.node_id] = kept
            else:
                self.node_states[node.node_id] = initial_node_state(node, self.limits)
        for node_id in previous.keys() - self.node_states.keys():
            self.activity.drop_node(node_id)

    def nodes_of_type(self, node_type: NodeType) -> list[str]:
        """Node ids of one archetype, in scenario declaration order."""
        return [node_id for node_id, config in self.configs.items() if config.type == node_type]

    def to_dict(self) -> dict[str, Any]:
        token_table: dict[str, dict[str, Any]] = {}
        for node_state in self.node_states.values():
            for token in buffered_tokens(node_state):
                if token.id not in token_table:
                    token_table[token.id] = token.to_dict()
        return {
            "time": self.time,
            "scenario": self.scenario.model_dump(mode="json"),
            "node_states": {node_id: node_state_to_dict(s) for node_id, s in self.node_states.items()},
            "tokens": token_table,
            "activity": self.activity.to_dict(),
            "lineage": self.lineage.to_dict(),
            "next_token_id": self.tokens.next_id,
            "rng_state": _rng_state_to_list(self.rng),
        }

    def restore(self, data: dict[str, Any]) -> None:
        """Replace this state with a to_dict() capture, verbatim.

        Raises:
            ValueError: If the captured scenario no longer validates
            KeyError: If the capture is missing fields
        """
        scenario, errors = validate_scenario(data["scenario"])
        if scenario is None:
            raise ValueError(f"Snapshot scenario is invalid: {errors}")
        tokens = {token_id: Token.from_dict(item) for token_id, item in data["tokens"].items()}
        self.scenario = scenario
        self.configs = {node.node_id: node for node in scenario.nodes}
        self.node_states = {
            node_id: node_state_from_dict(item, tokens, self.limits) for node_id, item in data["node_states"].items()
        }
        self.time = data["time"]
        self.activity.restore(data["activity"])
        self.lineage.restore(data["lineage"])
        self.tokens.restore(data["next_token_id"])
        self.rng.setstate(_rng_state_from_list(data["rng_state"]))
