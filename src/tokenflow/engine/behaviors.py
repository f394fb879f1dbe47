# src/tokenflow/engine/behaviors.py
"""Per-archetype node behaviors and token routing.

A tick runs four full passes, each a sweep over every node of one
archetype in scenario declaration order:

1. Source emission
2. Process firing
3. Queue aggregation
4. Queue output forwarding

Nothing here raises out of a pass: formula failures and aggregation
coercion problems degrade to an activity entry plus an error-channel
message, and the tick carries on.

Routing rules (shared by emission, process outputs, forwarding and
injection):
- Queue: dropped when the input buffer is at capacity, else appended
- Sink: consumed immediately into the bounded retention ring
- ProcessNode: appended to the buffer keyed by the sending node
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from tokenflow.contracts import (
    Action,
    DataSourceState,
    FormulaFailed,
    HistoryEntry,
    NodeFSMState,
    NodeState,
    NodeType,
    OperationType,
    ProcessNodeState,
    QueueState,
    SinkState,
    Token,
    TransformationDetails,
)
from tokenflow.core.events import EventBusProtocol
from tokenflow.core.logging import get_logger
from tokenflow.core.scenario import DataSourceConfig, OutputConfig, ProcessNodeConfig, QueueConfig
from tokenflow.engine.aggregation import aggregate
from tokenflow.engine.formula import build_context, describe_calculation, evaluate
from tokenflow.engine.fsm import transition
from tokenflow.engine.state import EngineState

logger = get_logger(__name__)

S = NodeFSMState

# Node id used for activity entries that belong to the engine, not a node
SYSTEM_NODE_ID = "system"


def _buffer_sizes(state: NodeState) -> tuple[int, int]:
    match state:
        case QueueState():
            return len(state.input_buffer), len(state.output_buffer)
        case ProcessNodeState():
            return sum(len(b) for b in state.input_buffers.values()), 0
        case SinkState():
            return len(state.consumed_tokens), 0
        case _:
            return 0, 0


class NodeBehaviors:
    """Behavior handlers bound to one EngineState.

    Example:
        behaviors = NodeBehaviors(state, event_bus)
        state.time += 1
        behaviors.run_tick(state.time)
    """

    def __init__(self, state: EngineState, event_bus: EventBusProtocol) -> None:
        self._state = state
        self._bus = event_bus

    # -- bookkeeping -------------------------------------------------------

    def _move(self, node_id: str, new_state: NodeFSMState, tick: int, trigger: str) -> None:
        node_state = self._state.node_states[node_id]
        transition(
            node_state.state_machine,
            node_id=node_id,
            node_type=node_state.node_type,
            new_state=new_state,
            timestamp=tick,
            trigger=trigger,
        )

    def _log(
        self,
        node_id: str,
        tick: int,
        action: str,
        details: str,
        *,
        tokens: Sequence[Token] = (),
        **fields: Any,
    ) -> HistoryEntry | None:
        """Write an activity entry and append it to each referenced token's history."""
        node_state = self._state.node_states.get(node_id)
        if node_state is not None:
            state_tag = node_state.state_machine.current_state.value
            buffer_size, output_buffer_size = _buffer_sizes(node_state)
        else:
            state_tag, buffer_size, output_buffer_size = "system", 0, 0
        if tokens and "source_token_ids" not in fields:
            fields["source_token_ids"] = tuple(t.id for t in tokens)
        entry = self._state.activity.write(
            node_id=node_id,
            timestamp=tick,
            action=action,
            details=details,
            state=state_tag,
            buffer_size=buffer_size,
            output_buffer_size=output_buffer_size,
            **fields,
        )
        if entry is not None:
            for token in tokens:
                token.record(entry)
        return entry

    # -- tick --------------------------------------------------------------

    def run_tick(self, tick: int) -> None:
        """Run the four passes for one tick, in order."""
        self.emit_sources(tick)
        self.fire_processes(tick)
        self.aggregate_queues(tick)
        self.forward_queues(tick)

    # -- routing -----------------------------------------------------------

    def route(self, token: Token, output: OutputConfig, from_node_id: str, tick: int) -> None:
        """Deliver a token to one declared output's destination."""
        destination_id = output.destination_node_id
        destination = self._state.node_states.get(destination_id)

        match destination:
            case QueueState():
                self._arrive_at_queue(token, destination_id, destination, from_node_id, tick)
            case SinkState():
                self._consume_at_sink(token, destination_id, destination, from_node_id, tick)
            case ProcessNodeState():
                destination.buffer_for(from_node_id).append(token)
                if destination.state_machine.current_state == S.PROCESS_IDLE:
                    self._move(destination_id, S.PROCESS_COLLECTING, tick, "token_received")
                details = f"Received {token.id} (value {token.value}) from {from_node_id}"
                if output.destination_input_name:
                    details += f" on input '{output.destination_input_name}'"
                self._log(
                    destination_id,
                    tick,
                    Action.TOKEN_ARRIVED,
                    details,
                    tokens=[token],
                    value=token.value,
                )
            case _:
                message = f"Cannot route {token.id} from {from_node_id}: destination {destination_id!r} does not accept tokens"
                self._state.errors.append(message)
                logger.warning("Unroutable token", token_id=token.id, from_node_id=from_node_id, destination=destination_id)

    def _arrive_at_queue(self, token: Token, queue_id: str, queue: QueueState, from_node_id: str, tick: int) -> None:
        config = self._state.configs[queue_id]
        assert isinstance(config, QueueConfig)
        capacity = config.capacity
        if capacity is not None and len(queue.input_buffer) >= capacity:
            if queue.state_machine.current_state != S.QUEUE_IDLE:
                self._move(queue_id, S.QUEUE_IDLE, tick, "capacity_full")
            self._log(
                queue_id,
                tick,
                Action.DROPPED_AT_QUEUE_INPUT_FULL,
                f"Dropped {token.id} (value {token.value}) from {from_node_id}: input buffer full ({capacity})",
                tokens=[token],
                value=token.value,
            )
            return
        queue.input_buffer.append(token)
        if queue.state_machine.current_state != S.QUEUE_ACCUMULATING:
            self._move(queue_id, S.QUEUE_ACCUMULATING, tick, "token_received")
        self._log(
            queue_id,
            tick,
            Action.TOKEN_ARRIVED,
            f"Received {token.id} (value {token.value}) from {from_node_id}",
            tokens=[token],
            value=token.value,
        )

    def _consume_at_sink(self, token: Token, sink_id: str, sink: SinkState, from_node_id: str, tick: int) -> None:
        self._move(sink_id, S.SINK_PROCESSING, tick, "token_received")
        sink.consumed_tokens.append(token)
        sink.consumed_token_count += 1
        sink.last_consumed_time = tick
        self._log(
            sink_id,
            tick,
            Action.TOKEN_CONSUMED,
            f"Consumed {token.id} (value {token.value}) from {from_node_id}",
            tokens=[token],
            value=token.value,
        )
        self._move(sink_id, S.SINK_IDLE, tick, "token_consumed")

    # -- pass 1: sources ---------------------------------------------------

    def emit_sources(self, tick: int) -> None:
        for node_id in self._state.nodes_of_type(NodeType.DATA_SOURCE):
            config = self._state.configs[node_id]
            assert isinstance(config, DataSourceConfig)
            source = self._state.node_states[node_id]
            assert isinstance(source, DataSourceState)
            due = source.last_emission_time < 0 or tick - source.last_emission_time >= config.interval
            if not due:
                continue

            value = self._state.rng.randint(config.value_min, config.value_max)
            self._move(node_id, S.SOURCE_GENERATING, tick, "interval_reached")
            token = self._state.tokens.create_token(
                node_id,
                value,
                timestamp=tick,
                state=S.SOURCE_GENERATING,
            )
            self._move(node_id, S.SOURCE_EMITTING, tick, "token_created")
            self._log(node_id, tick, Action.EMIT_TOKEN, f"Emitted {token.id} with value {value}", tokens=[token], value=value)
            for output in config.outputs:
                self.route(token, output, node_id, tick)
            source.last_emission_time = tick
            if config.interval > 1:
                self._move(node_id, S.SOURCE_WAITING, tick, "awaiting_interval")
            else:
                self._move(node_id, S.SOURCE_IDLE, tick, "emission_complete")

    # -- pass 2: process nodes ---------------------------------------------

    def _select_inputs(self, config: ProcessNodeConfig, process: ProcessNodeState) -> list[tuple[str, Token]] | None:
        """Pick one token per declared input without consuming anything.

        A Queue-fed input is satisfied by the process node's own buffer for
        that queue first, then by the head of the queue's output buffer.

        Returns:
            (source node id, token) per input in declaration order, or None
            if any input has no token available
        """
        used: dict[str, int] = {}
        selected: list[tuple[str, Token]] = []
        for process_input in config.inputs:
            source_id = process_input.node_id
            pool = list(process.input_buffers.get(source_id, ()))
            upstream = self._state.node_states.get(source_id)
            if isinstance(upstream, QueueState):
                pool.extend(upstream.output_buffer)
            index = used.get(source_id, 0)
            if index >= len(pool):
                return None
            used[source_id] = index + 1
            selected.append((source_id, pool[index]))
        return selected

    def _take(self, process: ProcessNodeState, source_id: str, token: Token) -> None:
        own = process.input_buffers.get(source_id)
        if own and own[0] is token:
            own.popleft()
            return
        upstream = self._state.node_states[source_id]
        assert isinstance(upstream, QueueState) and upstream.output_buffer[0] is token
        upstream.output_buffer.popleft()

    def fire_processes(self, tick: int) -> None:
        for node_id in self._state.nodes_of_type(NodeType.PROCESS_NODE):
            config = self._state.configs[node_id]
            assert isinstance(config, ProcessNodeConfig)
            process = self._state.node_states[node_id]
            assert isinstance(process, ProcessNodeState)

            selected = self._select_inputs(config, process)
            if selected is None:
                continue
            self._fire(node_id, config, process, selected, tick)

    def _fire(
        self,
        node_id: str,
        config: ProcessNodeConfig,
        process: ProcessNodeState,
        selected: list[tuple[str, Token]],
        tick: int,
    ) -> None:
        if process.state_machine.current_state == S.PROCESS_IDLE:
            self._move(node_id, S.PROCESS_COLLECTING, tick, "inputs_available")

        consumed: list[Token] = []
        values_by_alias: dict[str, Any] = {}
        for process_input, (source_id, token) in zip(config.inputs, selected, strict=True):
            self._take(process, source_id, token)
            consumed.append(token)
            values_by_alias[process_input.key] = token.value
            self._log(
                node_id,
                tick,
                Action.INPUT_CONSUMED,
                f"Consumed {token.id} (value {token.value}) as {process_input.key} from {source_id}",
                tokens=[token],
                value=token.value,
            )

        self._move(node_id, S.PROCESS_CALCULATING, tick, "all_inputs_available")
        self._log(
            node_id,
            tick,
            Action.PROCESS_FIRED,
            f"Fired with inputs {values_by_alias}",
            source_token_ids=tuple(t.id for t in consumed),
        )

        context = build_context(values_by_alias)
        created: list[tuple[Token, OutputConfig]] = []
        for index, output in enumerate(config.outputs):
            result = evaluate(output.formula, context)
            if not result.ok:
                assert result.error is not None
                self._formula_failed(node_id, index, output.formula, result.error, consumed, tick)
                continue
            calculation = describe_calculation(output.formula, values_by_alias, result.value)
            token = self._state.tokens.create_token(
                node_id,
                result.value,
                timestamp=tick,
                state=S.PROCESS_CALCULATING,
                source_tokens=consumed,
                operation_type=OperationType.TRANSFORMATION,
            )
            self._log(
                node_id,
                tick,
                Action.OUTPUT_GENERATED,
                f"Output {index} ({output.name or output.destination_node_id}): {calculation}",
                tokens=[token],
                value=result.value,
                source_token_ids=token.parent_ids,
                transformation_details=TransformationDetails(
                    formula=output.formula,
                    input_mapping=dict(values_by_alias),
                    calculation=calculation,
                    result_value=result.value,
                ),
                source_token_summaries=token.creation.source_token_summaries,
            )
            created.append((token, output))

        self._move(node_id, S.PROCESS_EMITTING, tick, "calculation_complete")
        for token, output in created:
            self.route(token, output, node_id, tick)

        process.last_fired_time = tick
        if any(process.input_buffers.values()):
            self._move(node_id, S.PROCESS_COLLECTING, tick, "outputs_sent")
        else:
            self._move(node_id, S.PROCESS_IDLE, tick, "outputs_sent")

    def _formula_failed(
        self,
        node_id: str,
        index: int,
        formula: str,
        error: str,
        consumed: Sequence[Token],
        tick: int,
    ) -> None:
        message = f"Formula error in {node_id} output {index} ({formula}): {error}"
        self._state.errors.append(message)
        logger.warning("Formula evaluation failed", node_id=node_id, output_index=index, formula=formula, error=error)
        self._log(
            node_id,
            tick,
            Action.FORMULA_ERROR,
            message,
            source_token_ids=tuple(t.id for t in consumed),
            error=error,
        )
        self._bus.emit(FormulaFailed(node_id=node_id, output_index=index, error=error))

    # -- pass 3: queue aggregation -----------------------------------------

    def aggregate_queues(self, tick: int) -> None:
        for node_id in self._state.nodes_of_type(NodeType.QUEUE):
            config = self._state.configs[node_id]
            assert isinstance(config, QueueConfig)
            queue = self._state.node_states[node_id]
            assert isinstance(queue, QueueState)
            window = config.aggregation.window
            # An unset window anchor (-1) counts from tick 0
            if tick - max(queue.last_aggregation_time, 0) < window:
                continue

            if not queue.input_buffer:
                queue.last_aggregation_time = tick
                self._log(node_id, tick, Action.AGGREGATION_EMPTY, "Aggregation window elapsed with no tokens")
                continue

            method = config.aggregation.method
            batch = list(queue.input_buffer)
            self._move(node_id, S.QUEUE_PROCESSING, tick, "aggregation_window_triggered")
            outcome = aggregate(method, batch)
            for problem in outcome.problems:
                self._state.errors.append(f"Aggregation in {node_id}: {problem}")

            token = self._state.tokens.create_token(
                node_id,
                outcome.value,
                timestamp=tick,
                state=S.QUEUE_PROCESSING,
                source_tokens=batch,
                operation_type=OperationType.AGGREGATION,
            )
            queue.input_buffer.clear()
            queue.output_buffer.append(token)
            queue.last_aggregation_time = tick
            self._move(node_id, S.QUEUE_EMITTING, tick, "aggregation_complete")
            entry = self._log(
                node_id,
                tick,
                Action.aggregated(method),
                outcome.details.calculation,
                tokens=[token],
                value=outcome.value,
                source_token_ids=token.parent_ids,
                aggregation_details=outcome.details,
                source_token_summaries=token.creation.source_token_summaries,
            )
            if entry is not None:
                for consumed in batch:
                    consumed.record(entry)

    # -- pass 4: queue forwarding ------------------------------------------

    def forward_queues(self, tick: int) -> None:
        for node_id in self._state.nodes_of_type(NodeType.QUEUE):
            config = self._state.configs[node_id]
            queue = self._state.node_states[node_id]
            assert isinstance(queue, QueueState)
            settled = S.QUEUE_ACCUMULATING if queue.input_buffer else S.QUEUE_IDLE

            if not queue.output_buffer:
                if queue.state_machine.current_state == S.QUEUE_EMITTING:
                    self._move(node_id, settled, tick, "output_buffer_empty")
                continue
            if not config.outputs:
                continue

            token = queue.output_buffer.popleft()
            if queue.state_machine.current_state != S.QUEUE_EMITTING:
                self._move(node_id, S.QUEUE_EMITTING, tick, "forwarding_token")
            for output in config.outputs:
                self._log(
                    node_id,
                    tick,
                    Action.TOKEN_FORWARDED,
                    f"Forwarded {token.id} (value {token.value}) to {output.destination_node_id}",
                    tokens=[token],
                    value=token.value,
                )
                self.route(token, output, node_id, tick)
            settled = S.QUEUE_ACCUMULATING if queue.input_buffer else S.QUEUE_IDLE
            self._move(node_id, settled, tick, "forwarding_complete")

    # -- external input ----------------------------------------------------

    def inject(self, node_id: str, value: Any, tick: int, *, input_node_id: str | None = None) -> Token:
        """Create a token from outside the model and deliver it at node_id.

        DataSource: routed to the source's outputs. Queue and Sink: delivered
        to the node itself. ProcessNode: appended to the buffer for
        input_node_id (default: the first declared input).

        Raises:
            KeyError: If node_id is not in the running model
            ValueError: If input_node_id is not a declared input of a process node
        """
        config = self._state.configs[node_id]
        node_state = self._state.node_states[node_id]
        target = "external"
        if isinstance(config, ProcessNodeConfig):
            declared = [i.node_id for i in config.inputs]
            target = input_node_id if input_node_id is not None else declared[0]
            if target not in declared:
                raise ValueError(f"{target!r} is not an input of {node_id!r}; declared inputs: {declared}")

        token = self._state.tokens.create_token(
            node_id,
            value,
            timestamp=tick,
            state=node_state.state_machine.current_state,
            details=f"Injected token with value {value}",
        )
        self._log(
            node_id,
            tick,
            Action.TOKEN_INJECTED,
            f"Manual injection: {value}",
            tokens=[token],
            value=value,
            event_type="external_event",
        )

        if isinstance(node_state, DataSourceState):
            for output in config.outputs:
                self.route(token, output, node_id, tick)
        else:
            self.route(token, OutputConfig(destination_node_id=node_id), target, tick)
        return token

    def log_system(self, tick: int, action: str, details: str, **fields: Any) -> HistoryEntry | None:
        """Write an engine-level entry (model upgrades) under the system node id."""
        return self._log(SYSTEM_NODE_ID, tick, action, details, **fields)
