# tests/unit/engine/test_behaviors.py
"""Tests for the per-tick node behaviors, driven through the Scheduler.

Each test builds a small scenario, injects or emits tokens, steps, and
inspects node state and the activity log.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from tests.conftest import RecordingBus
from tests.scenarios import (
    constant_source,
    fan_out_scenario,
    pipeline_scenario,
    process,
    queue,
    scenario,
    sink,
    source,
    sum_queue_scenario,
)
from tokenflow.contracts import (
    Action,
    AggregationEntry,
    DataSourceState,
    FormulaFailed,
    NodeFSMState,
    NodeType,
    ProcessNodeState,
    QueueState,
    SinkState,
    TransformationEntry,
)
from tokenflow.engine.fsm import is_allowed
from tokenflow.engine.scheduler import Scheduler

MakeScheduler = Callable[..., Scheduler]


def _actions(scheduler: Scheduler, node_id: str) -> list[str]:
    return [entry.action for entry in scheduler.node_activity(node_id)]


def _sink(scheduler: Scheduler, node_id: str) -> SinkState:
    state = scheduler.node_states[node_id]
    assert isinstance(state, SinkState)
    return state


def _queue(scheduler: Scheduler, node_id: str) -> QueueState:
    state = scheduler.node_states[node_id]
    assert isinstance(state, QueueState)
    return state


class TestQueueAggregation:
    def test_sum_window_of_one(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario())
        for value in (3, 4, 5):
            scheduler.inject_token("q", value)

        scheduler.step(1)

        out = _sink(scheduler, "out")
        assert [t.value for t in out.consumed_tokens] == [12]
        assert len(_queue(scheduler, "q").input_buffer) == 0

        aggregated = next(e for e in scheduler.node_activity("q") if e.action == Action.AGGREGATED_SUM)
        assert isinstance(aggregated, AggregationEntry)
        assert aggregated.aggregation_details is not None
        assert aggregated.aggregation_details.calculation == "sum(3, 4, 5) = 3 + 4 + 5 = 12"
        assert aggregated.value == 12

    def test_average_of_single_token(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(method="average"))
        scheduler.inject_token("q", 7)

        scheduler.step(1)

        assert [t.value for t in _sink(scheduler, "out").consumed_tokens] == [7]
        entry = next(e for e in scheduler.node_activity("q") if e.action == Action.AGGREGATED_AVERAGE)
        assert isinstance(entry, AggregationEntry)
        assert entry.aggregation_details is not None
        assert entry.aggregation_details.calculation == "avg(7) = (7)/1 = 7/1 = 7"

    def test_aggregated_token_lineage(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario())
        inputs = [scheduler.inject_token("q", v) for v in (1, 2)]

        scheduler.step(1)

        result = _sink(scheduler, "out").consumed_tokens[0]
        assert result.parent_ids == tuple(t.id for t in inputs)
        assert result.generation_level == 1
        assert result.creation.lineage_metadata.ultimate_sources == tuple(t.id for t in inputs)
        # Inputs carry the aggregation entry in their own history
        for token in inputs:
            assert token.history[-1].action == Action.AGGREGATED_SUM

    def test_window_paces_aggregation(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=3))
        scheduler.inject_token("q", 1)

        scheduler.step(2)
        assert _sink(scheduler, "out").consumed_token_count == 0

        scheduler.step(1)
        assert _queue(scheduler, "q").last_aggregation_time == 3
        assert _sink(scheduler, "out").consumed_token_count == 1

    def test_windows_anchored_at_tick_zero(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=3))
        scheduler.inject_token("q", 1)

        fired = []
        for _ in range(9):
            scheduler.step(1)
            if _queue(scheduler, "q").last_aggregation_time == scheduler.time:
                fired.append(scheduler.time)

        assert fired == [3, 6, 9]

    def test_empty_window_logged(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario())

        scheduler.step(1)

        assert _actions(scheduler, "q") == [Action.AGGREGATION_EMPTY]
        assert _queue(scheduler, "q").last_aggregation_time == 1

    def test_capacity_drop(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=100, capacity=2))
        for value in (1, 2, 3):
            scheduler.inject_token("q", value)

        queue_state = _queue(scheduler, "q")
        assert [t.value for t in queue_state.input_buffer] == [1, 2]
        assert _actions(scheduler, "q").count(Action.DROPPED_AT_QUEUE_INPUT_FULL) == 1
        assert queue_state.state_machine.current_state == NodeFSMState.QUEUE_IDLE

    def test_full_queue_aggregates_through_table_transitions(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=3, capacity=2))
        for value in (1, 2, 3):
            scheduler.inject_token("q", value)

        scheduler.step(3)

        machine = _queue(scheduler, "q").state_machine
        moves = [(t.from_state, t.to_state) for t in machine.transition_history]
        assert (NodeFSMState.QUEUE_IDLE, NodeFSMState.QUEUE_PROCESSING) in moves
        assert all(is_allowed(NodeType.QUEUE, a, b) for a, b in moves)
        assert [t.value for t in _sink(scheduler, "out").consumed_tokens] == [3]

    def test_arrival_moves_queue_to_accumulating(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=100))
        scheduler.inject_token("q", 1)

        assert _queue(scheduler, "q").state_machine.current_state == NodeFSMState.QUEUE_ACCUMULATING

    def test_forwarding_broadcasts_one_token_per_tick(self, make_scheduler: MakeScheduler) -> None:
        data = scenario(queue("q", "s1", "s2", method="first"), sink("s1"), sink("s2"))
        scheduler = make_scheduler(data)
        scheduler.inject_token("q", 9)

        scheduler.step(1)

        s1 = _sink(scheduler, "s1").consumed_tokens
        s2 = _sink(scheduler, "s2").consumed_tokens
        assert [t.value for t in s1] == [9]
        assert s1[0] is s2[0]
        assert _actions(scheduler, "q").count(Action.TOKEN_FORWARDED) == 2

    def test_average_overflow_degrades_without_aborting_tick(self, make_scheduler: MakeScheduler) -> None:
        data = scenario(
            constant_source("src", 10, "p"),
            process("p", inputs=[("src", "A")], outputs=[("q", "A.value ** 400")]),
            queue("q", "out", method="average"),
            sink("out"),
        )
        scheduler = make_scheduler(data)

        scheduler.step(2)

        assert scheduler.time == 2
        assert [t.value for t in _sink(scheduler, "out").consumed_tokens] == [0]
        assert any(e.startswith("Aggregation in q: average overflowed") for e in scheduler.errors)


class TestSources:
    def test_source_emits_immediately_then_every_interval(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(scenario(source("src", "out", interval=3), sink("out")))

        scheduler.step(7)

        emitted_at = [e.timestamp for e in scheduler.node_activity("src") if e.action == Action.EMIT_TOKEN]
        assert emitted_at == [1, 4, 7]
        state = scheduler.node_states["src"]
        assert isinstance(state, DataSourceState)
        assert state.state_machine.current_state == NodeFSMState.SOURCE_WAITING

    def test_values_within_range(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(scenario(source("src", "out", value_min=5, value_max=8), sink("out")))

        scheduler.step(30)

        values = [t.value for t in _sink(scheduler, "out").consumed_tokens]
        assert len(values) == 30
        assert all(5 <= v <= 8 for v in values)

    def test_sink_retention_is_bounded(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(scenario(source("src", "out"), sink("out")), max_sink_tokens=5)

        scheduler.step(12)

        out = _sink(scheduler, "out")
        assert out.consumed_token_count == 12
        assert len(out.consumed_tokens) == 5
        assert out.last_consumed_time == 12


class TestProcessNodes:
    def test_fan_out_formulas(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(fan_out_scenario())

        scheduler.step(1)

        s1 = _sink(scheduler, "s1").consumed_tokens
        s2 = _sink(scheduler, "s2").consumed_tokens
        assert [t.value for t in s1] == [7]
        assert [t.value for t in s2] == [6]

        emitted = {e.node_id: e.source_token_ids[0] for e in scheduler.global_activity if e.action == Action.EMIT_TOKEN}
        assert set(s1[0].parent_ids) == {emitted["a"], emitted["b"]}
        assert set(s2[0].parent_ids) == {emitted["a"], emitted["b"]}

        generated = [e for e in scheduler.node_activity("p") if e.action == Action.OUTPUT_GENERATED]
        assert isinstance(generated[0], TransformationEntry)
        assert generated[0].transformation_details is not None
        assert generated[0].transformation_details.calculation == "A.value + B.value = 3 + 4 = 7"
        assert generated[0].transformation_details.input_mapping == {"A": 3, "B": 4}

    def test_firing_order_in_log(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(fan_out_scenario())

        scheduler.step(1)

        actions = _actions(scheduler, "p")
        fired = actions.index(Action.PROCESS_FIRED)
        assert actions[:fired].count(Action.INPUT_CONSUMED) == 2
        assert actions[fired + 1 :].count(Action.OUTPUT_GENERATED) == 2

    def test_all_or_nothing_consumption(self, make_scheduler: MakeScheduler) -> None:
        data = scenario(
            source("a", "p", interval=1),
            queue("qb", "p", window=1000),
            process("p", inputs=[("a", "A"), ("qb", "B")], outputs=[("out", "A.value + B.value")]),
            sink("out"),
        )
        scheduler = make_scheduler(data)

        scheduler.step(3)

        p = scheduler.node_states["p"]
        assert isinstance(p, ProcessNodeState)
        assert len(p.input_buffers["a"]) == 3
        assert Action.PROCESS_FIRED not in _actions(scheduler, "p")
        assert p.state_machine.current_state == NodeFSMState.PROCESS_COLLECTING

    def test_process_buffers_are_fifo(self, make_scheduler: MakeScheduler) -> None:
        data = scenario(
            constant_source("a", 100, "p"),
            process("p", inputs=[("a", "A")], outputs=[("out", "A.value")]),
            sink("out"),
        )
        scheduler = make_scheduler(data)
        for value in (1, 2, 3):
            scheduler.inject_token("p", value)

        scheduler.step(4)

        assert [t.value for t in _sink(scheduler, "out").consumed_tokens] == [1, 2, 3, 100]

    def test_queue_output_feeds_process(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(pipeline_scenario(window=1))

        scheduler.step(5)

        out = _sink(scheduler, "out")
        assert out.consumed_token_count > 0
        for token in out.consumed_tokens:
            (parent_id,) = token.parent_ids
            assert scheduler.derive_lineage(parent_id).token.origin_node_id == "q"
            assert token.generation_level == 2

    def test_formula_error_degrades_locally(self, make_scheduler: MakeScheduler, event_bus: RecordingBus) -> None:
        data = scenario(
            constant_source("a", 3, "p"),
            process("p", inputs=[("a", "A")], outputs=[("s1", "A.value / 0"), ("s2", "A.value + 1")]),
            sink("s1"),
            sink("s2"),
        )
        scheduler = make_scheduler(data)

        scheduler.step(2)

        assert _sink(scheduler, "s1").consumed_token_count == 0
        assert [t.value for t in _sink(scheduler, "s2").consumed_tokens] == [4]
        assert len(scheduler.errors) == 1
        assert scheduler.errors[0].startswith("Formula error in p output 0 (A.value / 0)")

        failure = next(e for e in scheduler.node_activity("p") if e.action == Action.FORMULA_ERROR)
        assert isinstance(failure, TransformationEntry)
        assert failure.error == "division by zero in Div operation"

        (event,) = event_bus.of_type(FormulaFailed)
        assert event.node_id == "p"
        assert event.output_index == 0
        assert scheduler.time == 2

    def test_complex_result_is_a_formula_error(self, make_scheduler: MakeScheduler) -> None:
        data = scenario(
            constant_source("a", 3, "p"),
            process("p", inputs=[("a", "A")], outputs=[("out", "(A.value - 11) ** 0.5")]),
            sink("out"),
        )
        scheduler = make_scheduler(data)

        scheduler.step(1)

        assert _sink(scheduler, "out").consumed_token_count == 0
        assert len(scheduler.errors) == 1
        assert "not a real number" in scheduler.errors[0]
        assert Action.FORMULA_ERROR in _actions(scheduler, "p")


class TestInjection:
    def test_injection_logged_as_external_event(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=100))

        token = scheduler.inject_token("q", 11)

        injected = next(e for e in scheduler.node_activity("q") if e.action == Action.TOKEN_INJECTED)
        assert injected.action == "token_injected"
        assert injected.event_type == "external_event"
        assert injected.value == 11
        assert token.creation.details == "Injected token with value 11"
        assert token.generation_level == 0

    def test_injection_into_sink(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario())
        scheduler.inject_token("out", 5)
        assert _sink(scheduler, "out").consumed_token_count == 1

    def test_injection_into_source_routes_to_outputs(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(scenario(source("src", "q"), queue("q", "out", window=100), sink("out")))
        scheduler.inject_token("src", 42)
        assert [t.value for t in _queue(scheduler, "q").input_buffer] == [42]

    def test_injection_into_named_process_input(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(fan_out_scenario())
        scheduler.inject_token("p", 10, input_node_id="b")

        p = scheduler.node_states["p"]
        assert isinstance(p, ProcessNodeState)
        assert [t.value for t in p.input_buffers["b"]] == [10]
        assert len(p.input_buffers["a"]) == 0

    def test_injection_into_undeclared_input_rejected(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(fan_out_scenario())
        with pytest.raises(ValueError, match="is not an input of 'p'"):
            scheduler.inject_token("p", 10, input_node_id="s1")

    def test_injection_uses_current_time(self, make_scheduler: MakeScheduler) -> None:
        scheduler = make_scheduler(sum_queue_scenario(window=100))
        scheduler.step(4)

        token = scheduler.inject_token("q", 1)

        assert token.created_at == 4
