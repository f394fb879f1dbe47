# tests/unit/contracts/test_enums.py
"""Tests for action classification and enum string values."""

import pytest

from tokenflow.contracts import Action, AggregationMethod, NodeType, OperationType, operation_type_for


class TestOperationTypeFor:
    @pytest.mark.parametrize(
        ("action", "expected"),
        [
            (Action.CREATED, OperationType.CREATION),
            (Action.AGGREGATED_SUM, OperationType.AGGREGATION),
            (Action.AGGREGATED_LAST, OperationType.AGGREGATION),
            (Action.AGGREGATION_EMPTY, OperationType.AGGREGATION),
            (Action.OUTPUT_GENERATED, OperationType.TRANSFORMATION),
            (Action.FORMULA_ERROR, OperationType.TRANSFORMATION),
            (Action.TOKEN_CONSUMED, OperationType.CONSUMPTION),
            (Action.INPUT_CONSUMED, OperationType.CONSUMPTION),
            (Action.EMIT_TOKEN, OperationType.TRANSFER),
            (Action.TOKEN_ARRIVED, OperationType.TRANSFER),
            (Action.TOKEN_FORWARDED, OperationType.TRANSFER),
            (Action.DROPPED_AT_QUEUE_INPUT_FULL, OperationType.TRANSFER),
            (Action.TOKEN_INJECTED, OperationType.TRANSFER),
        ],
    )
    def test_classification(self, action: Action, expected: OperationType) -> None:
        assert operation_type_for(action) == expected

    def test_unknown_action_is_transfer(self) -> None:
        assert operation_type_for("SOMETHING_ELSE") == OperationType.TRANSFER


class TestAction:
    @pytest.mark.parametrize("method", list(AggregationMethod))
    def test_aggregated_builds_member(self, method: AggregationMethod) -> None:
        action = Action.aggregated(method)
        assert action.value == f"AGGREGATED_{method.value.upper()}"

    def test_injection_tag_is_lowercase(self) -> None:
        """Injected tokens are tagged with the external-event spelling."""
        assert Action.TOKEN_INJECTED == "token_injected"


def test_node_type_values_match_scenario_discriminator() -> None:
    assert [t.value for t in NodeType] == ["DataSource", "Queue", "ProcessNode", "Sink"]
