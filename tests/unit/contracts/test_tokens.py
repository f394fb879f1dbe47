# tests/unit/contracts/test_tokens.py
"""Tests for Token, history entries and their dict round trip."""

from __future__ import annotations

import pytest

from tokenflow.contracts import (
    Action,
    AggregationDetails,
    AggregationEntry,
    AggregationMethod,
    ConsumptionEntry,
    CreationEntry,
    InputContribution,
    LineageMetadata,
    OperationType,
    SourceTokenSummary,
    Token,
    TransferEntry,
    TransformationDetails,
    TransformationEntry,
    history_entry_from_dict,
)


def _creation(token_id: str = "tk-1", timestamp: int = 2, parents: tuple[str, ...] = ()) -> CreationEntry:
    return CreationEntry(
        timestamp=timestamp,
        epoch_timestamp=1_700_000_000_000,
        sequence=1,
        node_id="src",
        action=Action.CREATED,
        details=f"Created {token_id}",
        state="source_generating",
        value=7,
        source_token_ids=parents,
        lineage_metadata=LineageMetadata(
            generation_level=1 if parents else 0,
            ultimate_sources=parents or (token_id,),
            operation_type=OperationType.AGGREGATION if parents else OperationType.CREATION,
            parent_ids=parents,
        ),
    )


class TestLineageMetadata:
    def test_root_has_generation_zero(self) -> None:
        meta = LineageMetadata(generation_level=0, ultimate_sources=("tk-1",), operation_type=OperationType.CREATION)
        assert meta.parent_ids == ()

    def test_generation_zero_with_parents_rejected(self) -> None:
        with pytest.raises(ValueError, match="inconsistent"):
            LineageMetadata(
                generation_level=0,
                ultimate_sources=("tk-1",),
                operation_type=OperationType.AGGREGATION,
                parent_ids=("tk-1",),
            )

    def test_positive_generation_without_parents_rejected(self) -> None:
        with pytest.raises(ValueError, match="inconsistent"):
            LineageMetadata(generation_level=2, ultimate_sources=("tk-1",), operation_type=OperationType.CREATION)


class TestToken:
    def test_creation_and_lineage_accessors(self) -> None:
        token = Token(id="tk-3", value=7, created_at=2, origin_node_id="q")
        token.record(_creation("tk-3", parents=("tk-1", "tk-2")))

        assert token.creation.action == Action.CREATED
        assert token.parent_ids == ("tk-1", "tk-2")
        assert token.generation_level == 1

    def test_record_rejects_entry_before_creation(self) -> None:
        token = Token(id="tk-1", value=7, created_at=5, origin_node_id="src")
        with pytest.raises(ValueError, match="predates"):
            token.record(_creation(timestamp=4))

    def test_creation_requires_created_entry_first(self) -> None:
        token = Token(id="tk-1", value=7, created_at=0, origin_node_id="q")
        token.record(
            TransferEntry(
                timestamp=0,
                epoch_timestamp=0,
                sequence=1,
                node_id="q",
                action=Action.TOKEN_ARRIVED,
                details="arrived",
                state="queue_idle",
            )
        )
        with pytest.raises(TypeError, match="does not start with a creation entry"):
            _ = token.creation

    def test_history_does_not_affect_equality(self) -> None:
        a = Token(id="tk-1", value=7, created_at=0, origin_node_id="src")
        b = Token(id="tk-1", value=7, created_at=0, origin_node_id="src")
        a.record(_creation(timestamp=0))
        assert a == b

    def test_dict_round_trip_preserves_history(self) -> None:
        token = Token(id="tk-1", value=7, created_at=2, origin_node_id="src")
        token.record(_creation())
        restored = Token.from_dict(token.to_dict())

        assert restored == token
        assert restored.history == token.history
        assert isinstance(restored.history[0], CreationEntry)


class TestHistoryEntryFromDict:
    """Every entry variant survives to_dict()/history_entry_from_dict()."""

    def _base(self, action: str) -> dict[str, object]:
        return {
            "timestamp": 4,
            "epoch_timestamp": 1,
            "sequence": 9,
            "node_id": "n",
            "action": action,
            "details": "d",
            "state": "s",
            "value": 12,
            "source_token_ids": ("tk-1", "tk-2"),
        }

    def test_aggregation_entry(self) -> None:
        summary = SourceTokenSummary(id="tk-1", origin_node_id="src", original_value=5, created_at=1)
        entry = AggregationEntry(
            **self._base(Action.AGGREGATED_SUM),  # type: ignore[arg-type]
            aggregation_details=AggregationDetails(
                method=AggregationMethod.SUM,
                input_tokens=(InputContribution("tk-1", 5, 5 / 12), InputContribution("tk-2", 7, 7 / 12)),
                calculation="sum(5, 7) = 5 + 7 = 12",
                result_value=12,
            ),
            source_token_summaries=(summary,),
        )
        restored = history_entry_from_dict(entry.to_dict())
        assert restored == entry
        assert restored.to_dict()["operation_type"] == "aggregation"

    def test_empty_aggregation_marker(self) -> None:
        entry = AggregationEntry(**self._base(Action.AGGREGATION_EMPTY))  # type: ignore[arg-type]
        assert history_entry_from_dict(entry.to_dict()) == entry

    def test_transformation_entry_with_error(self) -> None:
        entry = TransformationEntry(
            **self._base(Action.FORMULA_ERROR),  # type: ignore[arg-type]
            error="division by zero in Div operation",
        )
        restored = history_entry_from_dict(entry.to_dict())
        assert isinstance(restored, TransformationEntry)
        assert restored.error == "division by zero in Div operation"
        assert restored.transformation_details is None

    def test_transformation_entry_with_details(self) -> None:
        entry = TransformationEntry(
            **self._base(Action.OUTPUT_GENERATED),  # type: ignore[arg-type]
            transformation_details=TransformationDetails(
                formula="A.value + B.value",
                input_mapping={"A": 3, "B": 4},
                calculation="A.value + B.value = 3 + 4 = 7",
                result_value=7,
            ),
        )
        assert history_entry_from_dict(entry.to_dict()) == entry

    def test_consumption_entry(self) -> None:
        entry = ConsumptionEntry(**self._base(Action.TOKEN_CONSUMED))  # type: ignore[arg-type]
        restored = history_entry_from_dict(entry.to_dict())
        assert isinstance(restored, ConsumptionEntry)
        assert restored == entry

    def test_unknown_operation_type_rejected(self) -> None:
        data = ConsumptionEntry(**self._base(Action.TOKEN_CONSUMED)).to_dict()  # type: ignore[arg-type]
        data["operation_type"] = "teleportation"
        with pytest.raises(ValueError):
            history_entry_from_dict(data)
