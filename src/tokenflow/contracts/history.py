"""Activity-log entries and their structured breakdowns.

These types answer: "What happened to a token, where, and why?"

A history entry is a tagged variant per operation type. Each variant only
carries the fields relevant to it:

- CreationEntry: first entry of every token, carries lineage metadata
- AggregationEntry: queue window results (and empty-window markers)
- TransformationEntry: process node outputs and formula failures
- ConsumptionEntry: a token leaving a buffer for good
- TransferEntry: emission, arrival, forwarding, drops, injections

All entries are frozen. Sequences are stored as tuples.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar

from tokenflow.contracts.enums import AggregationMethod, OperationType


@dataclass(frozen=True)
class SourceTokenSummary:
    """Summary of a consumed input token, captured at the moment of consumption."""

    id: str
    origin_node_id: str
    original_value: Any
    created_at: int
    complete_lineage: tuple[str, ...] = ()
    generation_level: int = 0
    ultimate_sources: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceTokenSummary:
        return cls(
            id=data["id"],
            origin_node_id=data["origin_node_id"],
            original_value=data["original_value"],
            created_at=data["created_at"],
            complete_lineage=tuple(data["complete_lineage"]),
            generation_level=data["generation_level"],
            ultimate_sources=tuple(data["ultimate_sources"]),
        )


@dataclass(frozen=True)
class LineageMetadata:
    """Lineage classification recorded when a token is created.

    Invariants:
    - generation_level is 0 iff parent_ids is empty
    - ultimate_sources is never empty (a root token is its own source)
    """

    generation_level: int
    ultimate_sources: tuple[str, ...]
    operation_type: OperationType
    parent_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if (self.generation_level == 0) != (not self.parent_ids):
            raise ValueError(f"generation_level={self.generation_level} is inconsistent with parent_ids={self.parent_ids}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineageMetadata:
        return cls(
            generation_level=data["generation_level"],
            ultimate_sources=tuple(data["ultimate_sources"]),
            operation_type=OperationType(data["operation_type"]),
            parent_ids=tuple(data["parent_ids"]),
        )


@dataclass(frozen=True)
class InputContribution:
    """One input's share of an aggregate result."""

    token_id: str
    value: Any
    contribution: float


@dataclass(frozen=True)
class AggregationDetails:
    """Breakdown of a queue aggregation: method, inputs, and a readable calculation."""

    method: AggregationMethod
    input_tokens: tuple[InputContribution, ...]
    calculation: str
    result_value: Any

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AggregationDetails:
        return cls(
            method=AggregationMethod(data["method"]),
            input_tokens=tuple(InputContribution(**item) for item in data["input_tokens"]),
            calculation=data["calculation"],
            result_value=data["result_value"],
        )


@dataclass(frozen=True)
class TransformationDetails:
    """Breakdown of one process-node output: formula, input values, and result."""

    formula: str
    input_mapping: dict[str, Any]
    calculation: str
    result_value: Any

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransformationDetails:
        return cls(
            formula=data["formula"],
            input_mapping=dict(data["input_mapping"]),
            calculation=data["calculation"],
            result_value=data["result_value"],
        )


@dataclass(frozen=True, kw_only=True)
class _EntryBase:
    """Fields shared by every activity-log entry.

    ``state`` is the node's FSM state at the moment the entry was written;
    buffer sizes are likewise captured at write time.
    """

    operation_type: ClassVar[OperationType]

    timestamp: int
    epoch_timestamp: int
    sequence: int
    node_id: str
    action: str
    details: str
    state: str
    buffer_size: int = 0
    output_buffer_size: int = 0
    value: Any = None
    source_token_ids: tuple[str, ...] = ()
    event_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["operation_type"] = self.operation_type.value
        return data


@dataclass(frozen=True, kw_only=True)
class CreationEntry(_EntryBase):
    """First entry of every token."""

    operation_type: ClassVar[OperationType] = OperationType.CREATION

    lineage_metadata: LineageMetadata
    source_token_summaries: tuple[SourceTokenSummary, ...] = ()


@dataclass(frozen=True, kw_only=True)
class AggregationEntry(_EntryBase):
    """Queue aggregation result, or an empty-window marker (no details)."""

    operation_type: ClassVar[OperationType] = OperationType.AGGREGATION

    aggregation_details: AggregationDetails | None = None
    source_token_summaries: tuple[SourceTokenSummary, ...] = ()


@dataclass(frozen=True, kw_only=True)
class TransformationEntry(_EntryBase):
    """Process-node output, or a formula failure for one output slot."""

    operation_type: ClassVar[OperationType] = OperationType.TRANSFORMATION

    transformation_details: TransformationDetails | None = None
    error: str | None = None
    source_token_summaries: tuple[SourceTokenSummary, ...] = ()


@dataclass(frozen=True, kw_only=True)
class ConsumptionEntry(_EntryBase):
    """A token consumed by a process node or a sink."""

    operation_type: ClassVar[OperationType] = OperationType.CONSUMPTION


@dataclass(frozen=True, kw_only=True)
class TransferEntry(_EntryBase):
    """Token movement and system markers (emit, arrive, forward, drop, inject)."""

    operation_type: ClassVar[OperationType] = OperationType.TRANSFER


HistoryEntry = CreationEntry | AggregationEntry | TransformationEntry | ConsumptionEntry | TransferEntry

ENTRY_TYPES: dict[OperationType, type[HistoryEntry]] = {
    OperationType.CREATION: CreationEntry,
    OperationType.AGGREGATION: AggregationEntry,
    OperationType.TRANSFORMATION: TransformationEntry,
    OperationType.CONSUMPTION: ConsumptionEntry,
    OperationType.TRANSFER: TransferEntry,
}

_BASE_FIELDS = (
    "timestamp",
    "epoch_timestamp",
    "sequence",
    "node_id",
    "action",
    "details",
    "state",
    "buffer_size",
    "output_buffer_size",
    "value",
    "event_type",
)


def history_entry_from_dict(data: dict[str, Any]) -> HistoryEntry:
    """Rebuild a history entry from its ``to_dict()`` form.

    Raises:
        KeyError: If a required field is missing
        ValueError: If operation_type is unknown
    """
    operation_type = OperationType(data["operation_type"])
    kwargs: dict[str, Any] = {name: data[name] for name in _BASE_FIELDS}
    kwargs["source_token_ids"] = tuple(data["source_token_ids"])

    if operation_type in (OperationType.CREATION, OperationType.AGGREGATION, OperationType.TRANSFORMATION):
        kwargs["source_token_summaries"] = tuple(SourceTokenSummary.from_dict(s) for s in data["source_token_summaries"])

    if operation_type == OperationType.CREATION:
        return CreationEntry(lineage_metadata=LineageMetadata.from_dict(data["lineage_metadata"]), **kwargs)
    if operation_type == OperationType.AGGREGATION:
        details = data["aggregation_details"]
        return AggregationEntry(
            aggregation_details=AggregationDetails.from_dict(details) if details is not None else None,
            **kwargs,
        )
    if operation_type == OperationType.TRANSFORMATION:
        details = data["transformation_details"]
        return TransformationEntry(
            transformation_details=TransformationDetails.from_dict(details) if details is not None else None,
            error=data["error"],
            **kwargs,
        )
    if operation_type == OperationType.CONSUMPTION:
        return ConsumptionEntry(**kwargs)
    return TransferEntry(**kwargs)

