"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Scenario and settings models are NOT re-exported here - import them from
tokenflow.core.scenario and tokenflow.core.config.

Import patterns:
    # Contracts (lightweight, no heavy dependencies)
    from tokenflow.contracts import Token, NodeType, CoreEvent

    # Models (from core, pulls in pydantic/networkx)
    from tokenflow.core.scenario import ScenarioConfig
"""

from tokenflow.contracts.enums import (
    Action,
    AggregationMethod,
    ControlAction,
    CoreEventType,
    DifferenceSignificance,
    NodeFSMState,
    NodeType,
    OperationType,
    SimulationStatus,
    SnapshotType,
    operation_type_for,
)
from tokenflow.contracts.events import (
    CoreEvent,
    FormulaFailed,
    ModelUpgraded,
    SimulationStatusChanged,
    TickCompleted,
)
from tokenflow.contracts.history import (
    AggregationDetails,
    AggregationEntry,
    ConsumptionEntry,
    CreationEntry,
    HistoryEntry,
    InputContribution,
    LineageMetadata,
    SourceTokenSummary,
    TransferEntry,
    TransformationDetails,
    TransformationEntry,
    history_entry_from_dict,
)
from tokenflow.contracts.state import (
    DataSourceState,
    NodeState,
    ProcessNodeState,
    QueueState,
    SinkState,
    StateMachineInfo,
    StateTransition,
)
from tokenflow.contracts.tokens import Token

__all__ = [
    # enums
    "Action",
    "AggregationMethod",
    "ControlAction",
    "CoreEventType",
    "DifferenceSignificance",
    "NodeFSMState",
    "NodeType",
    "OperationType",
    "SimulationStatus",
    "SnapshotType",
    "operation_type_for",
    # events
    "CoreEvent",
    "FormulaFailed",
    "ModelUpgraded",
    "SimulationStatusChanged",
    "TickCompleted",
    # history
    "AggregationDetails",
    "AggregationEntry",
    "ConsumptionEntry",
    "CreationEntry",
    "HistoryEntry",
    "InputContribution",
    "LineageMetadata",
    "SourceTokenSummary",
    "TransferEntry",
    "TransformationDetails",
    "TransformationEntry",
    "history_entry_from_dict",
    # state
    "DataSourceState",
    "NodeState",
    "ProcessNodeState",
    "QueueState",
    "SinkState",
    "StateMachineInfo",
    "StateTransition",
    # tokens
    "Token",
]
