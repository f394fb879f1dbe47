# src/tokenflow/core/__init__.py
"""Core infrastructure: Canonical hashing, Configuration, Scenario schema, Graph, Events, Logging."""

from tokenflow.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    stable_hash,
)
from tokenflow.core.config import (
    LimitSettings,
    LoggingSettings,
    PlaybackSettings,
    ReplaySettings,
    TokenflowSettings,
    load_settings,
    resolve_config,
)
from tokenflow.core.events import (
    EventBus,
    EventBusProtocol,
    NullEventBus,
)
from tokenflow.core.graph import GraphReport, ScenarioGraph
from tokenflow.core.logging import (
    configure_logging,
    get_logger,
)
from tokenflow.core.scenario import (
    DataSourceConfig,
    ProcessNodeConfig,
    QueueConfig,
    ScenarioConfig,
    ScenarioValidationError,
    SinkConfig,
    load_scenario_file,
    scenario_hash,
    validate_scenario,
)
from tokenflow.core.serialization import (
    SnapshotFormatError,
    snapshot_dumps,
    snapshot_loads,
)

__all__ = [
    "CANONICAL_VERSION",
    "DataSourceConfig",
    "EventBus",
    "EventBusProtocol",
    "GraphReport",
    "LimitSettings",
    "LoggingSettings",
    "NullEventBus",
    "PlaybackSettings",
    "ProcessNodeConfig",
    "QueueConfig",
    "ReplaySettings",
    "ScenarioConfig",
    "ScenarioGraph",
    "ScenarioValidationError",
    "SinkConfig",
    "SnapshotFormatError",
    "TokenflowSettings",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_scenario_file",
    "load_settings",
    "resolve_config",
    "scenario_hash",
    "snapshot_dumps",
    "snapshot_loads",
    "stable_hash",
]
