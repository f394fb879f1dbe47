# src/tokenflow/engine/__init__.py
"""Simulation engine: ticking, token flow, lineage, and replay.

This module provides the execution engine for Tokenflow scenarios:
- Scheduler: Tick loop, play/pause/step, injections, model upgrades
- NodeBehaviors: The four per-tick passes over sources, processes and queues
- TokenManager / LineageIndex: Token identity and ancestry
- FormulaParser: Safe evaluation of process-node output formulas
- EventRecorder / ReplayEngine: Recording, replay and A/B comparison

Example:
    from tokenflow.core.config import load_settings
    from tokenflow.core.scenario import read_scenario_data
    from tokenflow.engine import EventRecorder, ReplayEngine, Scheduler

    scheduler = Scheduler(load_settings())
    scheduler.load_scenario(read_scenario_data(Path("scenario.yaml")))

    recorder = EventRecorder("baseline")
    recorder.start(scheduler)
    scheduler.step(100)
    record = recorder.stop()

    result = ReplayEngine().replay(record)
"""

from tokenflow.engine.activity import ActivityLog, ErrorChannel
from tokenflow.engine.aggregation import AggregateOutcome, aggregate
from tokenflow.engine.behaviors import SYSTEM_NODE_ID, NodeBehaviors
from tokenflow.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from tokenflow.engine.formula import (
    FormulaError,
    FormulaEvaluationError,
    FormulaParser,
    FormulaResult,
    FormulaSecurityError,
    FormulaSyntaxError,
)
from tokenflow.engine.lineage import LineageIndex, LineageRecord, LineageResult, TokenManager
from tokenflow.engine.replay import (
    ComparisonResult,
    EventRecorder,
    ReplayEngine,
    ReplayError,
    ReplayResult,
    ScenarioRecord,
    ScenarioStore,
    Snapshot,
    StateDifference,
    ValidationReport,
    validate_event_sequence,
    verify_model_hash,
)
from tokenflow.engine.scheduler import NoScenarioLoadedError, Scheduler, SchedulerBusyError
from tokenflow.engine.state import EngineState

__all__ = [
    "DEFAULT_CLOCK",
    "SYSTEM_NODE_ID",
    "ActivityLog",
    "AggregateOutcome",
    "Clock",
    "ComparisonResult",
    "EngineState",
    "ErrorChannel",
    "EventRecorder",
    "FormulaError",
    "FormulaEvaluationError",
    "FormulaParser",
    "FormulaResult",
    "FormulaSecurityError",
    "FormulaSyntaxError",
    "LineageIndex",
    "LineageRecord",
    "LineageResult",
    "MockClock",
    "NoScenarioLoadedError",
    "NodeBehaviors",
    "ReplayEngine",
    "ReplayError",
    "ReplayResult",
    "ScenarioRecord",
    "ScenarioStore",
    "Scheduler",
    "SchedulerBusyError",
    "Snapshot",
    "StateDifference",
    "SystemClock",
    "TokenManager",
    "ValidationReport",
    "aggregate",
    "validate_event_sequence",
    "verify_model_hash",
]
