# src/tokenflow/core/scenario.py
"""Scenario definition schema and loading.

A scenario is the simulated model: an ordered list of typed node configs
wired together by their declared outputs. Models are frozen pydantic
objects; a running simulation only ever replaces the whole model (model
upgrade, undo/redo), never mutates it.

Two entry points:
- validate_scenario(data): lenient, returns (model, errors) for callers
  that surface an error list (the scheduler's load_scenario)
- load_scenario_file(path): strict, raises ScenarioValidationError
"""

from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tokenflow.contracts.enums import AggregationMethod
from tokenflow.core.canonical import stable_hash

SCENARIO_SCHEMA_VERSION = "3.0"


class ScenarioValidationError(Exception):
    """Raised by the strict loader when a scenario has configuration errors."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Scenario validation failed:\n" + "\n".join(f"  - {e}" for e in errors))


class OutputConfig(BaseModel):
    """A declared edge from a node to a destination input."""

    model_config = {"frozen": True, "extra": "forbid"}

    destination_node_id: str = Field(min_length=1, description="Node receiving the token")
    destination_input_name: str = Field(default="", description="Named input on the destination")
    name: str | None = Field(default=None, description="Optional output label")


class ProcessOutputConfig(OutputConfig):
    """A process-node output: a destination plus the formula producing its value."""

    formula: str = Field(description="Expression over input aliases, e.g. 'A.value + B.value'")

    @field_validator("formula")
    @classmethod
    def validate_formula(cls, v: str) -> str:
        """Validate the formula at load time; unknown aliases surface at evaluation."""
        from tokenflow.engine.formula import FormulaParser, FormulaSecurityError, FormulaSyntaxError

        try:
            FormulaParser(v)
        except FormulaSyntaxError as e:
            raise ValueError(f"Invalid formula syntax: {e}") from e
        except FormulaSecurityError as e:
            raise ValueError(f"Forbidden construct in formula: {e}") from e
        return v


class ProcessInputConfig(BaseModel):
    """A named process-node input bound to an upstream node."""

    model_config = {"frozen": True, "extra": "forbid"}

    node_id: str = Field(min_length=1, description="Upstream node feeding this input")
    name: str = Field(min_length=1, description="Input name")
    alias: str | None = Field(default=None, description="Identifier used in formulas (defaults to name)")

    @field_validator("alias")
    @classmethod
    def validate_alias(cls, v: str | None) -> str | None:
        if v is not None and not v.isidentifier():
            raise ValueError(f"Alias must be a valid identifier, got {v!r}")
        return v

    @property
    def key(self) -> str:
        """Name under which this input's value appears in formula contexts."""
        return self.alias if self.alias is not None else self.name


class AggregationConfig(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    method: AggregationMethod = Field(description="Reduction applied to each window")
    window: int = Field(gt=0, description="Ticks between aggregations")


class _NodeBase(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    node_id: str = Field(min_length=1, description="Unique node key")
    display_name: str = Field(default="", description="Human-readable name")
    tags: tuple[str, ...] = Field(default=(), description="Free-form classification tags")


class DataSourceConfig(_NodeBase):
    """Emits one random integer token every ``interval`` ticks."""

    type: Literal["DataSource"] = "DataSource"
    interval: int = Field(gt=0, description="Ticks between emissions")
    value_min: int = Field(description="Lower bound of generated values (inclusive)")
    value_max: int = Field(description="Upper bound of generated values (inclusive)")
    outputs: tuple[OutputConfig, ...] = ()

    @model_validator(mode="after")
    def validate_range(self) -> DataSourceConfig:
        if self.value_max < self.value_min:
            raise ValueError(f"value_max ({self.value_max}) must be >= value_min ({self.value_min})")
        return self


class QueueConfig(_NodeBase):
    """Buffers arrivals and aggregates them once per window."""

    type: Literal["Queue"] = "Queue"
    capacity: int | None = Field(default=None, gt=0, description="Input buffer bound (None for unbounded)")
    aggregation: AggregationConfig
    outputs: tuple[OutputConfig, ...] = ()


class ProcessNodeConfig(_NodeBase):
    """Fires when every input has a token, computing one token per output."""

    type: Literal["ProcessNode"] = "ProcessNode"
    inputs: tuple[ProcessInputConfig, ...] = Field(min_length=1)
    outputs: tuple[ProcessOutputConfig, ...] = ()

    @model_validator(mode="after")
    def validate_unique_aliases(self) -> ProcessNodeConfig:
        duplicates = sorted(k for k, n in Counter(i.key for i in self.inputs).items() if n > 1)
        if duplicates:
            raise ValueError(f"Duplicate input aliases: {duplicates}")
        return self


class SinkConfig(_NodeBase):
    """Terminal node. Consumes everything it receives."""

    type: Literal["Sink"] = "Sink"
    outputs: tuple[OutputConfig, ...] = ()

    @field_validator("outputs")
    @classmethod
    def validate_no_outputs(cls, v: tuple[OutputConfig, ...]) -> tuple[OutputConfig, ...]:
        if v:
            raise ValueError("Sink nodes cannot declare outputs")
        return v


NodeConfig = Annotated[
    DataSourceConfig | QueueConfig | ProcessNodeConfig | SinkConfig,
    Field(discriminator="type"),
]


class GroupConfig(BaseModel):
    """Presentation metadata grouping nodes. Ignored by the engine."""

    model_config = {"frozen": True, "extra": "forbid"}

    id: str
    name: str = ""
    node_ids: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


class ScenarioConfig(BaseModel):
    """The full model graph.

    Example YAML:
        version: "3.0"
        name: sum-pipeline
        nodes:
          - type: DataSource
            node_id: src
            interval: 1
            value_min: 1
            value_max: 10
            outputs:
              - destination_node_id: q
          - type: Queue
            node_id: q
            aggregation: {method: sum, window: 3}
            outputs:
              - destination_node_id: out
          - type: Sink
            node_id: out
    """

    model_config = {"frozen": True, "extra": "forbid"}

    version: str = SCENARIO_SCHEMA_VERSION
    name: str = ""
    description: str = ""
    nodes: tuple[NodeConfig, ...] = Field(min_length=1)
    groups: tuple[GroupConfig, ...] = ()

    def node(self, node_id: str) -> DataSourceConfig | QueueConfig | ProcessNodeConfig | SinkConfig:
        """Look up a node config by id.

        Raises:
            KeyError: If no node has this id
        """
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    def has_node(self, node_id: str) -> bool:
        return any(node.node_id == node_id for node in self.nodes)

    @property
    def node_ids(self) -> list[str]:
        return [node.node_id for node in self.nodes]

    def with_node_changes(self, node_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Return this scenario as a plain dict with one node's fields replaced.

        The result is unvalidated; pass it to validate_scenario.

        Raises:
            KeyError: If no node has this id
        """
        data = self.model_dump(mode="json")
        for node in data["nodes"]:
            if node["node_id"] == node_id:
                node.update(changes)
                return data
        raise KeyError(node_id)


def scenario_hash(scenario: ScenarioConfig) -> str:
    """Stable fingerprint of a scenario, used to tell recorded models apart."""
    return stable_hash(scenario.model_dump(mode="json"))


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages


def validate_scenario(data: Any) -> tuple[ScenarioConfig | None, list[str]]:
    """Validate raw scenario data, collecting every problem.

    Schema errors are reported first; graph checks only run on a
    schema-valid model.

    Args:
        data: Parsed YAML/JSON mapping, or an existing ScenarioConfig

    Returns:
        (scenario, []) on success, (None, errors) otherwise
    """
    from tokenflow.core.graph import ScenarioGraph

    if isinstance(data, ScenarioConfig):
        scenario = data
    else:
        if not isinstance(data, dict):
            return None, [f"Scenario must be a mapping, got {type(data).__name__}"]
        try:
            scenario = ScenarioConfig.model_validate(data)
        except ValidationError as e:
            return None, _format_validation_error(e)

    report = ScenarioGraph.from_scenario(scenario).validate()
    if report.errors:
        return None, report.errors
    return scenario, []


def read_scenario_data(path: Path) -> Any:
    """Parse a scenario file (.json, or YAML for anything else).

    Raises:
        FileNotFoundError: If path doesn't exist
        ScenarioValidationError: If the file is not parseable
    """
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ScenarioValidationError([f"Cannot parse {path.name}: {e}"]) from e


def load_scenario_file(path: Path) -> ScenarioConfig:
    """Load and validate a scenario file.

    Raises:
        FileNotFoundError: If path doesn't exist
        ScenarioValidationError: If the scenario has any configuration error
    """
    scenario, errors = validate_scenario(read_scenario_data(path))
    if scenario is None:
        raise ScenarioValidationError(errors)
    return scenario
