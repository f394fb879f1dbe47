# src/tokenflow/core/graph.py
"""Scenario graph construction and referential checks.

Uses NetworkX for:
- Edge bookkeeping (declared outputs become directed edges)
- Cycle discovery (cycles are legal but reported as warnings, since
  token flow is paced by ticks and cannot spin within one tick)
- Upstream/downstream queries
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import networkx as nx

from tokenflow.contracts.enums import NodeType

if TYPE_CHECKING:
    from tokenflow.core.scenario import ScenarioConfig


@dataclass
class GraphReport:
    """Result of graph validation: errors block loading, warnings don't."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ScenarioGraph:
    """Directed graph over a scenario's nodes.

    Nodes carry ``node_type``; edges carry ``destination_input_name``.
    Built with from_scenario(); never mutated afterwards.
    """

    def __init__(self) -> None:
        self._graph: nx.DiGraph = nx.DiGraph()
        self._duplicates: list[str] = []
        self._dangling: list[tuple[str, str]] = []
        self._scenario: ScenarioConfig | None = None

    @classmethod
    def from_scenario(cls, scenario: ScenarioConfig) -> ScenarioGraph:
        graph = cls()
        graph._scenario = scenario
        counts = Counter(node.node_id for node in scenario.nodes)
        graph._duplicates = sorted(node_id for node_id, n in counts.items() if n > 1)

        for node in scenario.nodes:
            graph._graph.add_node(node.node_id, node_type=NodeType(node.type))

        for node in scenario.nodes:
            for output in node.outputs:
                if output.destination_node_id not in graph._graph:
                    graph._dangling.append((node.node_id, output.destination_node_id))
                    continue
                graph._graph.add_edge(
                    node.node_id,
                    output.destination_node_id,
                    destination_input_name=output.destination_input_name,
                )
        return graph

    @property
    def graph(self) -> nx.DiGraph:
        return self._graph

    def node_type(self, node_id: str) -> NodeType:
        node_type: NodeType = self._graph.nodes[node_id]["node_type"]
        return node_type

    def downstream(self, node_id: str) -> list[str]:
        return list(self._graph.successors(node_id))

    def upstream(self, node_id: str) -> list[str]:
        return list(self._graph.predecessors(node_id))

    def cycles(self) -> list[list[str]]:
        return [sorted(cycle) for cycle in nx.simple_cycles(self._graph)]

    def validate(self) -> GraphReport:
        """Check referential integrity.

        Errors:
        - Duplicate node ids
        - Outputs pointing at unknown nodes
        - A DataSource as a destination
        - Process inputs bound to unknown nodes, or to nodes that do not
          declare an output to that process node

        Warnings:
        - Cycles
        - Nodes with no edges at all
        """
        report = GraphReport()
        for node_id in self._duplicates:
            report.errors.append(f"Duplicate node_id: {node_id!r}")

        for source_id, destination_id in self._dangling:
            report.errors.append(f"Node {source_id!r} outputs to unknown node {destination_id!r}")

        for source_id, destination_id in self._graph.edges:
            if self.node_type(destination_id) == NodeType.DATA_SOURCE:
                report.errors.append(f"Node {source_id!r} outputs to DataSource {destination_id!r}")

        if self._scenario is not None:
            for node in self._scenario.nodes:
                if node.type != NodeType.PROCESS_NODE:
                    continue
                for process_input in node.inputs:
                    if process_input.node_id not in self._graph:
                        report.errors.append(f"ProcessNode {node.node_id!r} input {process_input.name!r} references unknown node {process_input.node_id!r}")
                    elif not self._graph.has_edge(process_input.node_id, node.node_id):
                        report.errors.append(
                            f"ProcessNode {node.node_id!r} input {process_input.name!r} expects tokens from "
                            f"{process_input.node_id!r}, which declares no output to it"
                        )

        for cycle in self.cycles():
            report.warnings.append(f"Cycle between nodes: {cycle}")

        if self._graph.number_of_nodes() > 1:
            for node_id in sorted(nx.isolates(self._graph)):
                report.warnings.append(f"Node {node_id!r} is not connected to any other node")

        return report
