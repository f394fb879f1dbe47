# src/tokenflow/engine/lineage.py
"""Token creation and lineage queries.

TokenManager is the only place tokens are made. Every token starts its
history with a CREATED entry carrying lineage metadata (generation level,
ultimate sources, operation type, parent ids) and a summary of each
parent as it looked when consumed.

LineageIndex keeps a parent -> child DAG of token records in a NetworkX
DiGraph. Lineage is a DAG, not a tree: the same ancestor can be reached
through several paths, so ancestor sets are deduplicated by token id and
generation levels use the maximum distance over all paths.
"""

from __future__ import annotations

__all__ = ["AncestorInfo", "LineageIndex", "LineageRecord", "LineageResult", "TokenManager"]

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import networkx as nx

from tokenflow.contracts import Action, LineageMetadata, OperationType, SourceTokenSummary, Token
from tokenflow.contracts.history import CreationEntry
from tokenflow.engine.activity import ActivityLog


@dataclass(frozen=True)
class LineageRecord:
    """What the lineage index remembers about one token."""

    token_id: str
    origin_node_id: str
    value: Any
    created_at: int
    parent_ids: tuple[str, ...]
    operation_type: OperationType

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "origin_node_id": self.origin_node_id,
            "value": self.value,
            "created_at": self.created_at,
            "parent_ids": list(self.parent_ids),
            "operation_type": self.operation_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineageRecord:
        return cls(
            token_id=data["token_id"],
            origin_node_id=data["origin_node_id"],
            value=data["value"],
            created_at=data["created_at"],
            parent_ids=tuple(data["parent_ids"]),
            operation_type=OperationType(data["operation_type"]),
        )


@dataclass(frozen=True)
class AncestorInfo:
    record: LineageRecord
    generation: int


@dataclass(frozen=True)
class LineageResult:
    """Lineage of one token.

    Attributes:
        token: The queried token
        parents: Immediate parents, in recorded parent order
        ancestors: Every transitive ancestor once, with its max hop count
        roots: Ancestors created with no parents
        descendants: Every transitive descendant once, with its max hop count
        siblings: Other tokens sharing at least one parent
        path: Longest chain of token ids from a root down to the token
    """

    token: LineageRecord
    parents: tuple[LineageRecord, ...]
    ancestors: tuple[AncestorInfo, ...]
    roots: tuple[LineageRecord, ...]
    descendants: tuple[AncestorInfo, ...]
    siblings: tuple[LineageRecord, ...]
    path: tuple[str, ...]


def _sort_key(record: LineageRecord) -> tuple[int, str]:
    return (record.created_at, record.token_id)


class LineageIndex:
    """Bounded parent -> child DAG of token records.

    When the bound is exceeded the oldest records are evicted. Queries
    on evicted ancestors stop at the eviction horizon; summaries recorded
    at creation time keep the full picture.
    """

    def __init__(self, max_records: int) -> None:
        self._max_records = max_records
        self._graph: nx.DiGraph = nx.DiGraph()

    def __contains__(self, token_id: object) -> bool:
        return token_id in self._graph

    def __len__(self) -> int:
        return len(self._graph)

    def add(self, record: LineageRecord) -> None:
        self._graph.add_node(record.token_id, record=record)
        for parent_id in record.parent_ids:
            # Evicted parents are not resurrected as bare nodes
            if parent_id in self._graph:
                self._graph.add_edge(parent_id, record.token_id)
        self._evict()

    def _records(self) -> list[LineageRecord]:
        return [data["record"] for _, data in self._graph.nodes(data=True)]

    def _evict(self) -> None:
        # Node insertion order is creation order
        excess = len(self._graph) - self._max_records
        if excess <= 0:
            return
        oldest = list(self._graph.nodes)[:excess]
        self._graph.remove_nodes_from(oldest)

    def get(self, token_id: str) -> LineageRecord:
        """Raises KeyError for unknown or evicted tokens."""
        if token_id not in self:
            raise KeyError(token_id)
        record: LineageRecord = self._graph.nodes[token_id]["record"]
        return record

    def _known(self, token_ids: Any) -> list[LineageRecord]:
        return sorted((self.get(t) for t in token_ids if t in self), key=_sort_key)

    def ancestor_distances(self, token_id: str) -> dict[str, int]:
        """Max hop count from token_id up to each known ancestor."""
        ancestors = nx.ancestors(self._graph, token_id)
        subgraph = self._graph.subgraph(ancestors | {token_id})
        distances = {token_id: 0}
        for node in reversed(list(nx.topological_sort(subgraph))):
            if node not in distances:
                continue
            for parent in subgraph.predecessors(node):
                distances[parent] = max(distances.get(parent, 0), distances[node] + 1)
        del distances[token_id]
        return distances

    def descendant_distances(self, token_id: str) -> dict[str, int]:
        """Max hop count from token_id down to each known descendant."""
        descendants = nx.descendants(self._graph, token_id)
        subgraph = self._graph.subgraph(descendants | {token_id})
        distances = {token_id: 0}
        for node in nx.topological_sort(subgraph):
            if node not in distances:
                continue
            for child in subgraph.successors(node):
                distances[child] = max(distances.get(child, 0), distances[node] + 1)
        del distances[token_id]
        return distances

    def complete_lineage(self, token_id: str) -> tuple[str, ...]:
        """Deduplicated known ancestor ids, oldest first."""
        if token_id not in self:
            return ()
        return tuple(r.token_id for r in self._known(self.ancestor_distances(token_id)))

    def ultimate_sources(self, token_id: str) -> tuple[str, ...]:
        """Root token ids reached from token_id; a root is its own source."""
        record = self.get(token_id)
        if not record.parent_ids:
            return (token_id,)
        roots = [r for r in self._known(nx.ancestors(self._graph, token_id)) if not r.parent_ids]
        return tuple(r.token_id for r in roots)

    def derive_lineage(self, token_id: str) -> LineageResult:
        """Reconstruct parents, ancestors, roots, descendants, siblings and path.

        Raises:
            KeyError: If token_id is unknown or evicted
        """
        record = self.get(token_id)
        up = self.ancestor_distances(token_id)
        down = self.descendant_distances(token_id)
        ancestors = self._known(up)
        parents = tuple(self.get(p) for p in record.parent_ids if p in self)

        sibling_ids: set[str] = set()
        for parent_id in record.parent_ids:
            if parent_id in self._graph:
                sibling_ids.update(self._graph.successors(parent_id))
        sibling_ids.discard(token_id)

        return LineageResult(
            token=record,
            parents=parents,
            ancestors=tuple(AncestorInfo(r, up[r.token_id]) for r in ancestors),
            roots=tuple(r for r in ancestors if not r.parent_ids),
            descendants=tuple(AncestorInfo(r, down[r.token_id]) for r in self._known(down)),
            siblings=tuple(self._known(sibling_ids)),
            path=self._longest_path(token_id, up),
        )

    def _longest_path(self, token_id: str, distances: dict[str, int]) -> tuple[str, ...]:
        if not distances:
            return (token_id,)
        depth = max(distances.values())
        current = min(t for t, d in distances.items() if d == depth)
        path = [current]
        while depth > 0:
            depth -= 1
            if depth == 0:
                current = token_id
            else:
                current = min(c for c in self._graph.successors(current) if distances.get(c) == depth)
            path.append(current)
        return tuple(path)

    def to_dict(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self._records()]

    def restore(self, records: Sequence[dict[str, Any]]) -> None:
        self._graph = nx.DiGraph()
        for item in records:
            self.add(LineageRecord.from_dict(item))


class TokenManager:
    """Creates tokens with lineage metadata and a CREATED history entry.

    Token ids come from a per-run counter ("tk-1", "tk-2", ...), so a
    replay of the same events allocates the same ids.

    Example:
        manager = TokenManager(activity, LineageIndex(10_000))
        a = manager.create_token("src", 3, timestamp=1, state="source_generating")
        b = manager.create_token("src", 4, timestamp=1, state="source_generating")
        merged = manager.create_token(
            "q", 7, timestamp=2, state="queue_processing",
            source_tokens=[a, b], operation_type=OperationType.AGGREGATION,
        )
        merged.generation_level  # 1
    """

    def __init__(self, activity: ActivityLog, index: LineageIndex, *, next_id: int = 1) -> None:
        self._activity = activity
        self._index = index
        self._next_id = next_id

    @property
    def index(self) -> LineageIndex:
        return self._index

    @property
    def next_id(self) -> int:
        return self._next_id

    def _allocate_id(self) -> str:
        token_id = f"tk-{self._next_id}"
        self._next_id += 1
        return token_id

    def summarize(self, token: Token) -> SourceTokenSummary:
        """Capture a consumed token for its children's provenance."""
        return SourceTokenSummary(
            id=token.id,
            origin_node_id=token.origin_node_id,
            original_value=token.value,
            created_at=token.created_at,
            complete_lineage=self._index.complete_lineage(token.id),
            generation_level=token.generation_level,
            ultimate_sources=token.creation.lineage_metadata.ultimate_sources,
        )

    def create_token(
        self,
        origin_node_id: str,
        value: Any,
        *,
        timestamp: int,
        state: str,
        source_tokens: Sequence[Token] = (),
        operation_type: OperationType = OperationType.CREATION,
        details: str | None = None,
    ) -> Token:
        """Create a token and write its CREATED entry.

        Args:
            origin_node_id: Node creating the token
            value: Token value
            timestamp: Simulation tick
            state: Creating node's FSM state (recorded on the entry)
            source_tokens: Parents (empty for source emissions and injections)
            operation_type: creation, aggregation or transformation
            details: Optional description for the CREATED entry

        Returns:
            Token whose history holds exactly the CREATED entry

        Raises:
            ValueError: If origin_node_id is not a valid node id, or a
                parented token is classified as a plain creation
        """
        if source_tokens and operation_type == OperationType.CREATION:
            raise ValueError("Tokens with source tokens must be created by an aggregation or transformation")

        token_id = self._allocate_id()
        parent_ids = tuple(t.id for t in source_tokens)

        if source_tokens:
            generation_level = 1 + max(t.generation_level for t in source_tokens)
            ultimate: dict[str, None] = {}
            for parent in source_tokens:
                ultimate.update(dict.fromkeys(parent.creation.lineage_metadata.ultimate_sources))
            ultimate_sources = tuple(ultimate)
        else:
            generation_level = 0
            ultimate_sources = (token_id,)

        metadata = LineageMetadata(
            generation_level=generation_level,
            ultimate_sources=ultimate_sources,
            operation_type=operation_type,
            parent_ids=parent_ids,
        )
        summaries = tuple(self.summarize(t) for t in source_tokens)

        if details is None:
            details = f"Created {token_id} with value {value}"
            if parent_ids:
                details += f" from {', '.join(parent_ids)}"

        entry = self._activity.write(
            node_id=origin_node_id,
            timestamp=timestamp,
            action=Action.CREATED,
            details=details,
            state=state,
            value=value,
            source_token_ids=parent_ids,
            lineage_metadata=metadata,
            source_token_summaries=summaries,
        )
        if not isinstance(entry, CreationEntry):
            raise ValueError(f"Cannot create token at invalid node id {origin_node_id!r}")

        token = Token(id=token_id, value=value, created_at=timestamp, origin_node_id=origin_node_id)
        token.record(entry)
        self._index.add(
            LineageRecord(
                token_id=token_id,
                origin_node_id=origin_node_id,
                value=value,
                created_at=timestamp,
                parent_ids=parent_ids,
                operation_type=operation_type,
            )
        )
        return token

    def restore(self, next_id: int) -> None:
        self._next_id = next_id
