"""Token: the unit of value flowing through the scenario graph.

These types answer: "What is moving, and what has happened to it?"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tokenflow.contracts.history import CreationEntry, HistoryEntry, history_entry_from_dict


@dataclass(frozen=True)
class Token:
    """An immutable value carrier with an append-only history.

    Identity fields never change after creation. The history list is the
    only mutable part, and it only ever grows (see ``record``).

    Invariants:
    - history[0] is the CreationEntry written when the token was created
    - created_at <= timestamp of every entry in history
    """

    id: str
    value: Any
    created_at: int
    origin_node_id: str
    history: list[HistoryEntry] = field(default_factory=list, compare=False)

    def record(self, entry: HistoryEntry) -> None:
        """Append a history entry referencing this token."""
        if entry.timestamp < self.created_at:
            raise ValueError(f"History entry at t={entry.timestamp} predates token {self.id} created at t={self.created_at}")
        self.history.append(entry)

    @property
    def creation(self) -> CreationEntry:
        """The entry written when this token was created."""
        first = self.history[0]
        if not isinstance(first, CreationEntry):
            raise TypeError(f"Token {self.id} history does not start with a creation entry: {first.action}")
        return first

    @property
    def parent_ids(self) -> tuple[str, ...]:
        return self.creation.lineage_metadata.parent_ids

    @property
    def generation_level(self) -> int:
        return self.creation.lineage_metadata.generation_level

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "created_at": self.created_at,
            "origin_node_id": self.origin_node_id,
            "history": [entry.to_dict() for entry in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Token:
        return cls(
            id=data["id"],
            value=data["value"],
            created_at=data["created_at"],
            origin_node_id=data["origin_node_id"],
            history=[history_entry_from_dict(entry) for entry in data["history"]],
        )
