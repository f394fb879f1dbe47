# src/tokenflow/engine/activity.py
"""Simulation activity log and user-facing error channel.

The activity log is engine state: every token creation, hand-off, drop,
aggregation and formula failure is written here, per node and globally,
each bounded independently with oldest-first eviction. Sequence numbers
are global and gapless across everything written.

Entry variants are chosen from the action tag (see operation_type_for),
so callers only pass the fields relevant to the operation.
"""

from __future__ import annotations

from collections import deque
from typing import Any

from tokenflow.contracts.enums import operation_type_for
from tokenflow.contracts.history import ENTRY_TYPES, HistoryEntry, history_entry_from_dict
from tokenflow.core.logging import get_logger
from tokenflow.engine.clock import DEFAULT_CLOCK, Clock

logger = get_logger(__name__)


class ErrorChannel:
    """Ordered, user-clearable list of human-readable error messages.

    Formula errors are appended. Internal invariant violations are
    prepended so they surface first.
    """

    def __init__(self) -> None:
        self._messages: list[str] = []

    def append(self, message: str) -> None:
        self._messages.append(message)

    def prepend(self, message: str) -> None:
        self._messages.insert(0, message)

    def clear(self) -> None:
        self._messages.clear()

    @property
    def messages(self) -> list[str]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


class ActivityLog:
    """Bounded per-node and global activity logs sharing one sequence counter.

    Example:
        log = ActivityLog(max_node_entries=500, max_global_entries=1000, errors=ErrorChannel())
        entry = log.write(
            node_id="src",
            timestamp=3,
            action=Action.EMIT_TOKEN,
            details="Emitted tk-1",
            state=NodeFSMState.SOURCE_EMITTING,
            value=7,
        )
    """

    def __init__(
        self,
        *,
        max_node_entries: int,
        max_global_entries: int,
        errors: ErrorChannel,
        clock: Clock | None = None,
    ) -> None:
        self._max_node_entries = max_node_entries
        self._global: deque[HistoryEntry] = deque(maxlen=max_global_entries)
        self._by_node: dict[str, deque[HistoryEntry]] = {}
        self._sequence = 0
        self._errors = errors
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    @property
    def sequence(self) -> int:
        """Sequence number of the most recent entry (0 before any entry)."""
        return self._sequence

    def write(
        self,
        *,
        node_id: Any,
        timestamp: int,
        action: str,
        details: str,
        state: str,
        **fields: Any,
    ) -> HistoryEntry | None:
        """Write an entry to the node's log and the global log.

        Args:
            node_id: Owning node. Must be a non-empty string.
            timestamp: Simulation tick
            action: Action tag; selects the entry variant
            details: Human-readable description
            state: Node FSM state at write time
            **fields: Variant-specific fields (value, source_token_ids, ...)

        Returns:
            The written entry, or None if node_id was invalid. An invalid
            node_id writes nothing, consumes no sequence number, and puts
            an error message at the front of the error channel.
        """
        if not isinstance(node_id, str) or not node_id:
            message = f"Activity log rejected entry {action!r}: invalid node id {node_id!r}"
            logger.error("Invalid activity log call", action=action, node_id=repr(node_id))
            self._errors.prepend(message)
            return None

        entry_type = ENTRY_TYPES[operation_type_for(action)]
        self._sequence += 1
        entry = entry_type(
            timestamp=timestamp,
            epoch_timestamp=self._clock.epoch_ms(),
            sequence=self._sequence,
            node_id=node_id,
            action=str(action),
            details=details,
            state=str(state),
            **fields,
        )
        self._global.append(entry)
        self._node_log(node_id).append(entry)
        return entry

    def _node_log(self, node_id: str) -> deque[HistoryEntry]:
        if node_id not in self._by_node:
            self._by_node[node_id] = deque(maxlen=self._max_node_entries)
        return self._by_node[node_id]

    def for_node(self, node_id: str) -> list[HistoryEntry]:
        return list(self._by_node.get(node_id, ()))

    @property
    def global_entries(self) -> list[HistoryEntry]:
        return list(self._global)

    def drop_node(self, node_id: str) -> None:
        """Forget a removed node's log. Its entries stay in the global log."""
        self._by_node.pop(node_id, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self._sequence,
            "global": [entry.to_dict() for entry in self._global],
            "nodes": {node_id: [entry.to_dict() for entry in entries] for node_id, entries in self._by_node.items()},
        }

    def restore(self, data: dict[str, Any]) -> None:
        """Replace contents with a to_dict() capture. Bounds stay as configured."""
        self._sequence = data["sequence"]
        self._global.clear()
        self._global.extend(history_entry_from_dict(item) for item in data["global"])
        self._by_node = {}
        for node_id, entries in data["nodes"].items():
            self._node_log(node_id).extend(history_entry_from_dict(item) for item in entries)
