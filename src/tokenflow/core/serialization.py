"""Type-preserving JSON serialization for snapshots and recorded scenarios.

Standard json.dumps() cannot round-trip datetime values (scenario record
timestamps). This module wraps them in collision-safe type envelopes with
``__tokenflow_type__`` and ``__tokenflow_value__`` keys. User dicts that
coincidentally contain the reserved key are escaped before encoding, so
token payloads can never be mistaken for an envelope.

This is distinct from canonical_json() which is designed for hashing:
snapshot serialization needs round-trip fidelity, not canonical form.

NaN/Infinity are rejected: a snapshot containing them could never be
compared against a replay.
"""

from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any

_ENVELOPE_TYPE_KEY = "__tokenflow_type__"
_ENVELOPE_VALUE_KEY = "__tokenflow_value__"


class SnapshotFormatError(ValueError):
    """Raised when data cannot be serialized to, or restored from, snapshot JSON."""


class SnapshotEncoder(json.JSONEncoder):
    """JSON encoder that preserves datetime with collision-safe type envelopes."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=UTC)
            return {
                _ENVELOPE_TYPE_KEY: "datetime",
                _ENVELOPE_VALUE_KEY: obj.isoformat(),
            }
        return super().default(obj)


def _reject_nan_infinity(obj: Any) -> Any:
    """Recursively check for NaN/Infinity in a data structure.

    Raises:
        SnapshotFormatError: If NaN or Infinity found
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise SnapshotFormatError(f"Cannot serialize non-finite float: {obj}. Use None for missing values, not NaN/Infinity.")
    elif isinstance(obj, dict):
        for v in obj.values():
            _reject_nan_infinity(v)
    elif isinstance(obj, list | tuple):
        for v in obj:
            _reject_nan_infinity(v)
    return obj


def _escape_reserved_keys(obj: Any) -> Any:
    """Wrap user dicts that contain the reserved key in an escape envelope."""
    if isinstance(obj, datetime):
        return obj
    if isinstance(obj, dict):
        escaped = {k: _escape_reserved_keys(v) for k, v in obj.items()}
        if _ENVELOPE_TYPE_KEY in escaped:
            return {
                _ENVELOPE_TYPE_KEY: "escaped_dict",
                _ENVELOPE_VALUE_KEY: escaped,
            }
        return escaped
    if isinstance(obj, list | tuple):
        return [_escape_reserved_keys(v) for v in obj]
    return obj


def snapshot_dumps(obj: Any, *, indent: int | None = None) -> str:
    """Serialize a snapshot or scenario record to JSON.

    Args:
        obj: Data structure to serialize (plain dicts/lists/primitives/datetime)
        indent: Optional pretty-print indentation

    Returns:
        JSON string with type envelopes for datetime

    Raises:
        SnapshotFormatError: If data contains NaN or Infinity
        TypeError: If data contains non-serializable types
    """
    _reject_nan_infinity(obj)
    escaped = _escape_reserved_keys(obj)
    return json.dumps(escaped, cls=SnapshotEncoder, allow_nan=False, indent=indent)


def _restore_types(obj: Any) -> Any:
    """Recursively restore type-tagged values.

    Raises:
        SnapshotFormatError: If an envelope has an unknown type
    """
    if isinstance(obj, dict):
        if _ENVELOPE_TYPE_KEY in obj and _ENVELOPE_VALUE_KEY in obj and len(obj) == 2:
            envelope_type = obj[_ENVELOPE_TYPE_KEY]
            envelope_value = obj[_ENVELOPE_VALUE_KEY]

            if envelope_type == "datetime" and isinstance(envelope_value, str):
                return datetime.fromisoformat(envelope_value)

            if envelope_type == "escaped_dict" and isinstance(envelope_value, dict):
                return {k: _restore_types(v) for k, v in envelope_value.items()}

            raise SnapshotFormatError(f"Unknown type envelope: {envelope_type!r}")

        return {k: _restore_types(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_restore_types(v) for v in obj]
    return obj


def snapshot_loads(s: str) -> Any:
    """Deserialize JSON produced by snapshot_dumps.

    Raises:
        json.JSONDecodeError: If string is not valid JSON
        SnapshotFormatError: If an envelope has an unknown type
    """
    return _restore_types(json.loads(s))
