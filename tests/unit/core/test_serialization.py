# tests/unit/core/test_serialization.py
"""Tests for type-preserving snapshot JSON."""

import json
import math
from datetime import UTC, datetime

import pytest

from tokenflow.core.serialization import SnapshotFormatError, snapshot_dumps, snapshot_loads


class TestSnapshotSerialization:
    def test_datetime_round_trip(self) -> None:
        created = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)
        restored = snapshot_loads(snapshot_dumps({"created_at": created, "n": [1, 2]}))

        assert restored == {"created_at": created, "n": [1, 2]}
        assert isinstance(restored["created_at"], datetime)

    def test_naive_datetime_assumed_utc(self) -> None:
        restored = snapshot_loads(snapshot_dumps(datetime(2025, 3, 1, 9, 30)))
        assert restored.tzinfo is not None

    def test_reserved_key_in_user_data_is_escaped(self) -> None:
        """A payload that looks like an envelope comes back unchanged."""
        payload = {"__tokenflow_type__": "datetime", "__tokenflow_value__": "not a date"}
        assert snapshot_loads(snapshot_dumps(payload)) == payload

    def test_tuples_become_lists(self) -> None:
        assert snapshot_loads(snapshot_dumps({"ids": ("tk-1", "tk-2")})) == {"ids": ["tk-1", "tk-2"]}

    @pytest.mark.parametrize("value", [math.nan, math.inf])
    def test_non_finite_rejected(self, value: float) -> None:
        with pytest.raises(SnapshotFormatError, match="non-finite"):
            snapshot_dumps({"nested": [{"v": value}]})

    def test_format_error_is_value_error(self) -> None:
        assert issubclass(SnapshotFormatError, ValueError)

    def test_unknown_envelope_rejected(self) -> None:
        text = json.dumps({"__tokenflow_type__": "complex", "__tokenflow_value__": "1+2j"})
        with pytest.raises(SnapshotFormatError, match="Unknown type envelope"):
            snapshot_loads(text)

    def test_indent_pretty_prints(self) -> None:
        assert "\n" in snapshot_dumps({"a": 1}, indent=2)
