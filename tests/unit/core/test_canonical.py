# tests/unit/core/test_canonical.py
"""Tests for canonical JSON and stable hashing."""

import math

import pytest

from tokenflow.contracts import NodeType
from tokenflow.core.canonical import CANONICAL_VERSION, canonical_json, stable_hash


class TestCanonicalJson:
    def test_keys_sorted_without_whitespace(self) -> None:
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_enums_unwrapped(self) -> None:
        assert canonical_json({"type": NodeType.QUEUE}) == '{"type":"Queue"}'

    def test_tuples_serialize_as_lists(self) -> None:
        assert canonical_json((1, 2)) == canonical_json([1, 2])

    def test_nested_enums_and_tuples(self) -> None:
        assert canonical_json({"nodes": ({"type": NodeType.SINK},)}) == '{"nodes":[{"type":"Sink"}]}'

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_floats_rejected(self, value: float) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            canonical_json({"v": value})


class TestStableHash:
    def test_key_order_does_not_matter(self) -> None:
        assert stable_hash({"a": 1, "b": 2}) == stable_hash({"b": 2, "a": 1})

    def test_different_values_differ(self) -> None:
        assert stable_hash({"a": 1}) != stable_hash({"a": 2})

    def test_sha256_hex_digest(self) -> None:
        digest = stable_hash({"a": 1})
        assert len(digest) == 64
        int(digest, 16)

    def test_version_constant(self) -> None:
        assert CANONICAL_VERSION == "sha256-rfc8785-v1"
