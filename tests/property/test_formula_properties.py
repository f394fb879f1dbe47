# tests/property/test_formula_properties.py
"""Property-based tests for the formula evaluator.

Properties:
- evaluate() never raises, whatever the formula text
- Arithmetic over input aliases matches Python arithmetic
- Integral results are always ints, never floats like 7.0
- Validation is independent of the context: a formula rejected as
  forbidden is rejected for every context
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from tokenflow.engine.formula import FormulaParser, FormulaSecurityError, build_context, evaluate

# =============================================================================
# Strategies
# =============================================================================

values = st.integers(min_value=-1_000_000, max_value=1_000_000)

# Text drawn from the characters formulas are made of, so that many
# examples get past the tokenizer
formula_chars = st.sampled_from(list("AB.value()+-*/%<>=! 0123456789'[]_,") + ["inputs", "sqrt", "**", " if ", " else "])
formula_texts = st.lists(formula_chars, max_size=25).map("".join)

operators = st.sampled_from(["+", "-", "*"])


class TestEvaluateNeverRaises:
    @given(text=st.text(max_size=80), a=values, b=values)
    @settings(max_examples=300)
    def test_arbitrary_text(self, text: str, a: int, b: int) -> None:
        """Property: any text yields a FormulaResult with a value or an error."""
        result = evaluate(text, build_context({"A": a, "B": b}))
        assert result.ok or isinstance(result.error, str)

    @given(text=formula_texts, a=values, b=values)
    @settings(max_examples=300)
    def test_formula_shaped_text(self, text: str, a: int, b: int) -> None:
        """Property: near-miss formulas never escape as exceptions."""
        result = evaluate(text, build_context({"A": a, "B": b}))
        assert result.ok or isinstance(result.error, str)


class TestArithmetic:
    @given(a=values, b=values, op=operators)
    def test_binary_matches_python(self, a: int, b: int, op: str) -> None:
        """Property: A.value <op> B.value equals the Python result."""
        expected = {"+": a + b, "-": a - b, "*": a * b}[op]
        result = evaluate(f"A.value {op} B.value", build_context({"A": a, "B": b}))
        assert result.value == expected

    @given(a=values, b=values)
    def test_reference_styles_agree(self, a: int, b: int) -> None:
        """Property: every way of referencing an input reads the same value."""
        context = build_context({"A": a, "B": b})
        formulas = ["A.value + B.value", "inputs.A.value + inputs.B.value", "inputs['A'].value + BValue", "A.data.value + B.data.aggregatedValue"]
        results = {evaluate(f, context).value for f in formulas}
        assert results == {a + b}

    @given(a=values, b=st.integers(min_value=1, max_value=1000))
    def test_integral_division_is_int(self, a: int, b: int) -> None:
        """Property: (a*b)/b evaluates to the int a, not a float."""
        result = evaluate("A.value * B.value / B.value", build_context({"A": a, "B": b}))
        assert result.value == a
        assert type(result.value) is int


@pytest.mark.parametrize("formula", ["__import__('os')", "A.__class__", "[A.value]", "lambda: 1"])
@given(a=values)
def test_forbidden_for_every_context(formula: str, a: int) -> None:
    """Property: security rejection happens at parse time, before any context."""
    with pytest.raises(FormulaSecurityError):
        FormulaParser(formula)
    assert evaluate(formula, build_context({"A": a})).error is not None
