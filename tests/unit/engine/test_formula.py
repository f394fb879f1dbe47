# tests/unit/engine/test_formula.py
"""Tests for the safe formula evaluator."""

from __future__ import annotations

import math

import pytest

from tokenflow.engine.formula import (
    MAX_EXPONENT,
    FormulaEvaluationError,
    FormulaParser,
    FormulaSecurityError,
    FormulaSyntaxError,
    build_context,
    describe_calculation,
    evaluate,
    normalize_number,
)


class TestFormulaParserValidation:
    @pytest.mark.parametrize(
        "formula",
        [
            "A.value + B.value",
            "inputs.A.value * 2",
            "inputs['A'].value - 1",
            "A.data.aggregatedValue / 4",
            "AValue ** 2",
            "max(A.value, B.value) if A.value > 0 else 0",
            "not (A.value == 3) or B.value != 4",
            "round(sqrt(A.value), 2)",
            "-A.value % 3",
            "A.value // 2",
        ],
    )
    def test_allowed(self, formula: str) -> None:
        assert FormulaParser(formula).formula == formula

    @pytest.mark.parametrize(
        "formula",
        [
            "__import__('os')",
            "open('x')",
            "A.__class__",
            "_secret",
            "lambda: 1",
            "[x for x in A]",
            "[1, 2]",
            "{'a': 1}",
            "A.value[1:3]",
            "A.value[B.value]",
            "(y := 1)",
            "f'{A.value}'",
            "A.value is None",
            "A.value in B",
            "A.value << 2",
            "~A.value",
            "max(key=A.value)",
            "abs()",
            "A.value.bit_length()",
        ],
    )
    def test_forbidden(self, formula: str) -> None:
        with pytest.raises(FormulaSecurityError):
            FormulaParser(formula)

    @pytest.mark.parametrize("formula", ["", "   ", "A.value +", "x = 1", "import os"])
    def test_syntax_errors(self, formula: str) -> None:
        with pytest.raises(FormulaSyntaxError):
            FormulaParser(formula)

    def test_security_error_lists_every_violation(self) -> None:
        with pytest.raises(FormulaSecurityError) as exc_info:
            FormulaParser("_a + _b")
        assert "'_a'" in str(exc_info.value)
        assert "'_b'" in str(exc_info.value)


class TestFormulaEvaluation:
    def test_sum_of_aliases(self) -> None:
        ctx = build_context({"A": 3, "B": 4})
        assert FormulaParser("A.value + B.value").evaluate(ctx) == 7

    @pytest.mark.parametrize(
        "formula",
        ["inputs.A.value", "A.value", "A.data.value", "A.data.aggregatedValue", "A.data.transformedValue", "AValue", "inputs['A'].value"],
    )
    def test_every_context_shape_resolves(self, formula: str) -> None:
        assert FormulaParser(formula).evaluate(build_context({"A": 5})) == 5

    def test_integral_float_collapses_to_int(self) -> None:
        result = FormulaParser("A.value / 2").evaluate(build_context({"A": 8}))
        assert result == 4
        assert isinstance(result, int)

    def test_non_integral_float_kept(self) -> None:
        assert FormulaParser("A.value / 2").evaluate(build_context({"A": 5})) == 2.5

    def test_short_circuit_skips_failing_branch(self) -> None:
        ctx = build_context({"A": 0})
        assert FormulaParser("A.value != 0 and 10 / A.value").evaluate(ctx) is False

    def test_ternary(self) -> None:
        parser = FormulaParser("A.value if A.value > B.value else B.value")
        assert parser.evaluate(build_context({"A": 2, "B": 9})) == 9

    def test_chained_comparison(self) -> None:
        assert FormulaParser("1 < A.value < 5").evaluate(build_context({"A": 3})) is True

    def test_functions(self) -> None:
        ctx = build_context({"A": -2.5})
        assert FormulaParser("abs(A.value)").evaluate(ctx) == 2.5
        assert FormulaParser("floor(A.value)").evaluate(ctx) == -3
        assert FormulaParser("ceil(A.value)").evaluate(ctx) == -2

    def test_unknown_identifier(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="Unknown identifier: 'C'"):
            FormulaParser("C.value").evaluate(build_context({"A": 1}))

    def test_unknown_field(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="Unknown field 'size'"):
            FormulaParser("A.size").evaluate(build_context({"A": 1}))

    def test_division_by_zero(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="division by zero") as exc_info:
            FormulaParser("A.value / 0").evaluate(build_context({"A": 1}))
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)

    def test_type_error(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="type error in Add"):
            FormulaParser("A.value + 'x'").evaluate(build_context({"A": 1}))

    def test_exponent_bound(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="exceeds limit"):
            FormulaParser(f"2 ** {MAX_EXPONENT + 1}").evaluate({})

    def test_result_size_bound(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="would exceed"):
            FormulaParser("(9 ** 999) ** 999").evaluate({})

    @pytest.mark.parametrize("formula", ["'ab' * 3", "'%d' % A.value"])
    def test_string_arithmetic_rejected(self, formula: str) -> None:
        with pytest.raises(FormulaEvaluationError, match="type error"):
            FormulaParser(formula).evaluate(build_context({"A": 1}))

    def test_product_size_bound(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="exceeds 4096 bits"):
            FormulaParser("A.value * A.value").evaluate(build_context({"A": 2**3000}))

    @pytest.mark.parametrize("formula", ["(-8) ** 0.5", "A.value ** 0.5 + 1"])
    def test_complex_result_rejected(self, formula: str) -> None:
        with pytest.raises(FormulaEvaluationError, match="not a real number"):
            FormulaParser(formula).evaluate(build_context({"A": -2}))

    def test_domain_error(self) -> None:
        with pytest.raises(FormulaEvaluationError, match=r"sqrt\(\) failed"):
            FormulaParser("sqrt(A.value)").evaluate(build_context({"A": -1}))

    def test_non_finite_result(self) -> None:
        with pytest.raises(FormulaEvaluationError, match="non-finite"):
            FormulaParser("A.value * 2").evaluate(build_context({"A": math.inf}))


class TestEvaluate:
    """evaluate() is the tick-facing entry point: it never raises."""

    def test_success(self) -> None:
        result = evaluate("A.value * 2", build_context({"A": 3}))
        assert result.ok
        assert result.value == 6

    def test_syntax_error_prefixed(self) -> None:
        result = evaluate("A.value +", {})
        assert not result.ok
        assert result.value is None
        assert result.error is not None
        assert result.error.startswith("syntax error: ")

    def test_forbidden_construct_prefixed(self) -> None:
        result = evaluate("__import__('os')", {})
        assert result.error is not None
        assert result.error.startswith("forbidden construct: ")

    def test_evaluation_error_passed_through(self) -> None:
        result = evaluate("A.value / 0", build_context({"A": 1}))
        assert result.error == "division by zero in Div operation"

    def test_unknown_alias_is_an_error_value(self) -> None:
        result = evaluate("B.value", build_context({"A": 1}))
        assert result.error is not None
        assert "Unknown identifier: 'B'" in result.error


class TestDescribeCalculation:
    def test_substitutes_values(self) -> None:
        assert describe_calculation("A.value + B.value", {"A": 3, "B": 4}, 7) == "A.value + B.value = 3 + 4 = 7"

    def test_longest_alias_first(self) -> None:
        text = describe_calculation("AB.value - A.value", {"A": 1, "AB": 10}, 9)
        assert text == "AB.value - A.value = 10 - 1 = 9"

    def test_all_context_shapes(self) -> None:
        text = describe_calculation("inputs.A.value + A.data.value + AValue", {"A": 2}, 6)
        assert text.endswith("= 2 + 2 + 2 = 6")


class TestNormalizeNumber:
    def test_collapses_integral_float(self) -> None:
        assert normalize_number(7.0) == 7
        assert isinstance(normalize_number(7.0), int)

    def test_passes_other_values(self) -> None:
        assert normalize_number("x") == "x"
        assert normalize_number(2.5) == 2.5

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, complex(1, 2), 2**5000])
    def test_rejects_non_finite(self, value: float) -> None:
        with pytest.raises(FormulaEvaluationError):
            normalize_number(value)
