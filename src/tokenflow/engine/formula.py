# src/tokenflow/engine/formula.py
"""Safe formula evaluator for process-node outputs.

Uses Python's ast module to parse and evaluate formulas in a restricted
arithmetic subset of Python. This is NOT eval() - nothing from the formula
is ever executed; the validated tree is walked by a whitelist evaluator.

Two phases:
1. Parse-time validation: reject forbidden constructs (done once, at
   scenario load and on first evaluation)
2. Evaluation: walk the validated AST against the input context

Formula context shape, per input alias ``A`` with token value ``v``:

    inputs.A.value            -> v
    A.value                   -> v
    A.data.value              -> v   (also aggregatedValue, transformedValue)
    AValue                    -> v

``evaluate()`` is the scheduler-facing entry point and never raises: every
failure comes back as ``FormulaResult(value=None, error=...)``.
"""

from __future__ import annotations

import ast
import math
import numbers
import operator
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any


class FormulaError(Exception):
    """Base class for formula failures."""


class FormulaSecurityError(FormulaError):
    """Raised when a formula contains forbidden constructs."""


class FormulaSyntaxError(FormulaError):
    """Raised when a formula is not valid expression syntax."""


class FormulaEvaluationError(FormulaError):
    """Raised when a valid formula fails against a concrete context.

    Wraps operational errors (unknown identifiers, ZeroDivisionError,
    TypeError, domain errors). The original exception is chained via
    __cause__.
    """


# Exponents beyond this bound are rejected to keep evaluation cheap
MAX_EXPONENT = 1000
MAX_RESULT_BITS = 4096

_COMPARISON_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
    "sqrt": math.sqrt,
}


def _is_private(name: str) -> bool:
    return name.startswith("_")


class _FormulaValidator(ast.NodeVisitor):
    """AST visitor that collects every forbidden construct in a formula."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def visit_Name(self, node: ast.Name) -> None:
        if _is_private(node.id):
            self.errors.append(f"Forbidden name: {node.id!r}")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_private(node.attr):
            self.errors.append(f"Forbidden attribute access: {node.attr!r}")
        self.visit(node.value)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if isinstance(node.slice, ast.Slice):
            self.errors.append("Slice syntax (e.g., [1:3]) is forbidden")
        elif not (isinstance(node.slice, ast.Constant) and isinstance(node.slice.value, str | int)):
            self.errors.append("Subscripts must be string or integer literals")
        self.visit(node.value)

    def visit_Call(self, node: ast.Call) -> None:
        if not (isinstance(node.func, ast.Name) and node.func.id in _FUNCTIONS):
            self.errors.append(f"Forbidden function call: {ast.unparse(node.func)}")
            return
        if node.keywords:
            self.errors.append(f"{node.func.id}() does not accept keyword arguments")
        if not node.args:
            self.errors.append(f"{node.func.id}() requires at least one argument")
        for arg in node.args:
            self.visit(arg)

    def visit_Compare(self, node: ast.Compare) -> None:
        for op in node.ops:
            if type(op) not in _COMPARISON_OPS:
                self.errors.append(f"Forbidden comparison operator: {type(op).__name__}")
        self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _BINARY_OPS:
            self.errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if type(node.op) not in _UNARY_OPS:
            self.errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_BoolOp(self, node: ast.BoolOp) -> None:
        self.generic_visit(node)

    def visit_IfExp(self, node: ast.IfExp) -> None:
        self.generic_visit(node)

    def visit_Expression(self, node: ast.Expression) -> None:
        self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is None or isinstance(node.value, str | int | float | bool):
            return
        self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def generic_visit(self, node: ast.AST) -> None:
        # Anything without an explicit visitor is forbidden: lambdas,
        # comprehensions, f-strings, containers, starred, walrus, await.
        if isinstance(node, ast.expr_context | ast.operator | ast.cmpop | ast.unaryop | ast.boolop):
            return
        if type(node) in (ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp):
            super().generic_visit(node)
            return
        self.errors.append(f"Forbidden construct: {type(node).__name__}")


class _FormulaEvaluator(ast.NodeVisitor):
    """AST visitor that evaluates a validated formula against a context."""

    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        available = sorted(k for k in self._context if k != "inputs")
        raise FormulaEvaluationError(f"Unknown identifier: {node.id!r}. Available: {available}")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        # Attribute access is key lookup on context mappings, never getattr
        value = self.visit(node.value)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise FormulaEvaluationError(f"Unknown field {node.attr!r}. Available: {sorted(value)}")
        raise FormulaEvaluationError(f"Cannot access {node.attr!r} on {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, Mapping):
            if key in value:
                return value[key]
            raise FormulaEvaluationError(f"Key {key!r} not found. Available: {sorted(value)}")
        raise FormulaEvaluationError(f"Cannot subscript {type(value).__name__}")

    def visit_Call(self, node: ast.Call) -> Any:
        assert isinstance(node.func, ast.Name)  # guaranteed by validator
        func = _FUNCTIONS[node.func.id]
        args = [self.visit(arg) for arg in node.args]
        try:
            return func(*args)
        except (TypeError, ValueError, ArithmeticError) as e:
            raise FormulaEvaluationError(f"{node.func.id}() failed: {e}") from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                msg = f"type error in comparison ({type(op).__name__}): cannot compare {type(left).__name__} and {type(right).__name__}"
                raise FormulaEvaluationError(msg) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        op_name = type(node.op).__name__
        if isinstance(left, str) or isinstance(right, str):
            # Formulas compute numbers; string repetition and %-formatting are unbounded
            raise FormulaEvaluationError(f"type error in {op_name}: cannot apply to {type(left).__name__} and {type(right).__name__}")
        if isinstance(node.op, ast.Pow) and isinstance(right, int | float):
            if abs(right) > MAX_EXPONENT:
                raise FormulaEvaluationError(f"exponent {right} exceeds limit of {MAX_EXPONENT}")
            if isinstance(left, int) and isinstance(right, int) and left.bit_length() * right > MAX_RESULT_BITS:
                raise FormulaEvaluationError(f"result of {op_name} would exceed {MAX_RESULT_BITS} bits")
        try:
            result = _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError as e:
            raise FormulaEvaluationError(f"division by zero in {op_name} operation") from e
        except TypeError as e:
            msg = f"type error in {op_name}: cannot apply to {type(left).__name__} and {type(right).__name__}"
            raise FormulaEvaluationError(msg) from e
        except (ValueError, ArithmeticError) as e:
            raise FormulaEvaluationError(f"arithmetic error in {op_name}: {e}") from e
        if isinstance(result, int) and result.bit_length() > MAX_RESULT_BITS:
            raise FormulaEvaluationError(f"result of {op_name} exceeds {MAX_RESULT_BITS} bits")
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            msg = f"type error in unary {type(node.op).__name__}: cannot apply to {type(operand).__name__}"
            raise FormulaEvaluationError(msg) from e

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)


class FormulaParser:
    """Parsed and validated formula.

    Allowed:
    - Names bound in the context (input aliases, ``inputs``, ``<alias>Value``)
    - Field access: ``A.value``, ``inputs.A.value``, ``inputs['A'].value``
    - Arithmetic: +, -, *, /, //, %, ** (bounded exponent)
    - Comparisons: ==, !=, <, >, <=, >=
    - Boolean operators and ternaries: and, or, not, x if c else y
    - Functions: abs, min, max, round, floor, ceil, sqrt
    - Literals: numbers, strings, booleans, None

    Forbidden: every other call, lambdas, comprehensions, containers,
    f-strings, slices, assignment expressions, names or attributes
    starting with an underscore.

    Example:
        parser = FormulaParser("A.value + B.value")
        parser.evaluate({"A": {"value": 3}, "B": {"value": 4}})  # 7
    """

    def __init__(self, formula: str) -> None:
        """Parse and validate at construction time.

        Raises:
            FormulaSyntaxError: If formula is not valid expression syntax
            FormulaSecurityError: If formula contains forbidden constructs
        """
        self._formula = formula

        if not formula.strip():
            raise FormulaSyntaxError("Formula is empty")

        try:
            self._ast = ast.parse(formula.strip(), mode="eval")
        except SyntaxError as e:
            raise FormulaSyntaxError(f"Invalid syntax: {e.msg}") from e
        except ValueError as e:
            # Null bytes and over-long integer literals
            raise FormulaSyntaxError(f"Invalid syntax: {e}") from e

        validator = _FormulaValidator()
        validator.visit(self._ast)
        if validator.errors:
            raise FormulaSecurityError("; ".join(validator.errors))

    @property
    def formula(self) -> str:
        return self._formula

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        """Evaluate against a context.

        Raises:
            FormulaEvaluationError: On any runtime failure, including
                non-finite results
        """
        result = _FormulaEvaluator(context).visit(self._ast)
        return normalize_number(result)

    def __repr__(self) -> str:
        return f"FormulaParser({self._formula!r})"


def normalize_number(value: Any) -> Any:
    """Reject non-finite floats and collapse integral floats to int.

    Token values have a single numeric type in scenario files and exports,
    so 7.0 and 7 must not diverge between a sum and an average.

    Raises:
        FormulaEvaluationError: If value is NaN or Infinity, an int wider
            than MAX_RESULT_BITS, or a number JSON cannot carry (complex)
    """
    if isinstance(value, numbers.Number) and not isinstance(value, int | float):
        raise FormulaEvaluationError(f"result of type {type(value).__name__} is not a real number: {value}")
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        raise FormulaEvaluationError(f"result exceeds {MAX_RESULT_BITS} bits")
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise FormulaEvaluationError(f"non-finite result: {value}")
        if value.is_integer():
            return int(value)
    return value


@dataclass(frozen=True)
class FormulaResult:
    """Outcome of a formula evaluation: exactly one of value/error is meaningful."""

    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@lru_cache(maxsize=256)
def _compile(formula: str) -> FormulaParser:
    return FormulaParser(formula)


def evaluate(formula: str, context: Mapping[str, Any]) -> FormulaResult:
    """Evaluate a formula against an input context. Never raises.

    Args:
        formula: Formula text
        context: Mapping built by ``build_context``

    Returns:
        FormulaResult with the value, or with a structured error string
    """
    try:
        return FormulaResult(value=_compile(formula).evaluate(context))
    except FormulaSyntaxError as e:
        return FormulaResult(error=f"syntax error: {e}")
    except FormulaSecurityError as e:
        return FormulaResult(error=f"forbidden construct: {e}")
    except FormulaEvaluationError as e:
        return FormulaResult(error=str(e))
    except RecursionError:
        return FormulaResult(error="formula is nested too deeply")


def build_context(values_by_alias: Mapping[str, Any]) -> dict[str, Any]:
    """Build the evaluation context for a process-node firing.

    Args:
        values_by_alias: Consumed token value per input alias
    """
    context: dict[str, Any] = {"inputs": {}}
    for alias, value in values_by_alias.items():
        context["inputs"][alias] = {"value": value}
        context[alias] = {
            "value": value,
            "data": {"value": value, "aggregatedValue": value, "transformedValue": value},
        }
        context[f"{alias}Value"] = value
    return context


def describe_calculation(formula: str, values_by_alias: Mapping[str, Any], result: Any) -> str:
    """Human-readable calculation: formula, formula with values substituted, result.

    Example: ``A.value + B.value = 3 + 4 = 7``
    """
    substituted = formula
    # Longest alias first so "AB" is not clobbered by "A"
    for alias in sorted(values_by_alias, key=len, reverse=True):
        value_text = str(values_by_alias[alias])
        escaped = re.escape(alias)
        substituted = re.sub(rf"\binputs\.{escaped}\.value\b", value_text, substituted)
        substituted = re.sub(rf"\binputs\[['\"]{escaped}['\"]\]\.value\b", value_text, substituted)
        substituted = re.sub(rf"(?<![\w.]){escaped}(?:\.data)?\.(?:value|aggregatedValue|transformedValue)\b", value_text, substituted)
        substituted = re.sub(rf"(?<![\w.]){escaped}Value\b", value_text, substituted)
    return f"{formula} = {substituted} = {result}"
