# src/tokenflow/engine/aggregation.py
"""Queue window reductions with per-input contribution breakdowns."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from tokenflow.contracts import AggregationDetails, AggregationMethod, InputContribution, Token
from tokenflow.engine.formula import MAX_RESULT_BITS, FormulaEvaluationError, normalize_number


@dataclass(frozen=True)
class AggregateOutcome:
    """Reduced value, its breakdown, and any coercion problems found on the way."""

    value: Any
    details: AggregationDetails
    problems: list[str] = field(default_factory=list)


def coerce_number(value: Any) -> tuple[int | float, str | None]:
    """Coerce a token value to a number for sum/average.

    Returns:
        (number, problem) where problem is None when coercion was clean.
        Values that cannot be read as a number count as 0.
    """
    if isinstance(value, bool):
        return int(value), None
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        return 0, f"integer wider than {MAX_RESULT_BITS} bits counted as 0"
    if isinstance(value, int | float):
        if isinstance(value, float) and not math.isfinite(value):
            return 0, f"non-finite value {value!r} counted as 0"
        return value, None
    if value is None:
        return 0, None
    if isinstance(value, str):
        try:
            return normalize_number(float(value.strip())), None
        except (ValueError, FormulaEvaluationError):
            return 0, f"non-numeric value {value!r} counted as 0"
    return 0, f"non-numeric value of type {type(value).__name__} counted as 0"


def _fmt(value: Any) -> str:
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        return f"<{value.bit_length()}-bit integer>"
    return str(value)


def aggregate(method: AggregationMethod, tokens: Sequence[Token]) -> AggregateOutcome:
    """Reduce a non-empty batch in buffer order.

    Raises:
        ValueError: If tokens is empty (callers check for the empty window)
    """
    if not tokens:
        raise ValueError("Cannot aggregate an empty batch")

    count = len(tokens)
    ids = ", ".join(t.id for t in tokens)

    if method in (AggregationMethod.FIRST, AggregationMethod.LAST):
        chosen = tokens[0] if method == AggregationMethod.FIRST else tokens[-1]
        contributions = tuple(InputContribution(t.id, t.value, 1.0 if t is chosen else 0.0) for t in tokens)
        calculation = f"{method.value}([{ids}]) = {chosen.id} (value: {_fmt(chosen.value)})"
        details = AggregationDetails(method, contributions, calculation, chosen.value)
        return AggregateOutcome(value=chosen.value, details=details)

    if method == AggregationMethod.COUNT:
        contributions = tuple(InputContribution(t.id, t.value, 1.0 / count) for t in tokens)
        details = AggregationDetails(method, contributions, f"count([{ids}]) = {count}", count)
        return AggregateOutcome(value=count, details=details)

    problems: list[str] = []
    numbers: list[int | float] = []
    for token in tokens:
        number, problem = coerce_number(token.value)
        if problem is not None:
            problems.append(f"Token {token.id}: {problem}")
        numbers.append(number)

    total = sum(numbers)
    terms = [_fmt(n) for n in numbers]
    if method == AggregationMethod.SUM:
        calculation = f"sum({', '.join(terms)}) = {' + '.join(terms)} = {{result}}"
    else:
        calculation = f"avg({', '.join(terms)}) = ({' + '.join(terms)})/{count} = {{total}}/{count} = {{result}}"

    # True division of huge ints overflows float
    divisor = total if method == AggregationMethod.SUM else count
    try:
        result = normalize_number(total if method == AggregationMethod.SUM else total / count)
        total = normalize_number(total)
    except (FormulaEvaluationError, ArithmeticError) as e:
        problems.append(f"{method.value} overflowed ({e}); result counted as 0")
        result = 0
    try:
        weights = [(n / divisor) if divisor else 0.0 for n in numbers]
    except OverflowError:
        problems.append("contribution shares overflowed; reported as 0")
        weights = [0.0] * count
    contributions = tuple(InputContribution(t.id, t.value, w) for t, w in zip(tokens, weights, strict=True))

    calculation = calculation.format(result=_fmt(result), total=_fmt(total))
    details = AggregationDetails(method, contributions, calculation, result)
    return AggregateOutcome(value=result, details=details, problems=problems)
