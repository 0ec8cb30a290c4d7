"""Record condition evaluation for route branches and filter steps.

Conditions come in two forms.  The structured form is a mapping::

    {"field": "customer.country", "cmp": "in", "value": ["DE", "AT"]}
    {"all": [cond, ...]}      # every condition must match
    {"any": [cond, ...]}      # at least one condition must match

The string form is a ``&&``-joined list of comparisons::

    'status = "active" && total >= 100'

Both use dotted paths into nested records and no ``eval``.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Mapping

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {}

_MISSING = object()


class ConditionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""


def get_field(record: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Return the value at dotted *path* in *record*, or *default*."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def set_field(record: dict[str, Any], path: str, value: Any) -> None:
    """Set dotted *path* in *record*, creating intermediate mappings."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def remove_field(record: dict[str, Any], path: str) -> None:
    """Remove dotted *path* from *record* if present."""
    parts = path.split(".")
    current: Any = record
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _operator(name: str) -> Callable[[Callable[[Any, Any], bool]], Callable[[Any, Any], bool]]:
    def register(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
        OPERATORS[name] = fn
        return fn

    return register


def _ordered(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        if actual is _MISSING or actual is None or expected is None:
            return False
        try:
            return fn(actual, expected)
        except TypeError:
            return fn(str(actual), str(expected))

    return compare


@_operator("eq")
def _eq(actual: Any, expected: Any) -> bool:
    return actual is not _MISSING and actual == expected


@_operator("ne")
def _ne(actual: Any, expected: Any) -> bool:
    return not _eq(actual, expected)


OPERATORS["gt"] = _ordered(lambda a, b: a > b)
OPERATORS["lt"] = _ordered(lambda a, b: a < b)
OPERATORS["gte"] = _ordered(lambda a, b: a >= b)
OPERATORS["lte"] = _ordered(lambda a, b: a <= b)


@_operator("in")
def _in(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple, set)) and actual in expected


@_operator("notIn")
def _not_in(actual: Any, expected: Any) -> bool:
    return isinstance(expected, (list, tuple, set)) and actual not in expected


@_operator("contains")
def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return actual not in (_MISSING, None) and str(expected) in str(actual)


@_operator("notContains")
def _not_contains(actual: Any, expected: Any) -> bool:
    return not _contains(actual, expected)


@_operator("startsWith")
def _starts_with(actual: Any, expected: Any) -> bool:
    return actual not in (_MISSING, None) and str(actual).startswith(str(expected))


@_operator("endsWith")
def _ends_with(actual: Any, expected: Any) -> bool:
    return actual not in (_MISSING, None) and str(actual).endswith(str(expected))


@_operator("regex")
def _regex(actual: Any, expected: Any) -> bool:
    if actual in (_MISSING, None):
        return False
    try:
        return re.search(str(expected), str(actual)) is not None
    except re.error as exc:
        raise ConditionError(f"Invalid regex {expected!r}: {exc}") from exc


OPERATORS["matches"] = _regex


@_operator("exists")
def _exists(actual: Any, expected: Any) -> bool:
    present = actual is not _MISSING
    return present if expected in (None, True) else not present


@_operator("isNull")
def _is_null(actual: Any, expected: Any) -> bool:
    is_null = actual is _MISSING or actual is None
    return is_null if expected in (None, True) else not is_null


@_operator("truthy")
def _truthy(actual: Any, expected: Any) -> bool:
    return actual is not _MISSING and bool(actual)


@_operator("isNotNull")
def _is_not_null(actual: Any, expected: Any) -> bool:
    return not _is_null(actual, True)


# String-form operators, longest first so ">=" wins over ">".
_SYMBOLS: list[tuple[str, str]] = [
    ("!=", "ne"),
    (">=", "gte"),
    ("<=", "lte"),
    ("=", "eq"),
    (">", "gt"),
    ("<", "lt"),
]


def evaluate(condition: Any, record: Mapping[str, Any]) -> bool:
    """Evaluate *condition* against *record*.

    Args:
        condition: Structured mapping, string expression, or ``None``
            (always true).
        record: The record to test.

    Returns:
        Whether the record matches.

    Raises:
        ConditionError: If the condition is malformed.
    """
    if condition is None or condition == "":
        return True
    if isinstance(condition, str):
        return all(
            _evaluate_structured(clause, record)
            for clause in parse_expression(condition)
        )
    if isinstance(condition, Mapping):
        return _evaluate_structured(condition, record)
    if isinstance(condition, list):
        return all(evaluate(c, record) for c in condition)
    raise ConditionError(f"Unsupported condition: {condition!r}")


def _evaluate_structured(condition: Mapping[str, Any], record: Mapping[str, Any]) -> bool:
    if "all" in condition:
        return all(evaluate(c, record) for c in condition["all"])
    if "any" in condition:
        return any(evaluate(c, record) for c in condition["any"])
    field = condition.get("field")
    if not field:
        raise ConditionError(f"Condition is missing 'field': {dict(condition)!r}")
    op_name = condition.get("cmp") or condition.get("operator") or "eq"
    op = OPERATORS.get(op_name)
    if op is None:
        raise ConditionError(f"Unsupported operator {op_name!r}")
    actual = get_field(record, field, _MISSING)
    return op(actual, condition.get("value"))


def parse_expression(expression: str) -> list[dict[str, Any]]:
    """Parse a ``&&``-joined string expression into structured clauses.

    A bare field name is a truthiness check.

    Raises:
        ConditionError: On empty clauses or keys.
    """
    clauses: list[dict[str, Any]] = []
    for raw in expression.split("&&"):
        clause = raw.strip()
        if not clause:
            raise ConditionError(f"Empty clause in condition: {expression!r}")
        for symbol, op in _SYMBOLS:
            if symbol in clause:
                key, _, literal = clause.partition(symbol)
                key = key.strip()
                if not key:
                    raise ConditionError(f"Invalid condition syntax: {clause!r}")
                clauses.append(
                    {"field": key, "cmp": op, "value": _parse_literal(literal.strip())}
                )
                break
        else:
            clauses.append({"field": clause, "cmp": "truthy"})
    return clauses


def validate_condition(condition: Any) -> str | None:
    """Check whether *condition* is well-formed.

    Returns:
        ``None`` if valid, or an error message string.
    """
    try:
        if isinstance(condition, str):
            parse_expression(condition)
        elif isinstance(condition, Mapping):
            _validate_structured(condition)
        elif condition is not None:
            return f"Unsupported condition type: {type(condition).__name__}"
    except ConditionError as exc:
        return str(exc)
    return None


def _validate_structured(condition: Mapping[str, Any]) -> None:
    for group in ("all", "any"):
        if group in condition:
            for child in condition[group]:
                error = validate_condition(child)
                if error:
                    raise ConditionError(error)
            return
    if not condition.get("field"):
        raise ConditionError("Condition is missing 'field'")
    op_name = condition.get("cmp") or condition.get("operator") or "eq"
    if op_name not in OPERATORS:
        raise ConditionError(f"Unsupported operator {op_name!r}")


def _parse_literal(raw: str) -> Any:
    """Parse a literal: quoted string, boolean, null, number, or bare word."""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ('"', "'"):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered == "null":
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    return raw
