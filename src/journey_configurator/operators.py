from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Union


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

Scalar = Union[str, int, float, bool, None]
Value = Union[Scalar, tuple[Scalar, ...], _Missing]

NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")


class Operator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    IN = "IN"
    NOT_IN = "NOT_IN"
    CONTAINS = "CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"


OPERATOR_ALIASES = {
    "GREATER_THAN": Operator.GT,
    "GREATER_THAN_OR_EQUALS": Operator.GTE,
    "LESS_THAN": Operator.LT,
    "LESS_THAN_OR_EQUALS": Operator.LTE,
}

ORDERING_OPERATORS = {Operator.GT, Operator.GTE, Operator.LT, Operator.LTE}
UNARY_OPERATORS = {Operator.EXISTS, Operator.NOT_EXISTS}


class UnknownOperatorError(ValueError):
    """Raised when an authored operator name is not recognised."""


@dataclass(slots=True, frozen=True)
class OperatorResult:
    matched: bool
    diagnostic: str | None = None


def parse_operator(raw: Any) -> Operator:
    name = str(raw or "").strip().upper()
    if name in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[name]
    try:
        return Operator(name)
    except ValueError:
        raise UnknownOperatorError(f"unknown operator: {raw!r}") from None


def coerce_value(raw: Any) -> Value:
    """Normalise an authored operand: numeric strings become numbers, lists become tuples."""
    if isinstance(raw, bool) or raw is None or raw is MISSING:
        return raw
    if isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if NUMERIC_PATTERN.fullmatch(text):
            number = float(text)
            if number.is_integer() and re.fullmatch(r"[+-]?\d+", text):
                return int(text)
            return number
        return raw
    if isinstance(raw, (list, tuple)):
        return tuple(coerce_value(item) for item in raw)
    return raw


def value_kind(value: Any) -> str:
    if value is MISSING:
        return "absent"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def is_present(value: Any) -> bool:
    return value is not MISSING and value is not None and value != ""


def values_equal(left: Any, right: Any) -> bool:
    left_kind = value_kind(left)
    if left_kind != value_kind(right) or left_kind == "absent":
        return False
    if left_kind == "array":
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right, strict=True)
        )
    return bool(left == right)


def _parse_temporal(text: str) -> datetime | None:
    if not ISO_DATE_PATTERN.match(text):
        return None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(candidate)
        except ValueError:
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day)
    return parsed


def _ordering_operands(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    actual_kind = value_kind(actual)
    expected_kind = value_kind(expected)
    if actual_kind == "number" and expected_kind == "number":
        return actual, expected
    if actual_kind == "string" and expected_kind == "string":
        left = _parse_temporal(actual)
        right = _parse_temporal(expected)
        if left is None or right is None:
            return None
        if (left.tzinfo is None) != (right.tzinfo is None):
            return None
        return left, right
    return None


def _compare(operator: Operator, actual: Any, expected: Any) -> OperatorResult:
    operands = _ordering_operands(actual, expected)
    if operands is None:
        return OperatorResult(
            False,
            f"{operator.value} is not defined for {value_kind(actual)} and {value_kind(expected)}",
        )
    left, right = operands
    if operator is Operator.GT:
        return OperatorResult(left > right)
    if operator is Operator.GTE:
        return OperatorResult(left >= right)
    if operator is Operator.LT:
        return OperatorResult(left < right)
    return OperatorResult(left <= right)


def _membership(operator: Operator, actual: Any, expected: Any) -> OperatorResult:
    if value_kind(expected) != "array":
        return OperatorResult(False, f"{operator.value} requires an array operand, got {value_kind(expected)}")
    found = any(values_equal(actual, item) for item in expected)
    return OperatorResult(found if operator is Operator.IN else not found)


def _contains(actual: Any, expected: Any) -> OperatorResult:
    actual_kind = value_kind(actual)
    if actual_kind == "string":
        if value_kind(expected) != "string":
            return OperatorResult(False, f"CONTAINS on a string needs a string operand, got {value_kind(expected)}")
        return OperatorResult(expected in actual)
    if actual_kind == "array":
        return OperatorResult(any(values_equal(item, expected) for item in actual))
    return OperatorResult(False, f"CONTAINS is not defined for {actual_kind}")


def _affix(operator: Operator, actual: Any, expected: Any) -> OperatorResult:
    if value_kind(actual) != "string" or value_kind(expected) != "string":
        return OperatorResult(
            False,
            f"{operator.value} is not defined for {value_kind(actual)} and {value_kind(expected)}",
        )
    if operator is Operator.STARTS_WITH:
        return OperatorResult(actual.startswith(expected))
    return OperatorResult(actual.endswith(expected))


def apply_operator(operator: Operator, actual: Any, expected: Any = MISSING) -> OperatorResult:
    if operator is Operator.EXISTS:
        return OperatorResult(is_present(actual))
    if operator is Operator.NOT_EXISTS:
        return OperatorResult(not is_present(actual))
    if operator is Operator.EQUALS:
        return OperatorResult(values_equal(actual, expected))
    if operator is Operator.NOT_EQUALS:
        return OperatorResult(not values_equal(actual, expected))
    if operator in ORDERING_OPERATORS:
        return _compare(operator, actual, expected)
    if operator in (Operator.IN, Operator.NOT_IN):
        return _membership(operator, actual, expected)
    if operator is Operator.CONTAINS:
        return _contains(actual, expected)
    return _affix(operator, actual, expected)
