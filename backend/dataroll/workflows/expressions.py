"""Small condition evaluator: a context lookup compared against an operand."""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from .errors import ValidationError
from .templating import lookup

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "not_contains")

_EXPRESSION = re.compile(
    r"^(?P<path>[A-Za-z_$][\w$-]*(?:\.[\w$-]+)*)\s*(?P<op>===|!==|==|!=|>=|<=|>|<)\s*(?P<literal>.+)$"
)
_PATH = re.compile(r"^[A-Za-z_$][\w$-]*(?:\.[\w$-]+)*$")


def parse_literal(text: str) -> Any:
    text = text.strip()
    try:
        return json.loads(text)
    except ValueError:
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
            return text[1:-1]
        return text


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numbers(left: Any, right: Any) -> bool:
    return _is_number(left) and _is_number(right)


def _equals(left: Any, right: Any) -> bool:
    if _numbers(left, right):
        return float(left) == float(right)
    return type(left) is type(right) and left == right


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return isinstance(right, str) and right in left
    if isinstance(left, list):
        return any(_equals(item, right) for item in left)
    if isinstance(left, Mapping):
        return isinstance(right, str) and right in left
    return False


def compare(left: Any, operator: str, right: Any) -> bool:
    """Apply one of the named operators.

    Ordering needs numbers on both sides and equality never converts types;
    anything else compares false.
    """

    if operator == "equals":
        return _equals(left, right)
    if operator == "not_equals":
        return not _equals(left, right)
    if operator == "greater_than":
        return _numbers(left, right) and left > right
    if operator == "less_than":
        return _numbers(left, right) and left < right
    if operator == "contains":
        return _contains(left, right)
    if operator == "not_contains":
        return not _contains(left, right)
    raise ValidationError(f"unsupported operator '{operator}'")


_SYMBOLS = {
    "==": "equals",
    "===": "equals",
    "!=": "not_equals",
    "!==": "not_equals",
    ">": "greater_than",
    "<": "less_than",
}


def _unsupported(text: str) -> ValidationError:
    return ValidationError(f"unsupported condition '{text}'; use 'path <op> value' comparisons")


def check_condition(condition: str, operator: str | None = None, mode: str = "boolean") -> None:
    """Raise ValidationError unless the evaluator understands ``condition``."""

    text = condition.strip()
    if operator is not None or mode == "switch":
        if not _PATH.match(text):
            reason = "an operator is set" if operator is not None else "switching on it"
            raise ValidationError(f"condition '{text}' must be a context path when {reason}")
        return
    if not (_PATH.match(text) or _EXPRESSION.match(text)):
        raise _unsupported(text)


def evaluate_expression(expression: str, scope: Mapping[str, Any]) -> bool:
    """Evaluate ``path <op> literal`` or a bare ``path`` (truthiness)."""

    expression = expression.strip()
    if _PATH.match(expression):
        return bool(lookup(scope, expression))

    match = _EXPRESSION.match(expression)
    if match is None:
        raise _unsupported(expression)

    left = lookup(scope, match.group("path"))
    symbol = match.group("op")
    right = parse_literal(match.group("literal"))
    if symbol in _SYMBOLS:
        return compare(left, _SYMBOLS[symbol], right)

    if not _numbers(left, right):
        return False
    if symbol == ">=":
        return left >= right
    return left <= right


def evaluate(
    condition: str, scope: Mapping[str, Any], operator: str | None = None, value: Any = None
) -> bool:
    """Evaluate a condition node: ``operator`` compares the looked-up path with ``value``."""

    if operator is None:
        return evaluate_expression(condition, scope)
    check_condition(condition, operator)
    return compare(lookup(scope, condition.strip()), operator, value)
