"""
Conditional dependency expressions.

A condition is evaluated against the upstream subtask's result payload.
Grammar:

    [not] <key>                  truthiness of a result value
    <key> <op> <literal>         op in == != > >= < <=

``key`` may be a dotted path into nested result dicts. A literal is a
number, ``true``/``false``/``null``, a quoted string, or a bare word.
A key missing from the result makes the condition false.
"""

from __future__ import annotations

import json
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from swarmplane.errors import InvalidDependencyGraph

_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

_PATTERN = re.compile(
    r"^\s*(?P<negate>not\s+)?(?P<key>[A-Za-z_][\w.\-]*)"
    r"(?:\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.+?))?\s*$"
)

_MISSING = object()


@dataclass(frozen=True)
class ParsedCondition:
    key: str
    op: Optional[str] = None
    literal: Any = None
    negate: bool = False


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        return text


def parse_condition(expression: str) -> ParsedCondition:
    match = _PATTERN.match(expression or "")
    if match is None:
        raise InvalidDependencyGraph(f"unparseable condition {expression!r}")
    if match.group("negate") and match.group("op"):
        raise InvalidDependencyGraph(f"'not' cannot be combined with a comparison: {expression!r}")
    literal = _parse_literal(match.group("literal")) if match.group("op") else None
    return ParsedCondition(
        key=match.group("key"),
        op=match.group("op"),
        literal=literal,
        negate=bool(match.group("negate")),
    )


def _lookup(result: dict[str, Any], key: str) -> Any:
    value: Any = result
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def evaluate_condition(expression: str, result: dict[str, Any]) -> bool:
    """Evaluate ``expression`` against an upstream result payload."""
    parsed = parse_condition(expression)
    value = _lookup(result, parsed.key)
    if value is _MISSING:
        return False
    if parsed.op is None:
        return not bool(value) if parsed.negate else bool(value)
    literal = parsed.literal
    if isinstance(literal, (int, float)) and not isinstance(literal, bool) and isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False
    try:
        return bool(_OPS[parsed.op](value, literal))
    except TypeError:
        return False
