"""Hand-written evaluator for condition steps.

Grammar::

    condition := operand [ operator operand ]
    operator  := "==" | "!=" | ">=" | "<=" | ">" | "<"
    operand   := identifier | number | quoted string | true | false | null

Identifiers resolve against the supplied scope; an identifier that is not in
scope is compared as a literal string. Nothing is ever passed to ``eval``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Mapping

from ..errors import ConditionSyntaxError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>==|!=|>=|<=|>|<)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "none": None}

_MISSING = object()


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


@dataclass(frozen=True)
class Operand:
    kind: str
    value: Any


@dataclass(frozen=True)
class Condition:
    left: Operand
    operator: str | None = None
    right: Operand | None = None


def tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    text = expression.strip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None or match.end() == position:
            raise ConditionSyntaxError(f"Unexpected input at {position} in condition {expression!r}")
        kind = match.lastgroup or ""
        tokens.append(_Token(kind=kind, text=match.group(kind)))
        position = match.end()
    return tokens


def parse(expression: str) -> Condition:
    tokens = tokenize(expression)
    if len(tokens) == 1:
        return Condition(left=_operand(tokens[0], expression))
    if len(tokens) == 3 and tokens[1].kind == "op":
        return Condition(
            left=_operand(tokens[0], expression),
            operator=tokens[1].text,
            right=_operand(tokens[2], expression),
        )
    raise ConditionSyntaxError(f"Condition {expression!r} must be 'operand' or 'operand OP operand'")


def _operand(token: _Token, expression: str) -> Operand:
    if token.kind == "op":
        raise ConditionSyntaxError(f"Operator {token.text!r} in operand position in {expression!r}")
    if token.kind == "string":
        body = token.text[1:-1]
        return Operand("literal", re.sub(r"\\(.)", r"\1", body))
    if token.kind == "number":
        number = float(token.text)
        return Operand("literal", int(number) if number.is_integer() and "." not in token.text else number)
    if token.text.lower() in _KEYWORDS:
        return Operand("literal", _KEYWORDS[token.text.lower()])
    return Operand("identifier", token.text)


def evaluate(expression: str, scope: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``scope``. Raises ConditionSyntaxError."""

    condition = parse(expression)
    left = _resolve(condition.left, scope)
    if condition.operator is None:
        return bool(left)
    right = _resolve(condition.right, scope)
    if condition.operator == "==":
        return _equal(left, right)
    if condition.operator == "!=":
        return not _equal(left, right)
    left_number = _as_number(left)
    right_number = _as_number(right)
    if left_number is None or right_number is None:
        return False
    if condition.operator == ">":
        return left_number > right_number
    if condition.operator == "<":
        return left_number < right_number
    if condition.operator == ">=":
        return left_number >= right_number
    return left_number <= right_number


def _resolve(operand: Operand | None, scope: Mapping[str, Any]) -> Any:
    if operand is None:
        return None
    if operand.kind == "literal":
        return operand.value
    value = scope.get(operand.value, _MISSING)
    return operand.value if value is _MISSING else value


def _equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    left_number = _as_number(left)
    right_number = _as_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    if left is None or right is None:
        return False
    return str(left) == str(right)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None
