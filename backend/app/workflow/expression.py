"""Small boolean expression language evaluated by condition stages.

Grammar::

    expr       := or
    or         := and ('||' and)*
    and        := not ('&&' not)*
    not        := '!' not | comparison
    comparison := '(' or ')' | value (op value)?
    op         := '>' | '<' | '>=' | '<=' | '==' | '!='

A value is a quoted string, a number, ``true``/``false`` or an identifier
looked up in the run context. An identifier missing from the context
evaluates to its own name.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from typing import Any

EPSILON = 0.0001

_TWO_CHAR_OPERATORS = {"&&", "||", ">=", "<=", "==", "!="}
_SINGLE_CHAR_TOKENS = {"(", ")", ">", "<", "!"}
_WORD_TERMINATORS = set("()<>=!&|")
_COMPARISON_OPERATORS = {">", "<", ">=", "<=", "==", "!="}
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_FALSY_STRINGS = {"", "false", "0"}


def tokenize(expression: str) -> list[str]:
    """Split an expression into operator, parenthesis, string and word tokens."""

    tokens: list[str] = []
    index = 0
    length = len(expression)
    while index < length:
        char = expression[index]
        if char.isspace():
            index += 1
            continue

        pair = expression[index : index + 2]
        if pair in _TWO_CHAR_OPERATORS:
            tokens.append(pair)
            index += 2
            continue

        if char in _SINGLE_CHAR_TOKENS:
            tokens.append(char)
            index += 1
            continue

        if char in ("'", '"'):
            end = expression.find(char, index + 1)
            if end == -1:
                tokens.append(expression[index:])
                break
            tokens.append(expression[index : end + 1])
            index = end + 1
            continue

        end = index
        while (
            end < length
            and not expression[end].isspace()
            and expression[end] not in _WORD_TERMINATORS
        ):
            end += 1
        if end == index:
            # Stray '=', '&' or '|' become literal tokens.
            tokens.append(char)
            index += 1
            continue
        tokens.append(expression[index:end])
        index = end
    return tokens


def to_number(value: Any) -> float | None:
    """Return ``value`` as a float when it is numeric or a numeric string."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.fullmatch(value):
        return float(value)
    return None


def canonical_text(value: Any) -> str:
    """Text form used when a comparison falls back to string ordering."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def compare(left: Any, operator: str, right: Any) -> bool:
    left_number = to_number(left)
    right_number = to_number(right)
    if left_number is not None and right_number is not None:
        if operator == ">":
            return left_number > right_number
        if operator == "<":
            return left_number < right_number
        if operator == ">=":
            return left_number >= right_number
        if operator == "<=":
            return left_number <= right_number
        if operator == "==":
            return abs(left_number - right_number) < EPSILON
        if operator == "!=":
            return abs(left_number - right_number) >= EPSILON
        return False

    left_text = canonical_text(left)
    right_text = canonical_text(right)
    if operator == "==":
        return left_text == right_text
    if operator == "!=":
        return left_text != right_text
    if operator == ">":
        return left_text > right_text
    if operator == "<":
        return left_text < right_text
    if operator == ">=":
        return left_text >= right_text
    if operator == "<=":
        return left_text <= right_text
    return False


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value not in _FALSY_STRINGS
    return True


class _Parser:
    """Recursive descent evaluator over a token list."""

    def __init__(self, tokens: list[str], context: Mapping[str, Any]) -> None:
        self._tokens = tokens
        self._position = 0
        self._context = context

    def _peek(self) -> str:
        if self._position >= len(self._tokens):
            return ""
        return self._tokens[self._position]

    def _next(self) -> str:
        token = self._peek()
        self._position += 1
        return token

    def parse_or(self) -> bool:
        result = self._parse_and()
        while self._peek() == "||":
            self._next()
            right = self._parse_and()
            result = result or right
        return result

    def _parse_and(self) -> bool:
        result = self._parse_not()
        while self._peek() == "&&":
            self._next()
            right = self._parse_not()
            result = result and right
        return result

    def _parse_not(self) -> bool:
        if self._peek() == "!":
            self._next()
            return not self._parse_not()
        return self._parse_comparison()

    def _parse_comparison(self) -> bool:
        if self._peek() == "(":
            self._next()
            result = self.parse_or()
            if self._peek() == ")":
                self._next()
            return result

        left = self._parse_value()
        operator = self._peek()
        if operator in _COMPARISON_OPERATORS:
            self._next()
            right = self._parse_value()
            return compare(left, operator, right)
        return is_truthy(left)

    def _parse_value(self) -> Any:
        token = self._next()
        if token == "":
            return None
        if token == "true":
            return True
        if token == "false":
            return False
        if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
            return token[1:-1]
        if _NUMBER_RE.fullmatch(token):
            return float(token)
        if token in self._context:
            return self._context[token]
        return token


def evaluate(expression: str | None, context: Mapping[str, Any] | None = None) -> bool:
    """Evaluate ``expression`` against ``context``; an empty expression is false."""

    tokens = tokenize(expression or "")
    if not tokens:
        return False
    return _Parser(tokens, context or {}).parse_or()
