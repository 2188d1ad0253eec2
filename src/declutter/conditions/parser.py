"""Text syntax for conditions: tokenizer, recursive-descent parser, serializer.

Grammar (keywords are case-insensitive)::

    expr    := and_expr ("OR" and_expr)*
    and_expr:= not_expr ("AND" not_expr)*
    not_expr:= "NOT" not_expr | primary
    primary := "(" expr ")" | GLOB | "QUOTED GLOB" | /REGEX/

A bare ``*`` (or empty text) is the match-everything condition. Chains of the
same operator collapse into a single n-ary node; explicit parentheses are kept
as nested nodes so ``serialize`` can reproduce the same tree.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import ConditionSyntaxError
from .models import (
    AlwaysCondition,
    AndCondition,
    Condition,
    GlobCondition,
    NotCondition,
    OrCondition,
    RegexCondition,
)

_KEYWORDS = {"AND", "OR", "NOT"}
_WORD_BREAKS = set("()")


@dataclass(slots=True)
class Token:
    """Lexical token with its source offset.

    Attributes:
        kind: One of ``and``, ``or``, ``not``, ``lparen``, ``rparen``, ``glob``,
            ``quoted`` or ``regex``.
        value: Literal payload for pattern tokens.
        position: Offset of the token's first character in the source text.
    """

    kind: str
    value: str
    position: int


def tokenize(text: str) -> List[Token]:
    """Split condition text into tokens.

    Args:
        text: Raw condition text.

    Returns:
        List[Token]: Tokens in source order.

    Raises:
        ConditionSyntaxError: If a regex literal or quoted glob is not terminated.
    """
    tokens: List[Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if char == "(":
            tokens.append(Token("lparen", char, index))
            index += 1
            continue
        if char == ")":
            tokens.append(Token("rparen", char, index))
            index += 1
            continue
        if char == "/":
            start = index
            pattern, index = _read_delimited(text, index, "/", keep_escapes=True)
            tokens.append(Token("regex", pattern, start))
            continue
        if char == '"':
            start = index
            value, index = _read_delimited(text, index, '"', keep_escapes=False)
            tokens.append(Token("quoted", value, start))
            continue

        start = index
        while index < length and not text[index].isspace() and text[index] not in _WORD_BREAKS:
            index += 1
        word = text[start:index]
        upper = word.upper()
        if upper in _KEYWORDS:
            tokens.append(Token(upper.lower(), word, start))
        else:
            tokens.append(Token("glob", word, start))
    return tokens


def _read_delimited(text: str, start: int, delimiter: str, *, keep_escapes: bool) -> tuple[str, int]:
    """Read a delimited literal starting at ``start`` and return (payload, next index).

    A backslash before the delimiter escapes it. Other backslash pairs are kept
    verbatim for regexes and unescaped for quoted globs.
    """
    chars: List[str] = []
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == "\\" and index + 1 < len(text):
            following = text[index + 1]
            if following == delimiter:
                chars.append(delimiter)
            elif keep_escapes:
                chars.append(char + following)
            else:
                chars.append(following)
            index += 2
            continue
        if char == delimiter:
            return "".join(chars), index + 1
        chars.append(char)
        index += 1
    label = "regex" if delimiter == "/" else "quoted pattern"
    raise ConditionSyntaxError(f"Unterminated {label}: missing closing {delimiter}", start)


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: List[Token], source: str) -> None:
        self._tokens = tokens
        self._source = source
        self._index = 0

    def parse(self) -> Condition:
        condition = self._parse_or()
        token = self._peek()
        if token is not None:
            if token.kind == "rparen":
                raise ConditionSyntaxError("Unbalanced closing parenthesis", token.position)
            raise ConditionSyntaxError(f"Unexpected token {token.value!r}", token.position)
        return condition

    # ---- Grammar levels ----

    def _parse_or(self) -> Condition:
        operands = [self._parse_and()]
        while self._accept("or"):
            operands.append(self._parse_and())
        if len(operands) == 1:
            return operands[0]
        return OrCondition(conditions=tuple(operands))

    def _parse_and(self) -> Condition:
        operands = [self._parse_not()]
        while self._accept("and"):
            operands.append(self._parse_not())
        if len(operands) == 1:
            return operands[0]
        return AndCondition(conditions=tuple(operands))

    def _parse_not(self) -> Condition:
        if self._accept("not"):
            return NotCondition(condition=self._parse_not())
        return self._parse_primary()

    def _parse_primary(self) -> Condition:
        token = self._peek()
        if token is None:
            previous = self._tokens[self._index - 1] if self._index else None
            if previous is not None and previous.kind in {"and", "or", "not"}:
                raise ConditionSyntaxError(
                    f"Dangling operator {previous.value!r}: expected a pattern after it",
                    previous.position,
                )
            raise ConditionSyntaxError("Unexpected end of expression", len(self._source))

        if token.kind == "lparen":
            self._index += 1
            closing = self._peek()
            if closing is not None and closing.kind == "rparen":
                raise ConditionSyntaxError("Empty parentheses", token.position)
            inner = self._parse_or()
            if not self._accept("rparen"):
                raise ConditionSyntaxError("Missing closing parenthesis", token.position)
            return inner

        if token.kind == "glob":
            self._index += 1
            if token.value == "*":
                return AlwaysCondition()
            return GlobCondition(pattern=token.value)

        if token.kind == "quoted":
            self._index += 1
            if not token.value:
                raise ConditionSyntaxError("Empty quoted pattern", token.position)
            return GlobCondition(pattern=token.value)

        if token.kind == "regex":
            self._index += 1
            if not token.value:
                raise ConditionSyntaxError("Empty regex", token.position)
            try:
                re.compile(token.value)
            except re.error as exc:
                raise ConditionSyntaxError(
                    f"Invalid regex /{token.value}/: {exc.msg}", token.position
                ) from exc
            return RegexCondition(pattern=token.value)

        if token.kind == "rparen":
            raise ConditionSyntaxError("Unbalanced closing parenthesis", token.position)
        raise ConditionSyntaxError(
            f"Dangling operator {token.value!r}: expected a pattern before it", token.position
        )

    # ---- Token helpers ----

    def _peek(self) -> Optional[Token]:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _accept(self, kind: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == kind:
            self._index += 1
            return True
        return False


def parse(text: str) -> Condition:
    """Parse condition text into a condition tree.

    Args:
        text: Condition text such as ``*.pdf AND NOT /draft/``.

    Returns:
        Condition: Parsed tree. Empty text and ``*`` yield ``AlwaysCondition``.

    Raises:
        ConditionSyntaxError: If the text is malformed or contains an invalid regex.
    """
    if not text.strip():
        return AlwaysCondition()
    return _Parser(tokenize(text), text).parse()


def validate(text: str) -> None:
    """Raise ``ConditionSyntaxError`` when ``text`` does not parse."""
    parse(text)


def serialize(condition: Condition) -> str:
    """Render a condition tree as canonical text that re-parses to the same tree.

    Args:
        condition: Condition tree to render.

    Returns:
        str: Condition text using upper-case keywords and single spaces.
    """
    if isinstance(condition, AlwaysCondition):
        return "*"
    if isinstance(condition, GlobCondition):
        return _render_glob(condition.pattern)
    if isinstance(condition, RegexCondition):
        return f"/{_escape_regex(condition.pattern)}/"
    if isinstance(condition, NotCondition):
        child = condition.condition
        inner = serialize(child)
        if isinstance(child, (AndCondition, OrCondition)):
            return f"NOT ({inner})"
        return f"NOT {inner}"
    if isinstance(condition, AndCondition):
        return " AND ".join(
            f"({serialize(child)})" if isinstance(child, (AndCondition, OrCondition)) else serialize(child)
            for child in condition.conditions
        )
    if isinstance(condition, OrCondition):
        return " OR ".join(
            f"({serialize(child)})" if isinstance(child, OrCondition) else serialize(child)
            for child in condition.conditions
        )
    raise TypeError(f"Unsupported condition node: {condition!r}")


def _render_glob(pattern: str) -> str:
    bare_safe = (
        bool(pattern)
        and pattern != "*"
        and pattern.upper() not in _KEYWORDS
        and pattern[0] not in '/"'
        and not any(char.isspace() or char in _WORD_BREAKS for char in pattern)
    )
    if bare_safe:
        return pattern
    escaped = pattern.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _escape_regex(pattern: str) -> str:
    # Existing backslash pairs pass through untouched; only bare delimiters need escaping.
    out: List[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            out.append(pattern[index : index + 2])
            index += 2
            continue
        out.append("\\/" if char == "/" else char)
        index += 1
    return "".join(out)


__all__ = ["Token", "tokenize", "parse", "validate", "serialize"]
