"""Recursive-descent parser for guard and formula strings.

Precedence, lowest first: OR, AND, NOT, comparison / IN, additive, primary.
Without parentheses `a OR b AND c` therefore reads as `a OR (b AND c)`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import NoReturn

from crm_lifecycle.statemachine.errors import ExpressionSyntaxError
from crm_lifecycle.statemachine.expressions.ast import (
    And,
    Arithmetic,
    Comparison,
    Expression,
    FieldRef,
    FunctionCall,
    In,
    Literal,
    Node,
    Not,
    Or,
)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<placeholder>\$\{\s*(?P<placeholder_path>[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\})
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<op>>=|<=|!=|<>|=|>|<|\+|-|\(|\)|\[|\]|,)
  | (?P<ident>[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"AND", "OR", "NOT", "IN", "TRUE", "FALSE", "NULL"}
_COMPARISON_OPS = {"=", "!=", "<>", ">", ">=", "<", "<="}

DURATION_UNITS: dict[str, timedelta] = {
    "SECOND": timedelta(seconds=1),
    "MINUTE": timedelta(minutes=1),
    "HOUR": timedelta(hours=1),
    "DAY": timedelta(days=1),
    "WEEK": timedelta(weeks=1),
}

# name -> arity
FUNCTIONS: dict[str, int] = {
    "NOW": 0,
    "DAYS_BETWEEN": 2,
    "HOURS_BETWEEN": 2,
}


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    pos: int


def _unit_delta(word: str) -> timedelta | None:
    upper = word.upper()
    if upper.endswith("S"):
        upper = upper[:-1]
    return DURATION_UNITS.get(upper)


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionSyntaxError(source, pos, f"Unexpected character {source[pos]!r}")
        kind = match.lastgroup or ""
        if kind == "placeholder_path":
            kind = "placeholder"
        if kind == "placeholder":
            tokens.append(_Token("field", match.group("placeholder_path"), pos))
        elif kind == "ident":
            text = match.group(kind)
            if text.upper() in _KEYWORDS:
                tokens.append(_Token("kw", text.upper(), pos))
            else:
                tokens.append(_Token("ident", text, pos))
        elif kind != "ws":
            tokens.append(_Token(kind, match.group(kind), pos))
        pos = match.end()
    tokens.append(_Token("eof", "", len(source)))
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    def __init__(self, source: str) -> None:
        self._source = source
        self._tokens = _tokenize(source)
        self._i = 0

    # -- token helpers -------------------------------------------------

    def _peek(self, offset: int = 0) -> _Token:
        idx = min(self._i + offset, len(self._tokens) - 1)
        return self._tokens[idx]

    def _advance(self) -> _Token:
        tok = self._tokens[self._i]
        self._i += 1
        return tok

    def _is(self, kind: str, text: str | None = None, offset: int = 0) -> bool:
        tok = self._peek(offset)
        return tok.kind == kind and (text is None or tok.text == text)

    def _expect(self, kind: str, text: str) -> _Token:
        if not self._is(kind, text):
            self._fail(f"Expected {text!r}")
        return self._advance()

    def _fail(self, message: str) -> NoReturn:
        tok = self._peek()
        found = tok.text or "end of expression"
        raise ExpressionSyntaxError(self._source, tok.pos, f"{message}, found {found!r}")

    # -- grammar -------------------------------------------------------

    def parse(self) -> Node:
        if self._is("eof"):
            self._fail("Empty expression")
        node = self._or()
        if not self._is("eof"):
            self._fail("Unexpected trailing input")
        return node

    def _or(self) -> Node:
        operands = [self._and()]
        while self._is("kw", "OR"):
            self._advance()
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._is("kw", "AND"):
            self._advance()
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Node:
        if self._is("kw", "NOT"):
            self._advance()
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._additive()
        tok = self._peek()
        if tok.kind == "op" and tok.text in _COMPARISON_OPS:
            self._advance()
            op = "!=" if tok.text == "<>" else tok.text
            return Comparison(op, left, self._additive())
        if self._is("kw", "IN"):
            self._advance()
            return In(left, self._option_list())
        if self._is("kw", "NOT") and self._is("kw", "IN", offset=1):
            self._advance()
            self._advance()
            return In(left, self._option_list(), negated=True)
        return left

    def _option_list(self) -> tuple[Node, ...]:
        if self._is("op", "["):
            closing = "]"
        elif self._is("op", "("):
            closing = ")"
        else:
            self._fail("Expected a list after IN")
        self._advance()
        options: list[Node] = []
        while not self._is("op", closing):
            tok = self._peek()
            # Bare words in a membership list are enum values: [High, Critical].
            if tok.kind == "ident" and not self._is("op", "(", offset=1):
                self._advance()
                options.append(Literal(tok.text))
            else:
                options.append(self._additive())
            if self._is("op", ","):
                self._advance()
            elif not self._is("op", closing):
                self._fail(f"Expected ',' or {closing!r}")
        self._advance()
        return tuple(options)

    def _additive(self) -> Node:
        node = self._primary()
        while self._is("op", "+") or self._is("op", "-"):
            op = self._advance().text
            node = Arithmetic(op, node, self._primary())
        return node

    def _primary(self) -> Node:
        tok = self._peek()

        if tok.kind == "number" or (self._is("op", "-") and self._is("number", offset=1)):
            negative = tok.kind == "op"
            if negative:
                self._advance()
            raw = self._advance().text
            number: int | float = float(raw) if "." in raw else int(raw)
            if negative:
                number = -number
            nxt = self._peek()
            if nxt.kind == "ident" and _unit_delta(nxt.text) is not None:
                self._advance()
                return Literal(_unit_delta(nxt.text) * number)  # type: ignore[operator]
            return Literal(number)

        if tok.kind == "string":
            self._advance()
            return Literal(_unquote(tok.text))

        if tok.kind == "kw" and tok.text in {"TRUE", "FALSE", "NULL"}:
            self._advance()
            return Literal({"TRUE": True, "FALSE": False, "NULL": None}[tok.text])

        if tok.kind == "field":
            self._advance()
            return FieldRef(tuple(tok.text.split(".")))

        if tok.kind == "ident":
            self._advance()
            if self._is("op", "("):
                return self._call(tok)
            return FieldRef(tuple(tok.text.split(".")))

        if self._is("op", "("):
            self._advance()
            inner = self._or()
            self._expect("op", ")")
            return inner

        self._fail("Expected a value")

    def _call(self, name_tok: _Token) -> Node:
        name = name_tok.text.upper()
        if name not in FUNCTIONS:
            raise ExpressionSyntaxError(
                self._source, name_tok.pos, f"Unknown function {name_tok.text!r}"
            )
        self._expect("op", "(")
        args: list[Node] = []
        while not self._is("op", ")"):
            args.append(self._or())
            if self._is("op", ","):
                self._advance()
            elif not self._is("op", ")"):
                self._fail("Expected ',' or ')'")
        self._advance()
        if len(args) != FUNCTIONS[name]:
            raise ExpressionSyntaxError(
                self._source,
                name_tok.pos,
                f"{name}() takes {FUNCTIONS[name]} argument(s), got {len(args)}",
            )
        return FunctionCall(name, tuple(args))


def parse_expression(source: str) -> Expression:
    """Parse a guard or formula string.

    Raises:
        ExpressionSyntaxError: If the string is not a valid expression.
    """

    return Expression(source=source, root=_Parser(source).parse())


def parse_duration(duration: float, unit: str) -> timedelta:
    """Convert a `(duration, unit)` pair from a definition into a timedelta."""

    delta = _unit_delta(unit)
    if delta is None:
        raise ValueError(f"Unknown duration unit: {unit!r}")
    return delta * duration
