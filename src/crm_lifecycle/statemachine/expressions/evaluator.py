"""Evaluation of parsed expressions against an entity context.

Guards never raise: an unresolved field path (a missing field, or a null hop in
a dotted relationship reference such as `owner.manager.email` when the owner has
no manager) makes the containing comparison false. Formulas reuse the same AST
but raise `ExpressionEvaluationError` instead, so a broken field computation can
abort its transition.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Protocol

from crm_lifecycle.statemachine.errors import ExpressionEvaluationError
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

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}")


class EntityResolver(Protocol):
    """Traverses relationships for dotted field references.

    `resolve("owner", "u-17")` returns the record the `owner` field of the
    current entity points at, or None if it does not exist.
    """

    def resolve(self, relation: str, ref: object) -> Mapping[str, object] | None: ...


class _Unresolved:
    _instance: _Unresolved | None = None

    def __new__(cls) -> _Unresolved:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Field values of one entity plus the evaluation instant."""

    fields: Mapping[str, object]
    now: datetime
    resolver: EntityResolver | None = None

    def with_fields(self, fields: Mapping[str, object]) -> EvaluationContext:
        return EvaluationContext(fields=fields, now=self.now, resolver=self.resolver)


def resolve_path(path: tuple[str, ...], ctx: EvaluationContext) -> object:
    """Resolve a dotted path, returning `UNRESOLVED` on a missing field or null hop."""

    current: object = ctx.fields
    relation: str | None = None
    for segment in path:
        if current is None:
            return UNRESOLVED
        if not isinstance(current, Mapping):
            if ctx.resolver is None or relation is None:
                return UNRESOLVED
            related = ctx.resolver.resolve(relation, current)
            if related is None:
                return UNRESOLVED
            current = related
        if segment not in current:
            return UNRESOLVED
        current = current[segment]
        relation = segment
    return current


def _to_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ExpressionEvaluationError(f"Not a date/time value: {value!r}") from e
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ExpressionEvaluationError(f"Not a date/time value: {value!r}")


def _normalize(value: object) -> object:
    if isinstance(value, Decimal):
        return float(value)
    return value


def _coerce_pair(left: object, right: object) -> tuple[object, object]:
    left, right = _normalize(left), _normalize(right)
    if isinstance(left, (datetime, date)) and isinstance(right, str):
        return _to_datetime(left), _to_datetime(right)
    if isinstance(right, (datetime, date)) and isinstance(left, str):
        return _to_datetime(left), _to_datetime(right)
    if isinstance(left, datetime) or isinstance(right, datetime):
        if isinstance(left, (datetime, date)) and isinstance(right, (datetime, date)):
            return _to_datetime(left), _to_datetime(right)
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, str) and not isinstance(left, bool):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(right, numeric) and isinstance(left, str) and not isinstance(right, bool):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _equals(left: object, right: object) -> bool:
    if left is None or right is None:
        return left is None and right is None
    a, b = _coerce_pair(left, right)
    return a == b


def _compare(op: str, left: object, right: object) -> bool:
    if op == "=":
        return _equals(left, right)
    if op == "!=":
        return not _equals(left, right)
    if left is None or right is None:
        return False
    a, b = _coerce_pair(left, right)
    try:
        if op == ">":
            return a > b  # type: ignore[operator]
        if op == ">=":
            return a >= b  # type: ignore[operator]
        if op == "<":
            return a < b  # type: ignore[operator]
        if op == "<=":
            return a <= b  # type: ignore[operator]
    except TypeError as e:
        raise ExpressionEvaluationError(f"Cannot compare {left!r} {op} {right!r}") from e
    raise ExpressionEvaluationError(f"Unknown comparison operator {op!r}")


def _arithmetic(op: str, left: object, right: object) -> object:
    left, right = _normalize(left), _normalize(right)
    if isinstance(right, timedelta):
        if isinstance(left, timedelta):
            return left + right if op == "+" else left - right
        base = _to_datetime(left)
        return base + right if op == "+" else base - right
    if isinstance(left, timedelta) and op == "+":
        return _to_datetime(right) + left
    if (
        isinstance(left, (int, float))
        and isinstance(right, (int, float))
        and not isinstance(left, bool)
        and not isinstance(right, bool)
    ):
        return left + right if op == "+" else left - right
    if op == "-" and isinstance(left, (datetime, str)) and isinstance(right, (datetime, str)):
        return _to_datetime(left) - _to_datetime(right)
    raise ExpressionEvaluationError(f"Unsupported operands for {op!r}: {left!r}, {right!r}")


def _call(name: str, args: list[object], ctx: EvaluationContext) -> object:
    if name == "NOW":
        return ctx.now
    if name == "DAYS_BETWEEN":
        delta = _to_datetime(args[1]) - _to_datetime(args[0])
        return int(delta.total_seconds() / 86400)
    if name == "HOURS_BETWEEN":
        delta = _to_datetime(args[1]) - _to_datetime(args[0])
        return round(delta.total_seconds() / 3600, 4)
    raise ExpressionEvaluationError(f"Unknown function {name!r}")


class _Evaluation:
    """One evaluation pass; `strict` selects formula (raise) vs guard (fail closed) mode."""

    def __init__(self, ctx: EvaluationContext, *, strict: bool) -> None:
        self._ctx = ctx
        self._strict = strict

    def value(self, node: Node) -> object:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, FieldRef):
            resolved = resolve_path(node.path, self._ctx)
            if resolved is UNRESOLVED and self._strict:
                raise ExpressionEvaluationError(f"Unresolved field reference {node.dotted!r}")
            return resolved
        if isinstance(node, FunctionCall):
            args = [self.value(arg) for arg in node.args]
            if any(arg is UNRESOLVED for arg in args):
                return UNRESOLVED
            return _call(node.name, args, self._ctx)
        if isinstance(node, Arithmetic):
            left, right = self.value(node.left), self.value(node.right)
            if left is UNRESOLVED or right is UNRESOLVED:
                return UNRESOLVED
            return _arithmetic(node.op, left, right)
        return self.truth(node)

    def _operand(self, node: Node) -> object:
        if self._strict:
            return self.value(node)
        try:
            return self.value(node)
        except ExpressionEvaluationError as e:
            logger.debug("Guard operand failed to evaluate", extra={"reason": str(e)})
            return UNRESOLVED

    def truth(self, node: Node) -> bool:
        if isinstance(node, And):
            return all(self.truth(operand) for operand in node.operands)
        if isinstance(node, Or):
            return any(self.truth(operand) for operand in node.operands)
        if isinstance(node, Not):
            return not self.truth(node.operand)
        if isinstance(node, Comparison):
            left, right = self._operand(node.left), self._operand(node.right)
            if left is UNRESOLVED or right is UNRESOLVED:
                return False
            if self._strict:
                return _compare(node.op, left, right)
            try:
                return _compare(node.op, left, right)
            except ExpressionEvaluationError:
                return False
        if isinstance(node, In):
            subject = self._operand(node.subject)
            if subject is UNRESOLVED:
                return False
            options = [self._operand(option) for option in node.options]
            found = any(
                option is not UNRESOLVED and _equals(subject, option) for option in options
            )
            return not found if node.negated else found
        value = self._operand(node)
        if value is UNRESOLVED:
            return False
        return bool(value)


def evaluate_guard(expression: Expression | None, ctx: EvaluationContext) -> bool:
    """Evaluate a guard; absent guards pass, failures fail closed."""

    if expression is None:
        return True
    try:
        return _Evaluation(ctx, strict=False).truth(expression.root)
    except Exception:
        # Resolver failures included: a guard that cannot be decided does not fire.
        logger.warning(
            "Guard evaluation failed; treating as false",
            extra={"guard": expression.source},
            exc_info=True,
        )
        return False


def evaluate_formula(expression: Expression, ctx: EvaluationContext) -> object:
    """Evaluate a formula to a value.

    Raises:
        ExpressionEvaluationError: If any reference is unresolved or an operation is invalid.
    """

    result = _Evaluation(ctx, strict=True).value(expression.root)
    if result is UNRESOLVED:
        raise ExpressionEvaluationError(f"Formula {expression.source!r} did not resolve")
    return result


def render_template(template: str, ctx: EvaluationContext) -> object | None:
    """Render a `${path}` template.

    A template that is exactly one placeholder yields the raw value. Returns None
    when any placeholder is unresolved or null.
    """

    whole = _PLACEHOLDER_RE.fullmatch(template.strip())
    if whole is not None:
        value = resolve_path(tuple(whole.group(1).split(".")), ctx)
        return None if value is UNRESOLVED else value

    missing = False

    def _sub(match: re.Match[str]) -> str:
        nonlocal missing
        value = resolve_path(tuple(match.group(1).split(".")), ctx)
        if value is UNRESOLVED or value is None:
            missing = True
            return ""
        return _format(value)

    rendered = _PLACEHOLDER_RE.sub(_sub, template)
    return None if missing else rendered


def render_text(template: str, ctx: EvaluationContext) -> str:
    """Like `render_template`, but substitutes unresolved placeholders with ''."""

    def _sub(match: re.Match[str]) -> str:
        value = resolve_path(tuple(match.group(1).split(".")), ctx)
        if value is UNRESOLVED or value is None:
            return ""
        return _format(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def _format(value: object) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
