"""Expression AST node types."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Literal:
    value: object


@dataclass(frozen=True, slots=True)
class FieldRef:
    """A field or dotted relationship reference, e.g. `owner.manager.email`."""

    path: tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True, slots=True)
class Comparison:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class And:
    operands: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Or:
    operands: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Not:
    operand: Node


@dataclass(frozen=True, slots=True)
class In:
    subject: Node
    options: tuple[Node, ...]
    negated: bool = False


@dataclass(frozen=True, slots=True)
class FunctionCall:
    name: str
    args: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Arithmetic:
    """`+` / `-` over numbers, and date arithmetic such as `NOW() + 4 HOURS`."""

    op: str
    left: Node
    right: Node


Node = Literal | FieldRef | Comparison | And | Or | Not | In | FunctionCall | Arithmetic

BOOLEAN_NODES = (Comparison, And, Or, Not, In)


def iter_nodes(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, (Comparison, Arithmetic)):
        yield from iter_nodes(node.left)
        yield from iter_nodes(node.right)
    elif isinstance(node, (And, Or)):
        for operand in node.operands:
            yield from iter_nodes(operand)
    elif isinstance(node, Not):
        yield from iter_nodes(node.operand)
    elif isinstance(node, In):
        yield from iter_nodes(node.subject)
        for option in node.options:
            yield from iter_nodes(option)
    elif isinstance(node, FunctionCall):
        for arg in node.args:
            yield from iter_nodes(arg)


@dataclass(frozen=True, slots=True)
class Expression:
    """A parsed guard or formula together with its source text."""

    source: str
    root: Node

    @property
    def is_boolean(self) -> bool:
        return isinstance(self.root, BOOLEAN_NODES)

    def field_refs(self) -> list[str]:
        return [n.dotted for n in iter_nodes(self.root) if isinstance(n, FieldRef)]

    def __str__(self) -> str:
        return self.source
