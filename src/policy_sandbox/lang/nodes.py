"""Syntax tree node types for the restricted policy script language."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Literal:
    value: object


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class ArrayLit:
    items: Tuple["Expr", ...]


@dataclass(frozen=True)
class ObjectLit:
    entries: Tuple[Tuple[str, "Expr"], ...]


@dataclass(frozen=True)
class Member:
    target: "Expr"
    name: str


@dataclass(frozen=True)
class Index:
    target: "Expr"
    index: "Expr"


@dataclass(frozen=True)
class Call:
    callee: "Expr"
    args: Tuple["Expr", ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Expr"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Logical:
    """Short-circuit operators: ``&&``, ``||`` and ``??``."""

    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Conditional:
    test: "Expr"
    then: "Expr"
    otherwise: "Expr"


Expr = Union[
    Literal, Name, ArrayLit, ObjectLit, Member, Index, Call,
    Unary, Binary, Logical, Conditional,
]


@dataclass(frozen=True)
class Declare:
    name: str
    value: Expr
    constant: bool


@dataclass(frozen=True)
class Assign:
    name: str
    value: Expr


@dataclass(frozen=True)
class ExprStmt:
    expr: Expr


@dataclass(frozen=True)
class If:
    test: Expr
    body: Tuple["Stmt", ...]
    orelse: Tuple["Stmt", ...]


@dataclass(frozen=True)
class ForOf:
    name: str
    iterable: Expr
    body: Tuple["Stmt", ...]


@dataclass(frozen=True)
class Return:
    value: Optional[Expr]


Stmt = Union[Declare, Assign, ExprStmt, If, ForOf, Return]


@dataclass(frozen=True)
class Program:
    body: Tuple[Stmt, ...]
