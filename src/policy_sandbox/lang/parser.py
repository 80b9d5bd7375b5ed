"""Recursive-descent parser for the restricted policy script language.

Grammar (lowest precedence first)::

    expression  := conditional
    conditional := nullish ( "?" expression ":" expression )?
    nullish     := or ( "??" or )*
    or          := and ( ("||" | "or") and )*
    and         := not ( ("&&" | "and") not )*
    not         := "not" not | equality
    equality    := compare ( ("==" | "!=" | "===" | "!==") compare )*
    compare     := additive ( ("<" | "<=" | ">" | ">=" | "in") additive )*
    additive    := term ( ("+" | "-") term )*
    term        := unary ( ("*" | "/" | "%") unary )*
    unary       := ("!" | "-" | "+" | "await") unary | postfix
    postfix     := primary ( "." NAME | "[" expression "]" | "(" args ")" )*
    primary     := NUMBER | STRING | true | false | null | undefined | NAME
                 | "(" expression ")" | "[" items "]" | "{" entries "}"

    statement   := ("let" | "const" | "var") NAME "=" expression
                 | NAME "=" expression
                 | "if" "(" expression ")" block ( "else" ( if | block ) )?
                 | "for" "(" ("let" | "const" | "var")? NAME "of" expression ")" block
                 | "return" expression?
                 | expression
    block       := "{" statement* "}" | statement

Semicolons are optional statement terminators.
"""

from __future__ import annotations

from typing import List, NoReturn, Tuple

from policy_sandbox.errors import ScriptSyntaxError
from policy_sandbox.lang import nodes
from policy_sandbox.lang.lexer import Token, tokenize

MAX_DEPTH = 64

_EQUALITY_OPS = ("==", "!=", "===", "!==")
_COMPARE_OPS = ("<", "<=", ">", ">=")


class Parser:
    """Parses a token stream into :mod:`policy_sandbox.lang.nodes` trees."""

    def __init__(self, source: str) -> None:
        self._tokens: List[Token] = tokenize(source)
        self._pos = 0
        self._depth = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def parse_expression(self) -> nodes.Expr:
        expr = self._expression()
        self._accept_op(";")
        self._expect_eof()
        return expr

    def parse_program(self) -> nodes.Program:
        body: List[nodes.Stmt] = []
        while self._peek().kind != "eof":
            body.append(self._statement())
        return nodes.Program(tuple(body))

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        idx = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[idx]

    def _advance(self) -> Token:
        tok = self._tokens[self._pos]
        if tok.kind != "eof":
            self._pos += 1
        return tok

    def _is_op(self, value: str, offset: int = 0) -> bool:
        tok = self._peek(offset)
        return tok.kind == "op" and tok.value == value

    def _is_kw(self, value: str) -> bool:
        tok = self._peek()
        return tok.kind == "kw" and tok.value == value

    def _accept_op(self, value: str) -> bool:
        if self._is_op(value):
            self._advance()
            return True
        return False

    def _accept_kw(self, value: str) -> bool:
        if self._is_kw(value):
            self._advance()
            return True
        return False

    def _expect_op(self, value: str) -> Token:
        if not self._is_op(value):
            self._fail(f"Expected '{value}'")
        return self._advance()

    def _expect_name(self) -> str:
        tok = self._peek()
        if tok.kind != "name":
            self._fail("Expected identifier")
        self._advance()
        return str(tok.value)

    def _expect_eof(self) -> None:
        if self._peek().kind != "eof":
            self._fail("Unexpected trailing input")

    def _fail(self, message: str) -> NoReturn:
        tok = self._peek()
        shown = "end of input" if tok.kind == "eof" else repr(tok.value)
        raise ScriptSyntaxError(f"{message}, found {shown}", tok.line, tok.column)

    def _enter(self) -> None:
        self._depth += 1
        if self._depth > MAX_DEPTH:
            self._fail("Nesting too deep")

    def _leave(self) -> None:
        self._depth -= 1

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _statement(self) -> nodes.Stmt:
        self._enter()
        try:
            stmt = self._statement_inner()
        finally:
            self._leave()
        self._accept_op(";")
        return stmt

    def _statement_inner(self) -> nodes.Stmt:
        tok = self._peek()
        if tok.kind == "kw" and tok.value in ("let", "const", "var"):
            self._advance()
            name = self._expect_name()
            self._expect_op("=")
            return nodes.Declare(name, self._expression(), constant=tok.value == "const")
        if tok.kind == "kw" and tok.value == "if":
            return self._if()
        if tok.kind == "kw" and tok.value == "for":
            return self._for_of()
        if tok.kind == "kw" and tok.value == "return":
            self._advance()
            if self._is_op(";") or self._is_op("}") or self._peek().kind == "eof":
                return nodes.Return(None)
            return nodes.Return(self._expression())
        if tok.kind == "name" and self._is_op("=", offset=1):
            self._advance()
            self._advance()
            return nodes.Assign(str(tok.value), self._expression())
        return nodes.ExprStmt(self._expression())

    def _if(self) -> nodes.If:
        self._advance()
        self._expect_op("(")
        test = self._expression()
        self._expect_op(")")
        body = self._block()
        orelse: Tuple[nodes.Stmt, ...] = ()
        if self._accept_kw("else"):
            if self._is_kw("if"):
                self._enter()
                try:
                    orelse = (self._if(),)
                finally:
                    self._leave()
            else:
                orelse = self._block()
        return nodes.If(test, body, orelse)

    def _for_of(self) -> nodes.ForOf:
        self._advance()
        self._expect_op("(")
        tok = self._peek()
        if tok.kind == "kw" and tok.value in ("let", "const", "var"):
            self._advance()
        name = self._expect_name()
        if not self._accept_kw("of"):
            self._fail("Expected 'of'")
        iterable = self._expression()
        self._expect_op(")")
        return nodes.ForOf(name, iterable, self._block())

    def _block(self) -> Tuple[nodes.Stmt, ...]:
        if self._accept_op("{"):
            body: List[nodes.Stmt] = []
            while not self._is_op("}"):
                if self._peek().kind == "eof":
                    self._fail("Expected '}'")
                body.append(self._statement())
            self._advance()
            return tuple(body)
        return (self._statement(),)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _expression(self) -> nodes.Expr:
        self._enter()
        try:
            return self._conditional()
        finally:
            self._leave()

    def _conditional(self) -> nodes.Expr:
        test = self._nullish()
        if self._accept_op("?"):
            then = self._expression()
            self._expect_op(":")
            otherwise = self._expression()
            return nodes.Conditional(test, then, otherwise)
        return test

    def _nullish(self) -> nodes.Expr:
        left = self._or()
        while self._accept_op("??"):
            left = nodes.Logical("??", left, self._or())
        return left

    def _or(self) -> nodes.Expr:
        left = self._and()
        while self._accept_op("||") or self._accept_kw("or"):
            left = nodes.Logical("||", left, self._and())
        return left

    def _and(self) -> nodes.Expr:
        left = self._not()
        while self._accept_op("&&") or self._accept_kw("and"):
            left = nodes.Logical("&&", left, self._not())
        return left

    def _not(self) -> nodes.Expr:
        if self._accept_kw("not"):
            self._enter()
            try:
                return nodes.Unary("!", self._not())
            finally:
                self._leave()
        return self._equality()

    def _equality(self) -> nodes.Expr:
        left = self._compare()
        while True:
            tok = self._peek()
            if tok.kind == "op" and tok.value in _EQUALITY_OPS:
                self._advance()
                left = nodes.Binary(str(tok.value), left, self._compare())
            else:
                return left

    def _compare(self) -> nodes.Expr:
        left = self._additive()
        while True:
            tok = self._peek()
            if tok.kind == "op" and tok.value in _COMPARE_OPS:
                self._advance()
                left = nodes.Binary(str(tok.value), left, self._additive())
            elif tok.kind == "kw" and tok.value == "in":
                self._advance()
                left = nodes.Binary("in", left, self._additive())
            else:
                return left

    def _additive(self) -> nodes.Expr:
        left = self._term()
        while self._is_op("+") or self._is_op("-"):
            op = str(self._advance().value)
            left = nodes.Binary(op, left, self._term())
        return left

    def _term(self) -> nodes.Expr:
        left = self._unary()
        while self._is_op("*") or self._is_op("/") or self._is_op("%"):
            op = str(self._advance().value)
            left = nodes.Binary(op, left, self._unary())
        return left

    def _unary(self) -> nodes.Expr:
        tok = self._peek()
        if tok.kind == "op" and tok.value in ("!", "-", "+"):
            self._advance()
            self._enter()
            try:
                return nodes.Unary(str(tok.value), self._unary())
            finally:
                self._leave()
        if tok.kind == "kw" and tok.value == "await":
            self._advance()
            self._enter()
            try:
                return self._unary()
            finally:
                self._leave()
        return self._postfix()

    def _postfix(self) -> nodes.Expr:
        expr = self._primary()
        while True:
            if self._accept_op("."):
                tok = self._peek()
                if tok.kind not in ("name", "kw"):
                    self._fail("Expected property name")
                self._advance()
                expr = nodes.Member(expr, str(tok.value))
            elif self._accept_op("["):
                index = self._expression()
                self._expect_op("]")
                expr = nodes.Index(expr, index)
            elif self._accept_op("("):
                expr = nodes.Call(expr, self._arguments())
            else:
                return expr

    def _arguments(self) -> Tuple[nodes.Expr, ...]:
        args: List[nodes.Expr] = []
        while not self._is_op(")"):
            args.append(self._expression())
            if not self._accept_op(","):
                break
        self._expect_op(")")
        return tuple(args)

    def _primary(self) -> nodes.Expr:
        tok = self._peek()
        if tok.kind in ("num", "str"):
            self._advance()
            return nodes.Literal(tok.value)
        if tok.kind == "kw":
            if tok.value == "true":
                self._advance()
                return nodes.Literal(True)
            if tok.value == "false":
                self._advance()
                return nodes.Literal(False)
            if tok.value in ("null", "undefined"):
                self._advance()
                return nodes.Literal(None)
        if tok.kind == "name":
            self._advance()
            return nodes.Name(str(tok.value))
        if self._accept_op("("):
            expr = self._expression()
            self._expect_op(")")
            return expr
        if self._accept_op("["):
            return self._array()
        if self._accept_op("{"):
            return self._object()
        self._fail("Unexpected token")

    def _array(self) -> nodes.ArrayLit:
        items: List[nodes.Expr] = []
        while not self._is_op("]"):
            items.append(self._expression())
            if not self._accept_op(","):
                break
        self._expect_op("]")
        return nodes.ArrayLit(tuple(items))

    def _object(self) -> nodes.ObjectLit:
        entries: List[Tuple[str, nodes.Expr]] = []
        while not self._is_op("}"):
            tok = self._peek()
            if tok.kind in ("name", "kw", "str"):
                key = str(tok.value)
            elif tok.kind == "num":
                key = str(tok.value)
            else:
                self._fail("Expected property key")
            self._advance()
            if self._accept_op(":"):
                entries.append((key, self._expression()))
            elif tok.kind == "name":
                entries.append((key, nodes.Name(key)))
            else:
                self._fail("Expected ':'")
            if not self._accept_op(","):
                break
        self._expect_op("}")
        return nodes.ObjectLit(tuple(entries))


def parse_expression(source: str) -> nodes.Expr:
    """Parse a single expression (condition code)."""
    try:
        return Parser(source).parse_expression()
    except RecursionError:
        raise ScriptSyntaxError("Nesting too deep") from None


def parse_program(source: str) -> nodes.Program:
    """Parse a statement list (action or script code)."""
    try:
        return Parser(source).parse_program()
    except RecursionError:
        raise ScriptSyntaxError("Nesting too deep") from None
