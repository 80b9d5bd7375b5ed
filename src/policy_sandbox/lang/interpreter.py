"""Tree-walking interpreter for the restricted policy script language.

The interpreter never touches Python attributes of the values it handles.
Member access is a key lookup on mappings, ``length`` on strings and lists,
or one of the methods in a fixed table. Every evaluation step is counted
against the step budget and checks the cancellation token, so a program
that has been timed out stops at its next step.

Equality is strict for both ``==`` and ``===``: values of different kinds
never compare equal and lists and objects compare by value.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from policy_sandbox.capabilities import CapabilityFunction
from policy_sandbox.config import ExecutionConfig
from policy_sandbox.errors import (
    CapabilityError,
    ExecutionFailed,
    ExecutionTimeout,
    StepBudgetExceeded,
)
from policy_sandbox.lang import nodes

if TYPE_CHECKING:
    from policy_sandbox.engine import CancellationToken

logger = logging.getLogger(__name__)


class _ReturnSignal(Exception):
    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__("return")


class _BoundMethod:
    """A method from the built-in table bound to its receiver."""

    __slots__ = ("receiver", "name")

    def __init__(self, receiver: Any, name: str) -> None:
        self.receiver = receiver
        self.name = name


_STRING_METHODS = frozenset({
    "includes", "startsWith", "endsWith", "toLowerCase", "toUpperCase",
    "trim", "split", "indexOf", "slice",
})
_LIST_METHODS = frozenset({"includes", "join", "indexOf", "slice", "concat"})
_MAPPING_METHODS = frozenset({"keys"})


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def truthy(value: Any) -> bool:
    """JavaScript truthiness: null, false, 0, NaN and "" are falsy."""
    if value is None or value is False:
        return False
    if value is True:
        return True
    if _is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_display(value: Any) -> str:
    """String conversion used by ``+`` concatenation and ``join``."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, tuple):
        return ",".join("" if item is None else to_display(item) for item in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    if isinstance(value, CapabilityFunction):
        return f"function {value.name}"
    return "[value]"


def strict_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, tuple) and isinstance(right, tuple):
        return len(left) == len(right) and all(
            strict_equal(a, b) for a, b in zip(left, right)
        )
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return set(left) == set(right) and all(
            strict_equal(left[k], right[k]) for k in left
        )
    return left is right


class Interpreter:
    """Evaluates parsed programs against a capability context.

    Args:
        context: Read-only scope of names visible to the program.
        config: Budgets (steps, loop iterations, value length).
        token: Optional cancellation token checked at every step.
    """

    def __init__(
        self,
        context: Mapping[str, Any],
        config: Optional[ExecutionConfig] = None,
        token: Optional["CancellationToken"] = None,
    ) -> None:
        self._context = context
        self._config = config or ExecutionConfig()
        self._token = token
        self._steps = 0
        self._scopes: List[Dict[str, Any]] = [{}]
        self._constants: List[Set[str]] = [set()]

    @property
    def steps(self) -> int:
        return self._steps

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def evaluate_expression(self, expr: nodes.Expr) -> Any:
        return self._eval(expr)

    def run_program(self, program: nodes.Program) -> Any:
        """Run *program*; returns the value of its ``return`` or None."""
        try:
            self._exec_block(program.body, new_scope=False)
        except _ReturnSignal as signal:
            return signal.value
        return None

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def _tick(self) -> None:
        if self._token is not None and self._token.is_cancelled:
            raise ExecutionTimeout("Execution cancelled")
        self._steps += 1
        if self._steps > self._config.max_steps:
            raise StepBudgetExceeded(
                f"Step budget exhausted ({self._config.max_steps} steps)"
            )

    def _bounded(self, value: Any) -> Any:
        if isinstance(value, (str, tuple)) and len(value) > self._config.max_value_length:
            raise ExecutionFailed(
                f"Value exceeds maximum length ({self._config.max_value_length})"
            )
        return value

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _exec_block(self, body: tuple, new_scope: bool = True) -> None:
        if new_scope:
            self._scopes.append({})
            self._constants.append(set())
        try:
            for stmt in body:
                self._exec(stmt)
        finally:
            if new_scope:
                self._scopes.pop()
                self._constants.pop()

    def _exec(self, stmt: nodes.Stmt) -> None:
        self._tick()
        if isinstance(stmt, nodes.ExprStmt):
            self._eval(stmt.expr)
        elif isinstance(stmt, nodes.Declare):
            scope = self._scopes[-1]
            if stmt.name in scope:
                raise ExecutionFailed(f"'{stmt.name}' has already been declared")
            scope[stmt.name] = self._eval(stmt.value)
            if stmt.constant:
                self._constants[-1].add(stmt.name)
        elif isinstance(stmt, nodes.Assign):
            self._assign(stmt.name, self._eval(stmt.value))
        elif isinstance(stmt, nodes.If):
            if truthy(self._eval(stmt.test)):
                self._exec_block(stmt.body)
            elif stmt.orelse:
                self._exec_block(stmt.orelse)
        elif isinstance(stmt, nodes.ForOf):
            self._for_of(stmt)
        elif isinstance(stmt, nodes.Return):
            value = None if stmt.value is None else self._eval(stmt.value)
            raise _ReturnSignal(value)
        else:
            raise ExecutionFailed(f"Unsupported statement {type(stmt).__name__}")

    def _assign(self, name: str, value: Any) -> None:
        for scope, constants in zip(reversed(self._scopes), reversed(self._constants)):
            if name in scope:
                if name in constants:
                    raise ExecutionFailed(f"Assignment to constant '{name}'")
                scope[name] = value
                return
        if name in self._context:
            logger.warning("[SANDBOX_CAPABILITY] Blocked write to '%s'", name)
            raise CapabilityError(f"Cannot assign to '{name}': context is read-only")
        raise ExecutionFailed(f"'{name}' is not declared")

    def _for_of(self, stmt: nodes.ForOf) -> None:
        iterable = self._eval(stmt.iterable)
        if not isinstance(iterable, (tuple, str)):
            raise ExecutionFailed("Value is not iterable")
        limit = self._config.max_loop_iterations
        for count, item in enumerate(iterable, start=1):
            if count > limit:
                raise ExecutionFailed(f"Loop exceeded {limit} iterations")
            self._scopes.append({stmt.name: item})
            self._constants.append(set())
            try:
                for inner in stmt.body:
                    self._exec(inner)
            finally:
                self._scopes.pop()
                self._constants.pop()

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _eval(self, expr: nodes.Expr) -> Any:
        self._tick()
        if isinstance(expr, nodes.Literal):
            return expr.value
        if isinstance(expr, nodes.Name):
            return self._lookup(expr.name)
        if isinstance(expr, nodes.Member):
            return self._member(self._eval(expr.target), expr.name)
        if isinstance(expr, nodes.Index):
            return self._index(self._eval(expr.target), self._eval(expr.index))
        if isinstance(expr, nodes.Call):
            return self._call(expr)
        if isinstance(expr, nodes.Binary):
            return self._binary(expr.op, self._eval(expr.left), self._eval(expr.right))
        if isinstance(expr, nodes.Logical):
            left = self._eval(expr.left)
            if expr.op == "&&":
                return self._eval(expr.right) if truthy(left) else left
            if expr.op == "||":
                return left if truthy(left) else self._eval(expr.right)
            return self._eval(expr.right) if left is None else left
        if isinstance(expr, nodes.Unary):
            return self._unary(expr.op, self._eval(expr.operand))
        if isinstance(expr, nodes.Conditional):
            branch = expr.then if truthy(self._eval(expr.test)) else expr.otherwise
            return self._eval(branch)
        if isinstance(expr, nodes.ArrayLit):
            return self._bounded(tuple(self._eval(item) for item in expr.items))
        if isinstance(expr, nodes.ObjectLit):
            return MappingProxyType({key: self._eval(value) for key, value in expr.entries})
        raise ExecutionFailed(f"Unsupported expression {type(expr).__name__}")

    def _lookup(self, name: str) -> Any:
        for scope in reversed(self._scopes):
            if name in scope:
                return scope[name]
        if name in self._context:
            return self._context[name]
        logger.warning("[SANDBOX_CAPABILITY] Blocked access to '%s'", name)
        raise CapabilityError(f"'{name}' is not available in this context")

    def _member(self, target: Any, name: str) -> Any:
        if target is None:
            raise ExecutionFailed(f"Cannot read property '{name}' of null")
        if isinstance(target, Mapping):
            if name in target:
                return target[name]
            if name in _MAPPING_METHODS:
                return _BoundMethod(target, name)
            return None
        if isinstance(target, (str, tuple)):
            if name == "length":
                return len(target)
            table = _STRING_METHODS if isinstance(target, str) else _LIST_METHODS
            if name in table:
                return _BoundMethod(target, name)
        return None

    def _index(self, target: Any, index: Any) -> Any:
        if target is None:
            raise ExecutionFailed("Cannot index null")
        if isinstance(target, Mapping):
            return target.get(to_display(index))
        if isinstance(target, (str, tuple)):
            if isinstance(index, str):
                return self._member(target, index)
            if _is_number(index) and float(index).is_integer():
                pos = int(index)
                return target[pos] if 0 <= pos < len(target) else None
        return None

    def _call(self, expr: nodes.Call) -> Any:
        callee = self._eval(expr.callee)
        args = [self._eval(arg) for arg in expr.args]
        if isinstance(callee, _BoundMethod):
            return self._bounded(_call_method(callee, args))
        if isinstance(callee, CapabilityFunction):
            self._tick()
            result = callee(*args)
            self._tick()
            return self._bounded(result)
        raise ExecutionFailed(f"{to_display(callee)} is not a function")

    def _unary(self, op: str, operand: Any) -> Any:
        if op == "!":
            return not truthy(operand)
        number = _to_number(operand)
        return -number if op == "-" else number

    def _binary(self, op: str, left: Any, right: Any) -> Any:
        if op == "+":
            if isinstance(left, str) or isinstance(right, str):
                return self._bounded(to_display(left) + to_display(right))
            return _to_number(left) + _to_number(right)
        if op in ("-", "*", "/", "%"):
            return _arithmetic(op, _to_number(left), _to_number(right))
        if op in ("==", "==="):
            return strict_equal(left, right)
        if op in ("!=", "!=="):
            return not strict_equal(left, right)
        if op in ("<", "<=", ">", ">="):
            return _compare(op, left, right)
        if op == "in":
            return _contains(right, left)
        raise ExecutionFailed(f"Unsupported operator {op}")


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                return math.nan
    return math.nan


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op == "/":
        if right == 0:
            if left == 0 or math.isnan(left):
                return math.nan
            return math.copysign(math.inf, left)
        if isinstance(left, int) and isinstance(right, int) and left % right == 0:
            return left // right
        return left / right
    if right == 0:
        return math.nan
    result = math.fmod(left, right)
    return int(result) if isinstance(left, int) and isinstance(right, int) else result


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        pass
    elif (_is_number(left) or isinstance(left, bool)) and (
        _is_number(right) or isinstance(right, bool)
    ):
        left, right = _to_number(left), _to_number(right)
    else:
        return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, tuple):
        return any(strict_equal(item, candidate) for candidate in container)
    if isinstance(container, Mapping):
        return to_display(item) in container
    raise ExecutionFailed("Right-hand side of 'in' is not a collection")


def _slice_bounds(length: int, args: List[Any]) -> slice:
    def _norm(raw: Any, default: int) -> int:
        if raw is None:
            return default
        pos = int(_to_number(raw))
        if pos < 0:
            pos = max(length + pos, 0)
        return min(pos, length)

    start = _norm(args[0] if args else None, 0)
    end = _norm(args[1] if len(args) > 1 else None, length)
    return slice(start, max(start, end))


def _call_method(method: _BoundMethod, args: List[Any]) -> Any:
    receiver, name = method.receiver, method.name
    first = args[0] if args else None

    if isinstance(receiver, Mapping):
        return tuple(receiver.keys())

    if isinstance(receiver, str):
        if name == "toLowerCase":
            return receiver.lower()
        if name == "toUpperCase":
            return receiver.upper()
        if name == "trim":
            return receiver.strip()
        if name == "slice":
            return receiver[_slice_bounds(len(receiver), args)]
        if name == "split":
            if first is None:
                return (receiver,)
            sep = to_display(first)
            return tuple(receiver) if sep == "" else tuple(receiver.split(sep))
        needle = to_display(first)
        if name == "includes":
            return needle in receiver
        if name == "startsWith":
            return receiver.startswith(needle)
        if name == "endsWith":
            return receiver.endswith(needle)
        return receiver.find(needle)

    if name == "concat":
        extra: List[Any] = []
        for arg in args:
            extra.extend(arg if isinstance(arg, tuple) else (arg,))
        return receiver + tuple(extra)
    if name == "join":
        sep = "," if first is None else to_display(first)
        return sep.join("" if item is None else to_display(item) for item in receiver)
    if name == "slice":
        return receiver[_slice_bounds(len(receiver), args)]
    if name == "includes":
        return any(strict_equal(first, item) for item in receiver)
    for pos, item in enumerate(receiver):
        if strict_equal(first, item):
            return pos
    return -1
