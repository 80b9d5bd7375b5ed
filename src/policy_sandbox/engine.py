"""Execution engine: runs validated code under a capability context.

Conditions are single expressions coerced to a boolean. Actions are short
programs that may call only the allowed functions they are handed.

Every run is raced against a wall-clock deadline. The program runs on a
daemon worker thread while the caller waits on a completion event; if the
deadline passes first (or at the same instant) the run is reported as a
timeout and its cancellation token is set. A cancelled program stops at its
next interpreter step, and allowed functions refuse to run and discard their
results once cancelled, so a timed-out program cannot reach shared state.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional

from policy_sandbox.capabilities import CapabilityContext, build_context, thaw
from policy_sandbox.config import ExecutionConfig, SandboxConfig, ValidatorConfig
from policy_sandbox.errors import ErrorKind, ExecutionTimeout, SandboxError
from policy_sandbox.lang import Interpreter, parse_expression, parse_program, truthy
from policy_sandbox.lang import nodes
from policy_sandbox.validator import ValidationResult, validate

logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE = "would execute"


class CancellationToken:
    """Cooperative cancellation signal backed by threading.Event."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal cancellation. Idempotent."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    def wait(self, timeout_s: float | None = None) -> bool:
        """Block until cancelled or timeout expires.

        Returns True if cancelled, False if timeout elapsed first.
        """
        return self._event.wait(timeout=timeout_s)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one condition or action run. Immutable."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: float = 0.0
    dry_run: bool = False
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    validation: Optional[ValidationResult] = field(default=None, compare=False, repr=False)

    @property
    def timed_out(self) -> bool:
        return self.error_kind == ErrorKind.TIMEOUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "success": self.success,
            "result": self.result if self.success else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_ms": round(self.duration_ms, 3),
            "dry_run": self.dry_run,
        }


@lru_cache(maxsize=256)
def _compile_expression(code: str) -> nodes.Expr:
    return parse_expression(code)


@lru_cache(maxsize=256)
def _compile_program(code: str) -> nodes.Program:
    return parse_program(code)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


class ExecutionEngine:
    """Runs conditions and actions with validation, budgets and a deadline.

    Args:
        config: Interpreter budgets and default timeout.
        validator_config: Limits handed to the static validator.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        validator_config: Optional[ValidatorConfig] = None,
    ) -> None:
        self.config = config or ExecutionConfig()
        self.validator_config = validator_config or ValidatorConfig()

    @classmethod
    def from_config(cls, config: SandboxConfig) -> ExecutionEngine:
        return cls(config.execution, config.validator)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate_condition(
        self,
        code: str,
        context: Mapping[str, Any],
        timeout_ms: Optional[int] = None,
    ) -> ExecutionResult:
        """Evaluate *code* as one expression; ``result`` is a bool on success."""

        def compile_() -> nodes.Expr:
            return _compile_expression(code)

        def run(tree: nodes.Expr, token: CancellationToken) -> Any:
            interpreter = Interpreter(self._as_context(context), self.config, token)
            return truthy(interpreter.evaluate_expression(tree))

        return self._execute("condition", code, compile_, run, timeout_ms, dry_run=False)

    def execute_action(
        self,
        code: str,
        context: Mapping[str, Any],
        allowed_functions: Optional[Mapping[str, Callable[..., Any]]] = None,
        timeout_ms: Optional[int] = None,
        dry_run: bool = False,
    ) -> ExecutionResult:
        """Run *code* as a program that may call only *allowed_functions*.

        In dry-run mode each allowed function is replaced by a recording
        stand-in and the result is a synthetic "would execute" summary.
        """
        dry_run = dry_run or self.config.dry_run
        functions = dict(allowed_functions or {})
        calls: List[Dict[str, Any]] = []

        def compile_() -> nodes.Program:
            return _compile_program(code)

        def run(tree: nodes.Program, token: CancellationToken) -> Any:
            if dry_run:
                wired = {name: _recording_stand_in(name, calls) for name in functions}
            else:
                wired = {name: _guarded(name, fn, token) for name, fn in functions.items()}
            base = self._as_context(context)
            interpreter = Interpreter(base.extend(wired), self.config, token)
            value = interpreter.run_program(tree)
            if dry_run:
                return {
                    "dry_run": True,
                    "message": DRY_RUN_MESSAGE,
                    "calls": list(calls),
                    "result": thaw(value, strict=False),
                }
            return thaw(value, strict=False)

        return self._execute("action", code, compile_, run, timeout_ms, dry_run=dry_run)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _as_context(context: Mapping[str, Any]) -> CapabilityContext:
        if isinstance(context, CapabilityContext):
            return context
        return build_context(context, list(context))

    def _execute(
        self,
        kind: str,
        code: str,
        compile_: Callable[[], Any],
        run: Callable[[Any, CancellationToken], Any],
        timeout_ms: Optional[int],
        dry_run: bool,
    ) -> ExecutionResult:
        started = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - started) * 1000.0

        validation = validate(code, self.validator_config)
        if not validation.valid:
            logger.info(
                "[SANDBOX_ENGINE] %s rejected by validator: %s", kind, validation.summary()
            )
            return ExecutionResult(
                success=False,
                error=validation.summary(),
                error_kind=ErrorKind.VALIDATION,
                duration_ms=elapsed_ms(),
                dry_run=dry_run,
                validation=validation,
            )

        try:
            tree = compile_()
        except SandboxError as exc:
            return ExecutionResult(
                success=False,
                error=exc.message,
                error_kind=exc.kind,
                duration_ms=elapsed_ms(),
                dry_run=dry_run,
                validation=validation,
            )

        timeout_ms = self.config.timeout_ms if timeout_ms is None else timeout_ms
        deadline = started + timeout_ms / 1000.0
        token = CancellationToken()
        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def worker() -> None:
            try:
                outcome["value"] = run(tree, token)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        thread = threading.Thread(
            target=worker, daemon=True, name=f"sandbox-{kind}-{uuid.uuid4().hex[:8]}"
        )
        thread.start()
        finished = done.wait(timeout=max(0.0, deadline - time.monotonic()))
        duration = elapsed_ms()

        if not finished or duration >= timeout_ms:
            token.cancel()
            logger.warning(
                "[SANDBOX_ENGINE] %s timed out after %.1fms (limit %dms)",
                kind, duration, timeout_ms,
            )
            return ExecutionResult(
                success=False,
                error=f"Execution timed out after {duration:.0f}ms (limit {timeout_ms}ms)",
                error_kind=ErrorKind.TIMEOUT,
                duration_ms=duration,
                dry_run=dry_run,
                validation=validation,
            )

        error = outcome.get("error")
        if error is not None:
            error_kind = error.kind if isinstance(error, SandboxError) else ErrorKind.RUNTIME
            logger.debug("[SANDBOX_ENGINE] %s failed (%s): %s", kind, error_kind.value, error)
            return ExecutionResult(
                success=False,
                error=_describe(error),
                error_kind=error_kind,
                duration_ms=duration,
                dry_run=dry_run,
                validation=validation,
            )

        logger.debug("[SANDBOX_ENGINE] %s completed in %.1fms", kind, duration)
        return ExecutionResult(
            success=True,
            result=outcome.get("value"),
            duration_ms=duration,
            dry_run=dry_run,
            validation=validation,
        )


def _guarded(name: str, fn: Callable[..., Any], token: CancellationToken) -> Callable[..., Any]:
    def call(*args: Any) -> Any:
        if token.is_cancelled:
            raise ExecutionTimeout(f"'{name}' called after the deadline")
        result = fn(*args)
        if token.is_cancelled:
            raise ExecutionTimeout(f"Result of '{name}' discarded after the deadline")
        return result

    call.__name__ = name
    return call


def _recording_stand_in(name: str, calls: List[Dict[str, Any]]) -> Callable[..., Any]:
    def stand_in(*args: Any) -> Any:
        calls.append({"function": name, "args": list(args)})
        return {"id": f"dry-run-{len(calls)}", "dry_run": True}

    stand_in.__name__ = name
    return stand_in
