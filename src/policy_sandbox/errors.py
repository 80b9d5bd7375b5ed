"""Exception types for the policy sandbox.

Every failure the sandbox can report maps onto one ``ErrorKind``. Gate and
execution failures are converted to structured results at the component
boundary; the exceptions below are what travels inside the sandbox.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from policy_sandbox.validator import ValidationResult


class ErrorKind(str, Enum):
    """Machine-readable failure category."""

    VALIDATION = "validation"
    CAPABILITY = "capability"
    QUOTA_EXCEEDED = "quota_exceeded"
    CIRCUIT_OPEN = "circuit_open"
    DUPLICATE = "duplicate"
    TIMEOUT = "timeout"
    RUNTIME = "runtime"


class SandboxError(Exception):
    """Base class for all sandbox errors."""

    kind: ErrorKind = ErrorKind.RUNTIME

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(SandboxError):
    """Code was rejected by the static validator before it ever ran."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, result: Optional["ValidationResult"] = None) -> None:
        self.result = result
        super().__init__(message)


class CapabilityError(SandboxError):
    """Code touched something outside its capability context."""

    kind = ErrorKind.CAPABILITY


class QuotaExceeded(SandboxError):
    """Quota gate rejected the attempt. No execution took place."""

    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, reason: str, remaining: int = 0) -> None:
        self.reason = reason
        self.remaining = remaining
        super().__init__(reason)


class CircuitOpen(SandboxError):
    """Circuit breaker rejected the attempt."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, reason: str, state: str = "open") -> None:
        self.reason = reason
        self.state = state
        super().__init__(reason)


class DuplicateSuppressed(SandboxError):
    """Same subject and content seen inside the dedup window (informational)."""

    kind = ErrorKind.DUPLICATE


class ExecutionTimeout(SandboxError):
    """Execution exceeded its wall-clock budget."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, elapsed_ms: float = 0.0) -> None:
        self.elapsed_ms = elapsed_ms
        super().__init__(message)


class StepBudgetExceeded(ExecutionTimeout):
    """Interpreter step budget exhausted (treated like a timeout)."""


class ExecutionFailed(SandboxError):
    """Code executed but raised or returned abnormally."""

    kind = ErrorKind.RUNTIME


class ScriptSyntaxError(ExecutionFailed):
    """Source text does not parse in the restricted language."""

    def __init__(self, message: str, line: int = 0, column: int = 0) -> None:
        self.line = line
        self.column = column
        location = f" (line {line}, column {column})" if line else ""
        super().__init__(f"{message}{location}")


class PolicyNotFound(KeyError):
    """No policy with the given id is registered."""

    def __init__(self, policy_id: str) -> None:
        self.policy_id = policy_id
        super().__init__(f"Policy not found: {policy_id}")

    def __str__(self) -> str:
        return f"Policy not found: {self.policy_id}"


_ERRORS_BY_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.CAPABILITY: CapabilityError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceeded,
    ErrorKind.CIRCUIT_OPEN: CircuitOpen,
    ErrorKind.DUPLICATE: DuplicateSuppressed,
    ErrorKind.TIMEOUT: ExecutionTimeout,
    ErrorKind.RUNTIME: ExecutionFailed,
}


def error_for(kind: "ErrorKind | str", message: str) -> SandboxError:
    """Exception instance for a reported ``ErrorKind``, e.g. for breaker predicates."""
    return _ERRORS_BY_KIND[ErrorKind(kind)](message)
