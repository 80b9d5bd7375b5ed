"""Consecutive-failure circuit breakers, one per subject.

Tracks consecutive failures and opens the circuit when the threshold is
reached. Once the cooldown has elapsed the circuit goes half-open and grants
a single probe; a successful probe closes it, a failed probe reopens it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from policy_sandbox.config import CircuitBreakerConfig

# Predicate receives an exception and returns True if it should count as a
# circuit-breaker failure, False to ignore.
FailurePredicate = Callable[[BaseException], bool]

logger = logging.getLogger(__name__)

REASON_OPEN = "circuit open"
REASON_PROBE_IN_FLIGHT = "circuit half-open: probe already in flight"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests allowed
    OPEN = "open"  # Failure threshold reached, requests blocked
    HALF_OPEN = "half-open"  # Cooldown elapsed, one probe allowed


@dataclass(frozen=True)
class BreakerDecision:
    """Outcome of a breaker check."""

    allowed: bool
    state: CircuitState
    reason: Optional[str] = None


@dataclass
class CircuitBreaker:
    """Circuit breaker for a single subject.

    Example:
        breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0)
        if breaker.check().allowed:
            result = engine.execute_action(code, context, functions)
            if result.success:
                breaker.record_success()
            else:
                breaker.record_failure()
    """

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    failure_predicate: Optional[FailurePredicate] = None

    _current: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _successes: int = field(default=0, init=False)
    _last_failure_at: Optional[float] = field(default=None, init=False)
    _probe_out: bool = field(default=False, init=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        with self._guard:
            return self._observe_locked()

    def check(self) -> BreakerDecision:
        """Allow (closed, or the single half-open probe) or deny (open)."""
        with self._guard:
            current = self._observe_locked()
            if current is CircuitState.OPEN:
                return BreakerDecision(False, current, REASON_OPEN)
            if current is CircuitState.HALF_OPEN:
                if self._probe_out:
                    return BreakerDecision(False, current, REASON_PROBE_IN_FLIGHT)
                self._probe_out = True
            return BreakerDecision(True, current)

    def release(self) -> None:
        """Give back a granted probe when no outcome will be recorded for it."""
        with self._guard:
            if self._current is CircuitState.HALF_OPEN:
                self._probe_out = False

    def record_success(self) -> None:
        with self._guard:
            self._successes += 1
            self._consecutive_failures = 0
            self._probe_out = False
            if self._current is CircuitState.HALF_OPEN:
                self._move_locked(CircuitState.CLOSED, "closed after successful probe")

    def record_failure(self, *, error: Optional[BaseException] = None) -> bool:
        """Count a failure toward the threshold.

        When both *error* and ``failure_predicate`` are given, the predicate
        decides whether the failure counts. A predicate that raises is
        treated as "count it".

        Returns:
            ``True`` if the failure was counted, ``False`` if filtered.
        """
        if error is not None and not self._counts(error):
            return False

        with self._guard:
            self._consecutive_failures += 1
            self._last_failure_at = time.time()
            self._probe_out = False
            if self._current is CircuitState.HALF_OPEN:
                self._move_locked(CircuitState.OPEN, "reopened after failed probe")
            elif self._consecutive_failures >= self.failure_threshold:
                if self._current is CircuitState.CLOSED:
                    self._move_locked(
                        CircuitState.OPEN,
                        f"opened after {self._consecutive_failures} consecutive failures",
                    )
        return True

    def reset(self) -> None:
        with self._guard:
            self._current = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._successes = 0
            self._last_failure_at = None
            self._probe_out = False
        logger.info("[SANDBOX_CIRCUIT] Circuit reset")

    @property
    def failure_count(self) -> int:
        """Consecutive failures since the last success or half-open transition."""
        with self._guard:
            return self._consecutive_failures

    @property
    def success_count(self) -> int:
        with self._guard:
            return self._successes

    def to_dict(self) -> Dict:
        with self._guard:
            return {
                "state": self._observe_locked().value,
                "failure_count": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "cooldown_seconds": self.cooldown_seconds,
                "last_failure_time": self._last_failure_at,
                "success_count": self._successes,
            }

    def _counts(self, error: BaseException) -> bool:
        if self.failure_predicate is None:
            return True
        try:
            counted = bool(self.failure_predicate(error))
        except Exception:
            logger.warning(
                "[SANDBOX_CIRCUIT] failure_predicate raised on %s; counting it",
                type(error).__name__,
            )
            return True
        if not counted:
            logger.debug("[SANDBOX_CIRCUIT] %s not counted", type(error).__name__)
        return counted

    def _observe_locked(self) -> CircuitState:
        # OPEN turns HALF_OPEN only once the cooldown has strictly elapsed.
        if (
            self._current is CircuitState.OPEN
            and self._last_failure_at is not None
            and time.time() - self._last_failure_at > self.cooldown_seconds
        ):
            self._consecutive_failures = 0
            self._probe_out = False
            self._move_locked(CircuitState.HALF_OPEN, "half-open, allowing one probe")
        return self._current

    def _move_locked(self, target: CircuitState, message: str) -> None:
        self._current = target
        if target is CircuitState.OPEN:
            logger.warning("[SANDBOX_CIRCUIT] Circuit %s", message)
        else:
            logger.info("[SANDBOX_CIRCUIT] Circuit %s", message)


class CircuitBreakerRegistry:
    """Lazily created :class:`CircuitBreaker` per subject id.

    Subjects never share a breaker, so one failing policy cannot open the
    circuit of another.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        failure_predicate: Optional[FailurePredicate] = None,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.failure_predicate = failure_predicate
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CircuitBreakerConfig) -> CircuitBreakerRegistry:
        return cls(config.failure_threshold, config.cooldown_seconds)

    def get(self, subject_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(subject_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    failure_predicate=self.failure_predicate,
                )
                self._breakers[subject_id] = breaker
            return breaker

    def check_breaker(self, subject_id: str) -> BreakerDecision:
        decision = self.get(subject_id).check()
        if not decision.allowed:
            logger.debug(
                "[SANDBOX_CIRCUIT] %s rejected: %s", subject_id, decision.reason
            )
        return decision

    def record_outcome(
        self,
        subject_id: str,
        success: bool,
        error: Optional[BaseException] = None,
    ) -> None:
        breaker = self.get(subject_id)
        if success:
            breaker.record_success()
        elif not breaker.record_failure(error=error):
            # An ignored failure settles a half-open probe without a verdict.
            breaker.release()

    def release(self, subject_id: str) -> None:
        with self._lock:
            breaker = self._breakers.get(subject_id)
        if breaker is not None:
            breaker.release()

    def state(self, subject_id: str) -> CircuitState:
        with self._lock:
            breaker = self._breakers.get(subject_id)
        return CircuitState.CLOSED if breaker is None else breaker.state

    def reset(self, subject_id: Optional[str] = None) -> None:
        """Reset one subject's breaker, or all of them."""
        with self._lock:
            targets = (
                list(self._breakers.values())
                if subject_id is None
                else [b for k, b in self._breakers.items() if k == subject_id]
            )
        for breaker in targets:
            breaker.reset()

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            items = list(self._breakers.items())
        return {key: breaker.to_dict() for key, breaker in items}

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)


# ---------------------------------------------------------------------------
# Built-in failure predicate factories
# ---------------------------------------------------------------------------


def ignore_exception_types(*exception_types: type) -> FailurePredicate:
    """Create a predicate that does not count the given exception types.

    Example::

        registry = CircuitBreakerRegistry(
            failure_predicate=ignore_exception_types(CapabilityError),
        )
    """
    def predicate(error: BaseException) -> bool:
        return not isinstance(error, exception_types)
    return predicate


def count_exception_types(*exception_types: type) -> FailurePredicate:
    """Create a predicate that only counts the given exception types as failures."""
    def predicate(error: BaseException) -> bool:
        return isinstance(error, exception_types)
    return predicate
