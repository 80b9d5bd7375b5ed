"""Per-subject execution quota.

Fixed windows keyed by subject id (policy id, caller id, or an IP+endpoint
composite). A window resets once ``now - window_start > window_seconds``.
Quota counts attempts, not successes: an admitted attempt is charged even if
the execution that follows fails.

Thread-safe. Check and increment happen under one lock, so two concurrent
attempts can never both pass on pre-increment state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from policy_sandbox.config import QuotaConfig

logger = logging.getLogger(__name__)

REASON_COST = "cost_exceeds_limit"
REASON_LOCKED = "too_many_violations"


@dataclass(frozen=True)
class QuotaWindow:
    """A ceiling of *limit* units per *window_seconds*."""

    limit: int
    window_seconds: float
    name: str = "minute"

    def __post_init__(self) -> None:
        if self.limit <= 0:
            raise ValueError("limit must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    @property
    def reason(self) -> str:
        return f"{self.name}_limit_exceeded"


@dataclass
class QuotaState:
    """Counters for one subject. ``counts``/``window_starts`` align with the windows."""

    counts: List[int]
    window_starts: List[float]
    violations: int = 0
    last_seen: float = field(default_factory=time.time)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of :meth:`QuotaManager.check_quota`."""

    allowed: bool
    remaining: int
    reason: Optional[str] = None


class QuotaManager:
    """Fixed-window quota keyed by subject id.

    Args:
        windows: One or more windows checked together. An attempt is
            admitted only when every window has room for it.
        max_cost_per_request: Absolute ceiling on a single attempt's cost.
        max_violations: Lifetime rejections after which the subject is
            locked out. 0 disables the lock-out.

    Example:
        quota = QuotaManager([QuotaWindow(10, 60.0)])
        decision = quota.check_quota("policy-1")
        if not decision.allowed:
            print(decision.reason)
    """

    def __init__(
        self,
        windows: Optional[Sequence[QuotaWindow]] = None,
        max_cost_per_request: int = 10,
        max_violations: int = 0,
    ) -> None:
        self._windows: tuple[QuotaWindow, ...] = tuple(windows or (QuotaWindow(100, 60.0),))
        if max_cost_per_request <= 0:
            raise ValueError("max_cost_per_request must be > 0")
        self._max_cost = max_cost_per_request
        self._max_violations = max_violations
        self._states: Dict[str, QuotaState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: QuotaConfig) -> QuotaManager:
        windows = [QuotaWindow(config.max_per_minute, 60.0, "minute")]
        if config.max_per_hour > 0:
            windows.append(QuotaWindow(config.max_per_hour, 3600.0, "hour"))
        return cls(
            windows,
            max_cost_per_request=config.max_cost_per_request,
            max_violations=config.max_violations,
        )

    @property
    def windows(self) -> tuple[QuotaWindow, ...]:
        return self._windows

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_quota(self, subject_id: str, cost: int = 1) -> QuotaDecision:
        """Admit or reject one attempt of *cost* units for *subject_id*.

        On admission every window is charged. On rejection nothing is
        charged and the subject's lifetime violation counter increments.
        """
        now = time.time()
        with self._lock:
            state = self._state_locked(subject_id, now)
            self._roll_locked(state, now)
            state.last_seen = now

            if self._max_violations and state.violations >= self._max_violations:
                return QuotaDecision(False, 0, REASON_LOCKED)

            if cost > self._max_cost:
                return self._reject_locked(subject_id, state, REASON_COST)

            for idx, window in enumerate(self._windows):
                if state.counts[idx] + cost > window.limit:
                    return self._reject_locked(subject_id, state, window.reason)

            for idx in range(len(self._windows)):
                state.counts[idx] += cost
            remaining = self._remaining_locked(state)

        logger.debug(
            "[SANDBOX_QUOTA] %s admitted (cost=%d, remaining=%d)",
            subject_id, cost, remaining,
        )
        return QuotaDecision(True, remaining)

    def remaining(self, subject_id: str) -> int:
        """Smallest remaining headroom across windows, without charging."""
        now = time.time()
        with self._lock:
            state = self._states.get(subject_id)
            if state is None:
                return min(w.limit for w in self._windows)
            self._roll_locked(state, now)
            return self._remaining_locked(state)

    def snapshot(self, subject_id: str) -> Optional[dict]:
        """Plain-dict copy of a subject's counters, or None if unseen."""
        with self._lock:
            state = self._states.get(subject_id)
            if state is None:
                return None
            return {
                "counts": {w.name: c for w, c in zip(self._windows, state.counts)},
                "window_starts": {
                    w.name: s for w, s in zip(self._windows, state.window_starts)
                },
                "violations": state.violations,
            }

    def reset(self, subject_id: Optional[str] = None) -> None:
        """Forget one subject, or every subject when *subject_id* is None."""
        with self._lock:
            if subject_id is None:
                self._states.clear()
            else:
                self._states.pop(subject_id, None)

    def cleanup(self, max_idle_seconds: float = 3600.0) -> int:
        """Drop subjects idle for longer than *max_idle_seconds*.

        Locked-out subjects are kept so that the lock-out survives.
        """
        cutoff = time.time() - max_idle_seconds
        with self._lock:
            stale = [
                key for key, state in self._states.items()
                if state.last_seen < cutoff
                and not (self._max_violations and state.violations >= self._max_violations)
            ]
            for key in stale:
                del self._states[key]
        if stale:
            logger.debug("[SANDBOX_QUOTA] Cleaned up %d idle subjects", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _state_locked(self, subject_id: str, now: float) -> QuotaState:
        state = self._states.get(subject_id)
        if state is None:
            state = QuotaState(
                counts=[0] * len(self._windows),
                window_starts=[now] * len(self._windows),
                last_seen=now,
            )
            self._states[subject_id] = state
        return state

    def _roll_locked(self, state: QuotaState, now: float) -> None:
        for idx, window in enumerate(self._windows):
            if now - state.window_starts[idx] > window.window_seconds:
                state.counts[idx] = 0
                state.window_starts[idx] = now

    def _remaining_locked(self, state: QuotaState) -> int:
        return max(
            0,
            min(w.limit - c for w, c in zip(self._windows, state.counts)),
        )

    def _reject_locked(self, subject_id: str, state: QuotaState, reason: str) -> QuotaDecision:
        state.violations += 1
        logger.warning(
            "[SANDBOX_QUOTA] %s rejected: %s (violations=%d)",
            subject_id, reason, state.violations,
        )
        return QuotaDecision(False, self._remaining_locked(state), reason)
