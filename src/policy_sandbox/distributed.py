"""Redis-backed quota and dedup ledger for cross-process coordination.

Drop-in replacements for :class:`~policy_sandbox.quota.QuotaManager` and
:class:`~policy_sandbox.dedup.DeduplicationLedger` when several agent
processes share subjects. Requires the ``redis`` package; when Redis is
unreachable both fall back to the in-process implementation and retry the
connection at most every few seconds.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional, Sequence

from policy_sandbox.config import DedupConfig, QuotaConfig
from policy_sandbox.dedup import DeduplicationLedger
from policy_sandbox.quota import (
    REASON_COST,
    REASON_LOCKED,
    QuotaDecision,
    QuotaManager,
    QuotaWindow,
)

logger = logging.getLogger(__name__)


class _RedisClient:
    """Connection handling shared by the Redis-backed components."""

    KEY_PREFIX = "policy_sandbox:"

    # Minimum seconds between reconnect attempts while on fallback.
    _RECONNECT_INTERVAL: float = 5.0

    def __init__(
        self,
        redis_url: Optional[str],
        client: Any,
        fallback_on_error: bool,
    ) -> None:
        self._redis_url = redis_url
        self._fallback_on_error = fallback_on_error
        self._using_fallback = False
        self._last_reconnect_attempt = 0.0
        self._conn_lock = threading.Lock()
        self._client = client
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            self._connect()

    def _connect(self) -> None:
        try:
            import redis

            self._client = redis.from_url(self._redis_url, decode_responses=True)
            self._client.ping()
            self._using_fallback = False
        except Exception as exc:
            if not self._fallback_on_error:
                raise
            logger.warning(
                "[SANDBOX_REDIS] %s: cannot connect to Redis (%s). Using local fallback.",
                type(self).__name__, exc,
            )
            self._using_fallback = True

    def _available(self) -> bool:
        if self._using_fallback and self._redis_url and self._fallback_on_error:
            with self._conn_lock:
                now = time.monotonic()
                if self._using_fallback and now - self._last_reconnect_attempt >= self._RECONNECT_INTERVAL:
                    self._last_reconnect_attempt = now
                    self._connect()
                    if not self._using_fallback:
                        logger.info("[SANDBOX_REDIS] %s reconnected", type(self).__name__)
        return not self._using_fallback and self._client is not None

    def _fail(self, operation: str, exc: Exception) -> None:
        if not self._fallback_on_error:
            raise exc
        logger.error(
            "[SANDBOX_REDIS] %s.%s failed: %s. Using local fallback.",
            type(self).__name__, operation, exc,
        )
        with self._conn_lock:
            self._using_fallback = True
            self._last_reconnect_attempt = time.monotonic()

    @property
    def is_using_fallback(self) -> bool:
        return self._using_fallback

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.close()
        except Exception as exc:
            logger.debug("[SANDBOX_REDIS] close failed: %s", exc)


class RedisDeduplicationLedger(_RedisClient):
    """Dedup ledger on Redis ``SET NX PX``.

    Each claimed pair is a key that expires after ``dedup_window``; Redis
    expiry replaces the local retention sweep.

    Args:
        redis_url: Redis connection URL.
        dedup_window: Seconds during which a repeat is suppressed.
        client: An existing Redis client (takes precedence over the URL).
        fallback_on_error: Use an in-process ledger when Redis fails.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        dedup_window: float = 60.0,
        *,
        client: Any = None,
        fallback_on_error: bool = True,
    ) -> None:
        if dedup_window <= 0:
            raise ValueError("dedup_window must be > 0")
        self.dedup_window = dedup_window
        self._fallback = DeduplicationLedger(dedup_window, retention=max(dedup_window, 3600.0))
        super().__init__(redis_url, client, fallback_on_error)

    @classmethod
    def from_config(cls, redis_url: str, config: DedupConfig) -> RedisDeduplicationLedger:
        return cls(redis_url, config.window_seconds)

    def _key(self, subject_id: str, digest: str) -> str:
        return f"{self.KEY_PREFIX}dedup:{subject_id}:{digest}"

    def is_duplicate(self, subject_id: str, digest: str) -> bool:
        if not self._available():
            return self._fallback.is_duplicate(subject_id, digest)
        try:
            claimed = self._client.set(
                self._key(subject_id, digest),
                repr(time.time()),
                nx=True,
                px=int(self.dedup_window * 1000),
            )
        except Exception as exc:
            self._fail("is_duplicate", exc)
            return self._fallback.is_duplicate(subject_id, digest)
        if not claimed:
            logger.debug("[SANDBOX_DEDUP] Duplicate suppressed for %s", subject_id)
        return not claimed

    def record(self, subject_id: str, digest: str) -> None:
        if not self._available():
            self._fallback.record(subject_id, digest)
            return
        try:
            self._client.set(
                self._key(subject_id, digest),
                repr(time.time()),
                px=int(self.dedup_window * 1000),
            )
        except Exception as exc:
            self._fail("record", exc)
            self._fallback.record(subject_id, digest)

    def release(self, subject_id: str, digest: str) -> None:
        self._fallback.release(subject_id, digest)
        if not self._available():
            return
        try:
            self._client.delete(self._key(subject_id, digest))
        except Exception as exc:
            self._fail("release", exc)

    def sweep(self) -> int:
        """Sweep the local fallback; Redis entries expire on their own."""
        return self._fallback.sweep()

    def clear(self) -> None:
        self._fallback.clear()
        if not self._available():
            return
        try:
            keys = list(self._client.scan_iter(match=f"{self.KEY_PREFIX}dedup:*"))
            if keys:
                self._client.delete(*keys)
        except Exception as exc:
            self._fail("clear", exc)

    def __len__(self) -> int:
        if not self._available():
            return len(self._fallback)
        try:
            return sum(1 for _ in self._client.scan_iter(match=f"{self.KEY_PREFIX}dedup:*"))
        except Exception as exc:
            self._fail("len", exc)
            return len(self._fallback)


class RedisQuotaManager(_RedisClient):
    """Fixed-window quota on Redis counters.

    Windows are aligned to multiples of ``window_seconds`` since the epoch
    (one counter key per subject, window and bucket), so every process
    agrees on window boundaries. All windows are charged in one
    ``INCRBY``+``EXPIRE`` pipeline; a rejected attempt is rolled back.

    Args:
        redis_url: Redis connection URL.
        windows: Windows checked together, as for :class:`QuotaManager`.
        max_cost_per_request: Absolute ceiling on a single attempt's cost.
        max_violations: Lifetime rejections before lock-out. 0 disables.
        client: An existing Redis client (takes precedence over the URL).
        fallback_on_error: Use an in-process manager when Redis fails.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        windows: Optional[Sequence[QuotaWindow]] = None,
        max_cost_per_request: int = 10,
        max_violations: int = 0,
        *,
        client: Any = None,
        fallback_on_error: bool = True,
    ) -> None:
        self._fallback = QuotaManager(windows, max_cost_per_request, max_violations)
        self._windows = self._fallback.windows
        self._max_cost = max_cost_per_request
        self._max_violations = max_violations
        super().__init__(redis_url, client, fallback_on_error)

    @classmethod
    def from_config(cls, redis_url: str, config: QuotaConfig) -> RedisQuotaManager:
        local = QuotaManager.from_config(config)
        return cls(
            redis_url,
            local.windows,
            max_cost_per_request=config.max_cost_per_request,
            max_violations=config.max_violations,
        )

    @property
    def windows(self) -> tuple[QuotaWindow, ...]:
        return self._windows

    def _window_key(self, subject_id: str, window: QuotaWindow, now: float) -> str:
        bucket = int(now // window.window_seconds)
        return f"{self.KEY_PREFIX}quota:{subject_id}:{window.name}:{bucket}"

    def _violations_key(self, subject_id: str) -> str:
        return f"{self.KEY_PREFIX}quota:{subject_id}:violations"

    def check_quota(self, subject_id: str, cost: int = 1) -> QuotaDecision:
        if not self._available():
            return self._fallback.check_quota(subject_id, cost)
        now = time.time()
        keys = [self._window_key(subject_id, w, now) for w in self._windows]
        try:
            if self._max_violations:
                violations = int(self._client.get(self._violations_key(subject_id)) or 0)
                if violations >= self._max_violations:
                    return QuotaDecision(False, 0, REASON_LOCKED)
            if cost > self._max_cost:
                return self._reject(subject_id, REASON_COST, 0)

            pipe = self._client.pipeline()
            for key, window in zip(keys, self._windows):
                pipe.incrby(key, cost)
                pipe.expire(key, int(window.window_seconds) + 1)
            counts = [int(v) for v in pipe.execute()[0::2]]

            for key, window, count in zip(keys, self._windows, counts):
                if count > window.limit:
                    rollback = self._client.pipeline()
                    for k in keys:
                        rollback.decrby(k, cost)
                    rollback.execute()
                    remaining = max(0, min(w.limit - (c - cost) for w, c in zip(self._windows, counts)))
                    return self._reject(subject_id, window.reason, remaining)
        except Exception as exc:
            self._fail("check_quota", exc)
            return self._fallback.check_quota(subject_id, cost)

        remaining = max(0, min(w.limit - c for w, c in zip(self._windows, counts)))
        logger.debug(
            "[SANDBOX_QUOTA] %s admitted via redis (cost=%d, remaining=%d)",
            subject_id, cost, remaining,
        )
        return QuotaDecision(True, remaining)

    def remaining(self, subject_id: str) -> int:
        if not self._available():
            return self._fallback.remaining(subject_id)
        now = time.time()
        try:
            values = self._client.mget([self._window_key(subject_id, w, now) for w in self._windows])
        except Exception as exc:
            self._fail("remaining", exc)
            return self._fallback.remaining(subject_id)
        return max(0, min(w.limit - int(v or 0) for w, v in zip(self._windows, values)))

    def reset(self, subject_id: Optional[str] = None) -> None:
        self._fallback.reset(subject_id)
        if not self._available():
            return
        if subject_id is None:
            pattern = f"{self.KEY_PREFIX}quota:*"
        else:
            pattern = f"{self.KEY_PREFIX}quota:{subject_id}:*"
        try:
            keys = list(self._client.scan_iter(match=pattern))
            if keys:
                self._client.delete(*keys)
        except Exception as exc:
            self._fail("reset", exc)

    def cleanup(self, max_idle_seconds: float = 3600.0) -> int:
        """Clean up the local fallback; Redis counters expire on their own."""
        return self._fallback.cleanup(max_idle_seconds)

    def _reject(self, subject_id: str, reason: str, remaining: int) -> QuotaDecision:
        violations = int(self._client.incr(self._violations_key(subject_id)))
        logger.warning(
            "[SANDBOX_QUOTA] %s rejected via redis: %s (violations=%d)",
            subject_id, reason, violations,
        )
        return QuotaDecision(False, remaining, reason)
