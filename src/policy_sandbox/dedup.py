"""Deduplication ledger of (subject id, content hash) pairs.

A pair seen less than ``dedup_window`` seconds ago is a duplicate. Entries
outlive the window until the ``retention`` horizon and are purged by a lazy
sweep, never by explicit per-entry expiry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Dict, Tuple

from policy_sandbox.config import DedupConfig

logger = logging.getLogger(__name__)


def content_hash(value: Any) -> str:
    """SHA-256 over the canonical JSON form of *value*.

    Key order and whitespace do not affect the hash, so two deliveries of the
    same event collapse to one digest.
    """
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class DeduplicationLedger:
    """In-memory dedup ledger. Thread-safe.

    :meth:`is_duplicate` is an atomic check-and-claim: a miss records the
    pair in the same critical section, so of two concurrent deliveries of the
    same event exactly one sees ``False``.

    Args:
        dedup_window: Seconds during which a repeat is suppressed.
        retention: Seconds an entry is kept at all. Must be >= dedup_window.
        sweep_interval: Run a sweep after this many new entries.
    """

    def __init__(
        self,
        dedup_window: float = 60.0,
        retention: float = 3600.0,
        sweep_interval: int = 100,
    ) -> None:
        if dedup_window <= 0:
            raise ValueError("dedup_window must be > 0")
        if retention < dedup_window:
            raise ValueError("retention must be >= dedup_window")
        self.dedup_window = dedup_window
        self.retention = retention
        self._sweep_interval = max(1, sweep_interval)
        self._entries: Dict[Tuple[str, str], float] = {}
        self._since_sweep = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: DedupConfig) -> DeduplicationLedger:
        return cls(config.window_seconds, config.retention_seconds, config.sweep_interval)

    def is_duplicate(self, subject_id: str, digest: str) -> bool:
        """True if the pair was recorded within the window; otherwise claim it."""
        now = time.time()
        key = (subject_id, digest)
        with self._lock:
            seen = self._entries.get(key)
            if seen is not None and now - seen < self.dedup_window:
                logger.debug("[SANDBOX_DEDUP] Duplicate suppressed for %s", subject_id)
                return True
            self._store_locked(key, now)
            return False

    def record(self, subject_id: str, digest: str) -> None:
        """Record (or refresh) the pair as executed now."""
        with self._lock:
            self._store_locked((subject_id, digest), time.time())

    def release(self, subject_id: str, digest: str) -> None:
        """Forget a claim so that a retry of the same event can run."""
        with self._lock:
            self._entries.pop((subject_id, digest), None)

    def sweep(self) -> int:
        """Remove entries older than the retention horizon. Returns count removed."""
        with self._lock:
            return self._sweep_locked(time.time())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._since_sweep = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _store_locked(self, key: Tuple[str, str], now: float) -> None:
        is_new = key not in self._entries
        self._entries[key] = now
        if is_new:
            self._since_sweep += 1
            if self._since_sweep >= self._sweep_interval:
                self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        cutoff = now - self.retention
        stale = [key for key, ts in self._entries.items() if ts < cutoff]
        for key in stale:
            del self._entries[key]
        self._since_sweep = 0
        if stale:
            logger.debug("[SANDBOX_DEDUP] Swept %d expired entries", len(stale))
        return len(stale)
