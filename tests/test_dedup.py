"""Tests for the in-memory deduplication ledger."""

from __future__ import annotations

import threading

import pytest

from policy_sandbox.config import DedupConfig
from policy_sandbox.dedup import DeduplicationLedger, content_hash


class TestContentHash:
    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_different_content_differs(self):
        assert content_hash({"a": 1}) != content_hash({"a": 2})

    def test_non_json_values_hash(self):
        from datetime import datetime

        digest = content_hash({"at": datetime(2024, 1, 1)})
        assert len(digest) == 64


class TestLedger:
    def test_claim_then_duplicate_then_expire(self, clock):
        ledger = DeduplicationLedger(dedup_window=60.0)
        digest = content_hash({"id": 1})
        assert ledger.is_duplicate("p1", digest) is False
        assert ledger.is_duplicate("p1", digest) is True
        clock.advance(61)
        assert ledger.is_duplicate("p1", digest) is False

    def test_window_boundary(self, clock):
        ledger = DeduplicationLedger(dedup_window=60.0)
        ledger.is_duplicate("p1", "d")
        clock.advance(59.9)
        assert ledger.is_duplicate("p1", "d") is True
        clock.advance(0.1)
        assert ledger.is_duplicate("p1", "d") is False

    def test_subjects_are_independent(self, clock):
        ledger = DeduplicationLedger()
        assert ledger.is_duplicate("p1", "d") is False
        assert ledger.is_duplicate("p2", "d") is False

    def test_release_allows_retry(self, clock):
        ledger = DeduplicationLedger()
        ledger.is_duplicate("p1", "d")
        ledger.release("p1", "d")
        assert ledger.is_duplicate("p1", "d") is False

    def test_record_refreshes_timestamp(self, clock):
        ledger = DeduplicationLedger(dedup_window=60.0)
        ledger.is_duplicate("p1", "d")
        clock.advance(50)
        ledger.record("p1", "d")
        clock.advance(50)
        assert ledger.is_duplicate("p1", "d") is True

    def test_sweep_purges_after_retention(self, clock):
        ledger = DeduplicationLedger(dedup_window=60.0, retention=600.0)
        ledger.is_duplicate("p1", "old")
        clock.advance(601)
        ledger.is_duplicate("p1", "new")
        assert ledger.sweep() == 1
        assert len(ledger) == 1

    def test_entries_survive_window_until_retention(self, clock):
        ledger = DeduplicationLedger(dedup_window=60.0, retention=600.0)
        ledger.is_duplicate("p1", "d")
        clock.advance(120)
        assert ledger.sweep() == 0
        assert len(ledger) == 1

    def test_lazy_sweep_by_interval(self, clock):
        ledger = DeduplicationLedger(dedup_window=1.0, retention=1.0, sweep_interval=3)
        ledger.is_duplicate("p", "a")
        ledger.is_duplicate("p", "b")
        clock.advance(5)
        ledger.is_duplicate("p", "c")
        assert len(ledger) == 1

    def test_clear(self, clock):
        ledger = DeduplicationLedger()
        ledger.is_duplicate("p", "a")
        ledger.clear()
        assert len(ledger) == 0

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            DeduplicationLedger(dedup_window=0)
        with pytest.raises(ValueError):
            DeduplicationLedger(dedup_window=120, retention=60)

    def test_from_config(self):
        ledger = DeduplicationLedger.from_config(DedupConfig(window_seconds=30, retention_seconds=90))
        assert ledger.dedup_window == 30
        assert ledger.retention == 90

    def test_concurrent_claims_single_winner(self):
        ledger = DeduplicationLedger()
        wins = []
        barrier = threading.Barrier(8)

        def claim():
            barrier.wait()
            if not ledger.is_duplicate("p", "same"):
                wins.append(1)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1
