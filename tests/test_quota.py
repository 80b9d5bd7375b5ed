"""Tests for QuotaManager."""

from __future__ import annotations

import threading

import pytest

from policy_sandbox.config import QuotaConfig
from policy_sandbox.quota import REASON_COST, REASON_LOCKED, QuotaManager, QuotaWindow


class TestFixedWindow:
    def test_limit_then_reset_after_window(self, clock):
        quota = QuotaManager([QuotaWindow(10, 60.0)])
        for _ in range(10):
            assert quota.check_quota("p1").allowed
        decision = quota.check_quota("p1")
        assert not decision.allowed
        assert decision.reason == "minute_limit_exceeded"
        assert decision.remaining == 0

        clock.advance(61)
        assert quota.check_quota("p1").allowed

    def test_window_boundary_is_exclusive(self, clock):
        quota = QuotaManager([QuotaWindow(1, 60.0)])
        assert quota.check_quota("p1").allowed
        clock.advance(60)
        assert not quota.check_quota("p1").allowed
        clock.advance(0.5)
        assert quota.check_quota("p1").allowed

    def test_subjects_are_independent(self, clock):
        quota = QuotaManager([QuotaWindow(1, 60.0)])
        assert quota.check_quota("a").allowed
        assert quota.check_quota("b").allowed
        assert not quota.check_quota("a").allowed

    def test_all_windows_must_admit(self, clock):
        quota = QuotaManager([QuotaWindow(5, 60.0, "minute"), QuotaWindow(6, 3600.0, "hour")])
        for _ in range(5):
            assert quota.check_quota("p").allowed
        clock.advance(61)
        assert quota.check_quota("p").allowed
        decision = quota.check_quota("p")
        assert not decision.allowed
        assert decision.reason == "hour_limit_exceeded"

    def test_rejection_does_not_charge(self, clock):
        quota = QuotaManager([QuotaWindow(3, 60.0)])
        quota.check_quota("p", cost=2)
        assert not quota.check_quota("p", cost=2).allowed
        assert quota.remaining("p") == 1
        assert quota.check_quota("p", cost=1).allowed


class TestCostAndViolations:
    def test_cost_above_ceiling_rejected(self, clock):
        quota = QuotaManager([QuotaWindow(100, 60.0)], max_cost_per_request=5)
        decision = quota.check_quota("p", cost=6)
        assert not decision.allowed
        assert decision.reason == REASON_COST

    def test_lockout_after_violations(self, clock):
        quota = QuotaManager([QuotaWindow(1, 60.0)], max_violations=2)
        quota.check_quota("p")
        quota.check_quota("p")
        quota.check_quota("p")
        clock.advance(120)
        decision = quota.check_quota("p")
        assert not decision.allowed
        assert decision.reason == REASON_LOCKED

    def test_cleanup_keeps_locked_subjects(self, clock):
        quota = QuotaManager([QuotaWindow(1, 60.0)], max_violations=1)
        quota.check_quota("idle")
        quota.check_quota("locked")
        quota.check_quota("locked")
        clock.advance(7200)
        assert quota.cleanup(3600) == 1
        assert quota.snapshot("idle") is None
        assert quota.snapshot("locked")["violations"] == 1


class TestQuotaQueries:
    def test_remaining_for_unseen_subject(self):
        quota = QuotaManager([QuotaWindow(10, 60.0), QuotaWindow(4, 3600.0, "hour")])
        assert quota.remaining("nobody") == 4

    def test_snapshot_and_reset(self, clock):
        quota = QuotaManager([QuotaWindow(10, 60.0)])
        quota.check_quota("p", cost=3)
        snap = quota.snapshot("p")
        assert snap["counts"] == {"minute": 3}
        assert snap["violations"] == 0
        quota.reset("p")
        assert quota.snapshot("p") is None
        quota.check_quota("q")
        quota.reset()
        assert quota.snapshot("q") is None

    def test_from_config(self):
        quota = QuotaManager.from_config(QuotaConfig(max_per_minute=5, max_per_hour=50))
        assert [w.name for w in quota.windows] == ["minute", "hour"]
        assert quota.windows[1].limit == 50

    def test_invalid_window_rejected(self):
        with pytest.raises(ValueError):
            QuotaWindow(0, 60.0)
        with pytest.raises(ValueError):
            QuotaManager(max_cost_per_request=0)


class TestConcurrency:
    def test_concurrent_attempts_never_exceed_limit(self):
        quota = QuotaManager([QuotaWindow(50, 60.0)])
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                if quota.check_quota("shared").allowed:
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(admitted) == 50
