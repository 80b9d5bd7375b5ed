"""Tests for the Redis-backed quota manager and dedup ledger."""
from __future__ import annotations

from unittest.mock import Mock

import pytest

fakeredis = pytest.importorskip("fakeredis")

from policy_sandbox.config import DedupConfig, QuotaConfig
from policy_sandbox.distributed import RedisDeduplicationLedger, RedisQuotaManager
from policy_sandbox.quota import REASON_COST, REASON_LOCKED, QuotaWindow


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis_client(server):
    return fakeredis.FakeRedis(server=server, decode_responses=True)


def _broken_client() -> Mock:
    client = Mock()
    for name in ("set", "get", "delete", "pipeline", "mget", "scan_iter", "incr"):
        getattr(client, name).side_effect = ConnectionError("redis down")
    return client


# ---------------------------------------------------------------------------
# RedisDeduplicationLedger
# ---------------------------------------------------------------------------


class TestRedisDedup:
    def test_claim_then_duplicate(self, fake_redis_client):
        ledger = RedisDeduplicationLedger(client=fake_redis_client)
        assert ledger.is_duplicate("p1", "abc") is False
        assert ledger.is_duplicate("p1", "abc") is True
        assert ledger.is_duplicate("p2", "abc") is False
        assert not ledger.is_using_fallback

    def test_claim_key_expires_with_window(self, fake_redis_client):
        ledger = RedisDeduplicationLedger(dedup_window=30.0, client=fake_redis_client)
        ledger.is_duplicate("p1", "abc")
        ttl = fake_redis_client.pttl("policy_sandbox:dedup:p1:abc")
        assert 0 < ttl <= 30_000

    def test_shared_across_processes(self, server):
        a = RedisDeduplicationLedger(client=fakeredis.FakeRedis(server=server, decode_responses=True))
        b = RedisDeduplicationLedger(client=fakeredis.FakeRedis(server=server, decode_responses=True))
        assert a.is_duplicate("p1", "abc") is False
        assert b.is_duplicate("p1", "abc") is True

    def test_release_and_record(self, fake_redis_client):
        ledger = RedisDeduplicationLedger(client=fake_redis_client)
        ledger.is_duplicate("p1", "abc")
        ledger.release("p1", "abc")
        assert ledger.is_duplicate("p1", "abc") is False
        ledger.record("p1", "xyz")
        assert ledger.is_duplicate("p1", "xyz") is True

    def test_clear_and_len(self, fake_redis_client):
        ledger = RedisDeduplicationLedger(client=fake_redis_client)
        fake_redis_client.set("unrelated", "1")
        ledger.is_duplicate("p1", "a")
        ledger.is_duplicate("p1", "b")
        assert len(ledger) == 2
        ledger.clear()
        assert len(ledger) == 0
        assert fake_redis_client.get("unrelated") == "1"
        assert ledger.sweep() == 0

    def test_falls_back_when_operation_fails(self):
        ledger = RedisDeduplicationLedger(client=_broken_client())
        assert ledger.is_duplicate("p1", "abc") is False
        assert ledger.is_using_fallback
        assert ledger.is_duplicate("p1", "abc") is True

    def test_raises_without_fallback(self):
        ledger = RedisDeduplicationLedger(client=_broken_client(), fallback_on_error=False)
        with pytest.raises(ConnectionError):
            ledger.is_duplicate("p1", "abc")

    def test_unreachable_url_uses_fallback(self):
        pytest.importorskip("redis")
        ledger = RedisDeduplicationLedger("redis://127.0.0.1:19999/0")
        assert ledger.is_using_fallback
        assert ledger.is_duplicate("p1", "abc") is False
        assert ledger.is_duplicate("p1", "abc") is True

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisDeduplicationLedger()

    def test_from_config(self, monkeypatch, fake_redis_client):
        import redis

        monkeypatch.setattr(redis, "from_url", lambda url, **kw: fake_redis_client)
        ledger = RedisDeduplicationLedger.from_config("redis://fake", DedupConfig(window_seconds=15))
        assert ledger.dedup_window == 15
        assert not ledger.is_using_fallback


# ---------------------------------------------------------------------------
# RedisQuotaManager
# ---------------------------------------------------------------------------


class TestRedisQuota:
    def test_limit_then_new_window(self, clock, fake_redis_client):
        quota = RedisQuotaManager(windows=[QuotaWindow(3, 60.0)], client=fake_redis_client)
        assert [quota.check_quota("p").allowed for _ in range(4)] == [True, True, True, False]
        clock.advance(61)
        assert quota.check_quota("p").allowed

    def test_rejection_rolled_back(self, clock, fake_redis_client):
        quota = RedisQuotaManager(windows=[QuotaWindow(2, 60.0)], client=fake_redis_client)
        quota.check_quota("p")
        quota.check_quota("p")
        decision = quota.check_quota("p")
        assert decision.reason == "minute_limit_exceeded"
        assert decision.remaining == 0
        assert quota.remaining("p") == 0
        bucket = int(clock.now // 60)
        assert fake_redis_client.get(f"policy_sandbox:quota:p:minute:{bucket}") == "2"

    def test_shared_counts(self, clock, server):
        a = RedisQuotaManager(
            windows=[QuotaWindow(2, 60.0)],
            client=fakeredis.FakeRedis(server=server, decode_responses=True),
        )
        b = RedisQuotaManager(
            windows=[QuotaWindow(2, 60.0)],
            client=fakeredis.FakeRedis(server=server, decode_responses=True),
        )
        assert a.check_quota("p").allowed
        assert b.check_quota("p").allowed
        assert not a.check_quota("p").allowed

    def test_cost_and_lockout(self, clock, fake_redis_client):
        quota = RedisQuotaManager(
            windows=[QuotaWindow(1, 60.0)],
            max_cost_per_request=2,
            max_violations=2,
            client=fake_redis_client,
        )
        assert quota.check_quota("p", cost=3).reason == REASON_COST
        quota.check_quota("p")
        quota.check_quota("p")
        clock.advance(120)
        assert quota.check_quota("p").reason == REASON_LOCKED

    def test_remaining_and_reset(self, clock, fake_redis_client):
        quota = RedisQuotaManager(windows=[QuotaWindow(10, 60.0)], client=fake_redis_client)
        quota.check_quota("a", cost=3)
        quota.check_quota("b")
        assert quota.remaining("a") == 7
        quota.reset("a")
        assert quota.remaining("a") == 10
        assert quota.remaining("b") == 9
        quota.reset()
        assert quota.remaining("b") == 10

    def test_multiple_windows(self, clock, fake_redis_client):
        quota = RedisQuotaManager(
            windows=[QuotaWindow(5, 60.0, "minute"), QuotaWindow(2, 3600.0, "hour")],
            client=fake_redis_client,
        )
        quota.check_quota("p")
        quota.check_quota("p")
        decision = quota.check_quota("p")
        assert decision.reason == "hour_limit_exceeded"

    def test_falls_back_when_operation_fails(self, clock):
        quota = RedisQuotaManager(windows=[QuotaWindow(1, 60.0)], client=_broken_client())
        assert quota.check_quota("p").allowed
        assert quota.is_using_fallback
        assert not quota.check_quota("p").allowed

    def test_from_config(self, monkeypatch, fake_redis_client):
        import redis

        monkeypatch.setattr(redis, "from_url", lambda url, **kw: fake_redis_client)
        quota = RedisQuotaManager.from_config(
            "redis://fake", QuotaConfig(max_per_minute=60, max_per_hour=500)
        )
        assert [w.name for w in quota.windows] == ["minute", "hour"]
        assert quota.remaining("nobody") == 60

    def test_close_is_safe(self):
        quota = RedisQuotaManager(windows=[QuotaWindow(1, 60.0)], client=_broken_client())
        quota.close()
