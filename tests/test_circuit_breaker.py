"""Tests for CircuitBreaker and CircuitBreakerRegistry, including the HALF_OPEN probe guard."""

from __future__ import annotations

import threading

from policy_sandbox.circuit_breaker import (
    REASON_OPEN,
    REASON_PROBE_IN_FLIGHT,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    count_exception_types,
    ignore_exception_types,
)
from policy_sandbox.config import CircuitBreakerConfig
from policy_sandbox.errors import CapabilityError, ExecutionFailed


class TestCircuitBreakerBasic:
    def test_initial_state_is_closed(self):
        cb = CircuitBreaker()
        assert cb.state == CircuitState.CLOSED
        assert cb.check().allowed

    def test_opens_after_threshold(self, clock):
        cb = CircuitBreaker(failure_threshold=3)
        for _ in range(2):
            cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_check_denies_when_open(self, clock):
        cb = CircuitBreaker(failure_threshold=1)
        cb.record_failure()
        decision = cb.check()
        assert not decision.allowed
        assert decision.reason == REASON_OPEN

    def test_success_resets_consecutive_count(self, clock):
        cb = CircuitBreaker(failure_threshold=2)
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1
        assert cb.success_count == 1

    def test_reset(self, clock):
        cb = CircuitBreaker(failure_threshold=1)
        cb.record_failure()
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0


class TestHalfOpen:
    def test_cooldown_must_strictly_elapse(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        clock.advance(60)
        assert cb.state == CircuitState.OPEN
        clock.advance(0.1)
        assert cb.state == CircuitState.HALF_OPEN

    def test_single_probe_allowed(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        clock.advance(61)
        assert cb.check().allowed
        second = cb.check()
        assert not second.allowed
        assert second.reason == REASON_PROBE_IN_FLIGHT

    def test_successful_probe_closes(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        clock.advance(61)
        cb.check()
        cb.record_success()
        assert cb.state == CircuitState.CLOSED
        assert cb.check().allowed

    def test_failed_probe_reopens(self, clock):
        cb = CircuitBreaker(failure_threshold=5, cooldown_seconds=60.0)
        for _ in range(5):
            cb.record_failure()
        clock.advance(61)
        cb.check()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        clock.advance(30)
        assert not cb.check().allowed

    def test_release_returns_probe_slot(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        clock.advance(61)
        assert cb.check().allowed
        cb.release()
        assert cb.check().allowed

    def test_concurrent_probe_guard(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        clock.advance(61)
        results = []
        barrier = threading.Barrier(10)

        def probe():
            barrier.wait()
            results.append(cb.check().allowed)

        threads = [threading.Thread(target=probe) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1

    def test_to_dict(self, clock):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60.0)
        cb.record_failure()
        data = cb.to_dict()
        assert data["state"] == "open"
        assert data["failure_count"] == 1
        assert data["last_failure_time"] == clock.now


class TestFailurePredicate:
    def test_ignored_errors_do_not_count(self, clock):
        cb = CircuitBreaker(
            failure_threshold=1,
            failure_predicate=ignore_exception_types(CapabilityError),
        )
        assert cb.record_failure(error=CapabilityError("denied")) is False
        assert cb.state == CircuitState.CLOSED
        assert cb.record_failure(error=ExecutionFailed("boom")) is True
        assert cb.state == CircuitState.OPEN

    def test_count_only_listed_types(self, clock):
        cb = CircuitBreaker(
            failure_threshold=1,
            failure_predicate=count_exception_types(ExecutionFailed),
        )
        cb.record_failure(error=ValueError("x"))
        assert cb.state == CircuitState.CLOSED

    def test_ignored_failure_returns_probe(self, clock):
        registry = CircuitBreakerRegistry(
            failure_threshold=1,
            failure_predicate=ignore_exception_types(CapabilityError),
        )
        registry.record_outcome("a", success=False)
        clock.advance(61)
        assert registry.check_breaker("a").allowed
        registry.record_outcome("a", success=False, error=CapabilityError("denied"))
        assert registry.state("a") == CircuitState.HALF_OPEN
        assert registry.check_breaker("a").allowed

    def test_raising_predicate_counts_failure(self, clock):
        def broken(error):
            raise RuntimeError("predicate bug")

        cb = CircuitBreaker(failure_threshold=1, failure_predicate=broken)
        assert cb.record_failure(error=ValueError("x")) is True
        assert cb.state == CircuitState.OPEN


class TestRegistry:
    def test_subjects_isolated(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=2)
        registry.record_outcome("a", success=False)
        registry.record_outcome("a", success=False)
        assert registry.state("a") == CircuitState.OPEN
        assert registry.state("b") == CircuitState.CLOSED
        assert registry.check_breaker("b").allowed
        assert not registry.check_breaker("a").allowed

    def test_unknown_subject_is_closed_without_creating(self):
        registry = CircuitBreakerRegistry()
        assert registry.state("ghost") == CircuitState.CLOSED
        assert len(registry) == 0
        registry.release("ghost")
        assert len(registry) == 0

    def test_reset_one_and_all(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=1)
        registry.record_outcome("a", success=False)
        registry.record_outcome("b", success=False)
        registry.reset("a")
        assert registry.state("a") == CircuitState.CLOSED
        assert registry.state("b") == CircuitState.OPEN
        registry.reset()
        assert registry.state("b") == CircuitState.CLOSED

    def test_snapshot(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=3)
        registry.record_outcome("a", success=True)
        snap = registry.snapshot()
        assert snap["a"]["state"] == "closed"
        assert snap["a"]["success_count"] == 1

    def test_from_config(self):
        registry = CircuitBreakerRegistry.from_config(
            CircuitBreakerConfig(failure_threshold=7, cooldown_seconds=5.0)
        )
        assert registry.get("x").failure_threshold == 7
        assert registry.get("x").cooldown_seconds == 5.0
