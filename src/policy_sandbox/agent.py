"""Policy agent: registers policies and dispatches trigger events to them.

Each enabled policy matching a trigger goes through the same gates, in
registration order and one at a time::

    validate -> quota -> breaker -> dedup -> condition -> action -> record

A gate that stops a policy yields a structured outcome for that policy and
never prevents the remaining policies from being attempted. A policy's
history gains an execution-record id only after its action fully succeeded.

The agent is an explicitly constructed service; build one per application
and hand it its collaborators.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from policy_sandbox.capabilities import build_context
from policy_sandbox.circuit_breaker import CircuitBreakerRegistry, CircuitState
from policy_sandbox.config import SandboxConfig
from policy_sandbox.dedup import DeduplicationLedger
from policy_sandbox.engine import ExecutionEngine, ExecutionResult
from policy_sandbox.errors import (
    ErrorKind,
    PolicyNotFound,
    SandboxError,
    ValidationError,
    error_for,
)
from policy_sandbox.lang import parse_expression, parse_program
from policy_sandbox.models import POLICY_TRIGGERS, ExecutionRecord, Policy, TriggerEvent
from policy_sandbox.quota import QuotaManager
from policy_sandbox.store import MemoryPolicyBackend, PolicyBackend
from policy_sandbox.tasks import InMemoryTaskStore, TaskStore
from policy_sandbox.telemetry import NullSink, TelemetryEvent, TelemetrySink
from policy_sandbox.validator import validate

logger = logging.getLogger(__name__)

STATUS_EXECUTED = "executed"
STATUS_CONDITION_NOT_MET = "condition_not_met"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

CONDITION_NAMES: Tuple[str, ...] = ("event", "trigger", "timestamp")
ACTION_NAMES: Tuple[str, ...] = ("event", "trigger", "timestamp", "policy")
ACTION_FUNCTIONS: Tuple[str, ...] = ("createTask", "updateTask", "log")

_UPDATABLE_FIELDS = frozenset({"name", "description", "trigger", "condition", "action", "enabled"})

@dataclass(frozen=True)
class PolicyOutcome:
    """What happened to one policy during one dispatch."""

    policy_id: str
    status: str
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    condition_met: Optional[bool] = None
    result: Any = None
    record_id: Optional[str] = None

    def raise_for_error(self) -> None:
        """Raise the sandbox exception matching ``error_kind``; no-op on success."""
        if self.error_kind is None:
            return
        raise error_for(self.error_kind, self.reason or self.error_kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "status": self.status,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "condition_met": self.condition_met,
            "result": self.result,
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class DispatchReport:
    """All outcomes of one dispatch, in policy registration order."""

    trigger: str
    event_hash: str
    outcomes: Tuple[PolicyOutcome, ...] = ()
    dry_run: bool = False

    def outcome_for(self, policy_id: str) -> Optional[PolicyOutcome]:
        for outcome in self.outcomes:
            if outcome.policy_id == policy_id:
                return outcome
        return None

    @property
    def executed(self) -> List[PolicyOutcome]:
        return [o for o in self.outcomes if o.status == STATUS_EXECUTED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "event_hash": self.event_hash,
            "dry_run": self.dry_run,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class PolicyTestResult:
    condition_met: bool
    action_result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition_met": self.condition_met,
            "action_result": self.action_result,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class SandboxStats:
    executions: int
    failures: int
    circuit_state: str
    quota_remaining: int
    subject_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "executions": self.executions,
            "failures": self.failures,
            "circuit_state": self.circuit_state,
            "quota_remaining": self.quota_remaining,
        }


@dataclass
class _Counters:
    executions: int = 0
    failures: int = 0


@dataclass
class _Gate:
    """Carries what a stopped gate reports."""

    status: str
    reason: str
    error_kind: Optional[ErrorKind] = None
    condition_met: Optional[bool] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class PolicyAgent:
    """Owns the policy list and runs the dispatch pipeline.

    Args:
        backend: Policy persistence. Defaults to an in-memory backend.
        task_store: Collaborator reached by actions through ``createTask``
            and ``updateTask``.
        config: Sandbox configuration; defaults to the policy profile.
        engine, quota, breakers, ledger: Components built from *config*
            when not supplied.
        sink: Telemetry sink for gate transitions.
        max_records: Execution records kept in memory for
            :meth:`get_execution`.
    """

    def __init__(
        self,
        backend: Optional[PolicyBackend] = None,
        task_store: Optional[TaskStore] = None,
        *,
        config: Optional[SandboxConfig] = None,
        engine: Optional[ExecutionEngine] = None,
        quota: Optional[QuotaManager] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        ledger: Optional[DeduplicationLedger] = None,
        sink: Optional[TelemetrySink] = None,
        max_records: int = 1000,
    ) -> None:
        self.config = config or SandboxConfig.for_policies()
        self.backend = backend if backend is not None else MemoryPolicyBackend()
        self.task_store = task_store if task_store is not None else InMemoryTaskStore()
        self.engine = engine if engine is not None else ExecutionEngine.from_config(self.config)
        self.quota = quota if quota is not None else QuotaManager.from_config(self.config.quota)
        if breakers is None:
            breakers = CircuitBreakerRegistry.from_config(self.config.circuit_breaker)
        self.breakers = breakers
        self.ledger = ledger if ledger is not None else DeduplicationLedger.from_config(self.config.dedup)
        self.sink: TelemetrySink = sink or NullSink()

        self._lock = threading.RLock()
        self._policies: Dict[str, Policy] = {}
        self._policy_locks: Dict[str, threading.Lock] = {}
        self._counters: Dict[str, _Counters] = {}
        self._records: "OrderedDict[str, ExecutionRecord]" = OrderedDict()
        self._max_records = max_records
        self.reload()

    # ------------------------------------------------------------------
    # Policy CRUD
    # ------------------------------------------------------------------

    def reload(self) -> int:
        """Replace the in-memory policy list with the backend's contents."""
        loaded = self.backend.load()
        with self._lock:
            self._policies = OrderedDict((p.id, p) for p in loaded)
        logger.info("[SANDBOX_AGENT] Loaded %d policies", len(loaded))
        return len(loaded)

    def register_policy(
        self,
        name: str,
        trigger: str,
        condition: str,
        action: str,
        *,
        description: str = "",
        enabled: bool = True,
        created_by: str = "user",
    ) -> Policy:
        """Validate and store a new policy.

        Raises:
            ValidationError: if the condition or action is rejected.
            ValueError: if the trigger is unknown or the name is empty.
        """
        if not name or not name.strip():
            raise ValueError("Policy name must not be empty")
        self._check_trigger(trigger)
        self._check_code(condition, action)

        policy = Policy(
            name=name.strip(),
            trigger=trigger,
            condition=condition,
            action=action,
            description=description,
            enabled=enabled,
            created_by=created_by,
        )
        with self._lock:
            self._policies[policy.id] = policy
            self._persist_locked()
        self._emit("policy_registered", policy.id, trigger=trigger, created_by=created_by)
        logger.info("[SANDBOX_AGENT] Registered policy %s (%s)", policy.id, policy.name)
        return copy.deepcopy(policy)

    def update_policy(self, policy_id: str, **updates: Any) -> Policy:
        """Change editable fields of a policy.

        Raises:
            PolicyNotFound: if no such policy exists.
            ValidationError: if new condition/action code is rejected.
            ValueError: on unknown fields or an unknown trigger.
        """
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        if "trigger" in updates:
            self._check_trigger(updates["trigger"])

        with self._lock:
            policy = self._require_locked(policy_id)
            if "condition" in updates or "action" in updates:
                self._check_code(
                    updates.get("condition", policy.condition),
                    updates.get("action", policy.action),
                )
            for key, value in updates.items():
                setattr(policy, key, value)
            policy.touch()
            self._persist_locked()
            result = copy.deepcopy(policy)
        self._emit("policy_updated", policy_id, fields=sorted(updates))
        return result

    def delete_policy(self, policy_id: str) -> None:
        """Remove a policy and forget its quota and breaker state.

        Raises:
            PolicyNotFound: if no such policy exists.
        """
        with self._lock:
            self._require_locked(policy_id)
            del self._policies[policy_id]
            self._policy_locks.pop(policy_id, None)
            self._persist_locked()
        self.quota.reset(policy_id)
        self.breakers.reset(policy_id)
        self._emit("policy_deleted", policy_id)
        logger.info("[SANDBOX_AGENT] Deleted policy %s", policy_id)

    def toggle_policy(self, policy_id: str, enabled: bool) -> Policy:
        return self.update_policy(policy_id, enabled=enabled)

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            policy = self._policies.get(policy_id)
            return copy.deepcopy(policy) if policy is not None else None

    def list_policies(self) -> List[Policy]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._policies.values()]

    def enabled_policies(self) -> List[Policy]:
        return [p for p in self.list_policies() if p.enabled]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        trigger: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        dry_run: bool = False,
    ) -> DispatchReport:
        """Run every enabled policy for *trigger* against *payload*.

        Never raises for gate or execution failures; every policy gets a
        :class:`PolicyOutcome` instead.
        """
        dry_run = dry_run or self.config.execution.dry_run
        event = TriggerEvent(trigger, dict(payload or {}))
        digest = event.content_hash()

        with self._lock:
            candidates = [p.id for p in self._policies.values() if p.enabled and p.trigger == trigger]

        self._emit("dispatch", None, trigger=trigger, candidates=len(candidates), dry_run=dry_run)
        outcomes: List[PolicyOutcome] = []
        for policy_id in candidates:
            try:
                outcome = self._process(policy_id, event, digest, dry_run)
            except Exception as exc:
                logger.exception("[SANDBOX_AGENT] Unexpected error processing %s", policy_id)
                kind = exc.kind if isinstance(exc, SandboxError) else ErrorKind.RUNTIME
                outcome = PolicyOutcome(
                    policy_id=policy_id,
                    status=STATUS_FAILED,
                    reason=str(exc) or type(exc).__name__,
                    error_kind=kind.value,
                )
            outcomes.append(outcome)

        return DispatchReport(trigger, digest, tuple(outcomes), dry_run)

    def _process(
        self, policy_id: str, event: TriggerEvent, digest: str, dry_run: bool
    ) -> PolicyOutcome:
        with self._lock_for(policy_id):
            with self._lock:
                current = self._policies.get(policy_id)
                if current is None or not current.enabled:
                    return PolicyOutcome(policy_id, STATUS_SKIPPED, reason="policy no longer enabled")
                policy = copy.deepcopy(current)

            stopped = self._run_gates(policy, digest, dry_run)
            if stopped is not None:
                return self._stop(policy, stopped)

            # Past the gates a probe may be granted and a claim held; both
            # must be settled whatever goes wrong from here on.
            try:
                return self._evaluate(policy, event, digest, dry_run)
            except Exception as exc:
                return self._abort(policy, digest, dry_run, exc)

    def _evaluate(
        self, policy: Policy, event: TriggerEvent, digest: str, dry_run: bool
    ) -> PolicyOutcome:
        condition = self.engine.evaluate_condition(
            policy.condition, build_context(event.to_context(), CONDITION_NAMES)
        )
        if not condition.success:
            self.breakers.record_outcome(policy.id, False, error=_failure(condition))
            self._count(policy.id, failed=True)
            self._release_claim(policy.id, digest, condition, dry_run)
            return self._stop(policy, _Gate(
                STATUS_FAILED,
                condition.error or "condition failed",
                condition.error_kind,
                condition_met=False,
                extra={"gate": "condition"},
            ))
        if not condition.result:
            self.breakers.record_outcome(policy.id, True)
            self._emit("condition", policy.id, met=False)
            return PolicyOutcome(policy.id, STATUS_CONDITION_NOT_MET, condition_met=False)
        self._emit("condition", policy.id, met=True)

        return self._execute(policy, event, digest, dry_run)

    def _run_gates(self, policy: Policy, digest: str, dry_run: bool) -> Optional[_Gate]:
        limits = self.engine.validator_config
        for label, code in (("condition", policy.condition), ("action", policy.action)):
            result = validate(code, limits)
            if not result.valid:
                self._count(policy.id, failed=True)
                return _Gate(
                    STATUS_FAILED,
                    f"{label} rejected: {result.summary()}",
                    ErrorKind.VALIDATION,
                    extra={"gate": "validate", "risk": result.risk.value},
                )
        self._emit("validate", policy.id)

        quota = self.quota.check_quota(policy.id)
        if not quota.allowed:
            return _Gate(
                STATUS_SKIPPED, quota.reason or "quota exceeded", ErrorKind.QUOTA_EXCEEDED,
                extra={"gate": "quota"},
            )
        self._emit("quota", policy.id, remaining=quota.remaining)

        breaker = self.breakers.check_breaker(policy.id)
        if not breaker.allowed:
            return _Gate(
                STATUS_SKIPPED, breaker.reason or "circuit open", ErrorKind.CIRCUIT_OPEN,
                extra={"gate": "breaker", "state": breaker.state.value},
            )
        self._emit("breaker", policy.id, state=breaker.state.value)

        if not dry_run and self.ledger.is_duplicate(policy.id, digest):
            self.breakers.release(policy.id)
            return _Gate(
                STATUS_SKIPPED, "duplicate event", ErrorKind.DUPLICATE,
                extra={"gate": "dedup"},
            )
        self._emit("dedup", policy.id)
        return None

    def _execute(
        self, policy: Policy, event: TriggerEvent, digest: str, dry_run: bool
    ) -> PolicyOutcome:
        record_id = f"exec_{uuid.uuid4().hex[:16]}"
        context = build_context(
            {**event.to_context(), "policy": {"id": policy.id, "name": policy.name}},
            ACTION_NAMES,
        )
        result = self.engine.execute_action(
            policy.action,
            context,
            self._action_functions(policy.id, record_id),
            dry_run=dry_run,
        )
        record = ExecutionRecord(
            id=record_id,
            policy_id=policy.id,
            event_hash=digest,
            success=result.success,
            duration_ms=result.duration_ms,
            error=result.error,
            error_kind=result.error_kind.value if result.error_kind else None,
            dry_run=result.dry_run,
        )
        self._store_record(record)
        self.breakers.record_outcome(policy.id, result.success, error=_failure(result))
        self._count(policy.id, failed=not result.success, executed=not dry_run)

        if not result.success:
            self._release_claim(policy.id, digest, result, dry_run)
            self._emit(
                "action", policy.id, status="error",
                record_id=record_id, error_kind=record.error_kind,
            )
            return PolicyOutcome(
                policy.id,
                STATUS_FAILED,
                reason=result.error,
                error_kind=record.error_kind,
                condition_met=True,
                record_id=record_id,
            )

        self._emit("action", policy.id, record_id=record_id, dry_run=dry_run)
        if not dry_run:
            self._append_history(policy.id, record_id)
        self._emit("record", policy.id, record_id=record_id)
        return PolicyOutcome(
            policy.id,
            STATUS_EXECUTED,
            condition_met=True,
            result=result.result,
            record_id=record_id,
        )

    def _stop(self, policy: Policy, gate: _Gate) -> PolicyOutcome:
        kind = gate.error_kind.value if gate.error_kind else None
        name = gate.extra.pop("gate", "gate")
        self._emit(name, policy.id, status="error", reason=gate.reason, error_kind=kind, **gate.extra)
        if gate.status == STATUS_SKIPPED:
            logger.info("[SANDBOX_AGENT] %s skipped at %s: %s", policy.id, name, gate.reason)
        else:
            logger.warning("[SANDBOX_AGENT] %s failed at %s: %s", policy.id, name, gate.reason)
        return PolicyOutcome(
            policy.id,
            gate.status,
            reason=gate.reason,
            error_kind=kind,
            condition_met=gate.condition_met,
        )

    def _abort(
        self, policy: Policy, digest: str, dry_run: bool, exc: Exception
    ) -> PolicyOutcome:
        if isinstance(exc, SandboxError):
            kind = exc.kind
            reason = exc.message
        else:
            logger.exception("[SANDBOX_AGENT] Unexpected error processing %s", policy.id)
            kind = ErrorKind.RUNTIME
            reason = str(exc) or type(exc).__name__
        self.breakers.record_outcome(policy.id, False, error=exc)
        self._count(policy.id, failed=True)
        if not dry_run:
            self.ledger.release(policy.id, digest)
        return self._stop(policy, _Gate(STATUS_FAILED, reason, kind, extra={"gate": "context"}))

    def _release_claim(
        self, policy_id: str, digest: str, result: ExecutionResult, dry_run: bool
    ) -> None:
        # A timed-out run may still have called allowed functions, so its
        # claim stays and a redelivery is suppressed.
        if not dry_run and not result.timed_out:
            self.ledger.release(policy_id, digest)

    def _append_history(self, policy_id: str, record_id: str) -> None:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                logger.warning(
                    "[SANDBOX_AGENT] Policy %s deleted during execution; history not updated",
                    policy_id,
                )
                return
            policy.history.append(record_id)
            policy.touch()
            self._persist_locked()

    # ------------------------------------------------------------------
    # Authoring and visibility
    # ------------------------------------------------------------------

    def test_policy(
        self,
        policy: Policy,
        sample_event: Optional[Mapping[str, Any]] = None,
        *,
        dry_run: bool = True,
    ) -> PolicyTestResult:
        """Evaluate *policy* against *sample_event* without any bookkeeping.

        Quota, breaker, dedup and history are never touched. With
        ``dry_run`` (the default) the action's functions are stand-ins.
        """
        event = TriggerEvent(policy.trigger, dict(sample_event or {}))
        self._emit("test", policy.id, dry_run=dry_run)
        try:
            condition_context = build_context(event.to_context(), CONDITION_NAMES)
        except SandboxError as exc:
            return PolicyTestResult(False, error=exc.message, error_kind=exc.kind.value)
        condition = self.engine.evaluate_condition(policy.condition, condition_context)
        if not condition.success:
            return PolicyTestResult(
                False, error=condition.error,
                error_kind=condition.error_kind.value if condition.error_kind else None,
            )
        if not condition.result:
            return PolicyTestResult(False)

        context = build_context(
            {**event.to_context(), "policy": {"id": policy.id, "name": policy.name}},
            ACTION_NAMES,
        )
        action = self.engine.execute_action(
            policy.action,
            context,
            self._action_functions(policy.id, f"test_{uuid.uuid4().hex[:12]}"),
            dry_run=dry_run,
        )
        if not action.success:
            return PolicyTestResult(
                True, error=action.error,
                error_kind=action.error_kind.value if action.error_kind else None,
            )
        return PolicyTestResult(True, action_result=action.result)

    def get_stats(self, subject_id: Optional[str] = None) -> SandboxStats:
        """Counters, breaker state and quota headroom for one policy or all."""
        if subject_id is not None:
            with self._lock:
                counters = self._counters.get(subject_id, _Counters())
                executions, failures = counters.executions, counters.failures
            return SandboxStats(
                executions=executions,
                failures=failures,
                circuit_state=self.breakers.state(subject_id).value,
                quota_remaining=self.quota.remaining(subject_id),
                subject_id=subject_id,
            )

        with self._lock:
            executions = sum(c.executions for c in self._counters.values())
            failures = sum(c.failures for c in self._counters.values())
            subjects = list(self._policies)
        states = {self.breakers.state(s) for s in subjects}
        if CircuitState.OPEN in states:
            overall = CircuitState.OPEN
        elif CircuitState.HALF_OPEN in states:
            overall = CircuitState.HALF_OPEN
        else:
            overall = CircuitState.CLOSED
        remaining = min(
            (self.quota.remaining(s) for s in subjects),
            default=min(w.limit for w in self.quota.windows),
        )
        return SandboxStats(executions, failures, overall.value, remaining)

    def get_execution(self, record_id: str) -> Optional[ExecutionRecord]:
        with self._lock:
            return self._records.get(record_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _action_functions(self, policy_id: str, span_id: str) -> Dict[str, Callable[..., Any]]:
        store = self.task_store

        def create_task(first: Any, second: Any = None) -> Dict[str, Any]:
            if isinstance(first, dict):
                opts = dict(first)
                title = opts.pop("title", None)
            else:
                title = first
                opts = dict(second or {})
            if not isinstance(title, str):
                raise ValueError("createTask requires a title")
            metadata = dict(opts.get("metadata") or {})
            metadata["policy_id"] = policy_id
            options = {
                "description": opts.get("description"),
                "tags": opts.get("tags"),
                "deadline": opts.get("deadline"),
                "priority": opts.get("priority", 50),
                "metadata": metadata,
                "origin": "policy",
                "span_id": span_id,
            }
            return store.create_task(title, options).to_dict()

        def update_task(task_id: str, updates: Dict[str, Any]) -> None:
            store.update_task(task_id, updates)

        def log(message: Any, data: Any = None) -> None:
            logger.info("[SANDBOX_AGENT] %s: %s", policy_id, message)
            self._emit("action_log", policy_id, message=str(message)[:500], data=data)

        return {"createTask": create_task, "updateTask": update_task, "log": log}

    def _check_trigger(self, trigger: str) -> None:
        if trigger not in POLICY_TRIGGERS:
            raise ValueError(
                f"Unknown trigger '{trigger}'. Expected one of: {', '.join(POLICY_TRIGGERS)}"
            )

    def _check_code(self, condition: str, action: str) -> None:
        limits = self.engine.validator_config
        for label, code, parse in (
            ("Condition", condition, parse_expression),
            ("Action", action, parse_program),
        ):
            result = validate(code, limits)
            if not result.valid:
                raise ValidationError(f"{label} rejected: {result.summary()}", result)
            try:
                parse(code)
            except SandboxError as exc:
                raise ValidationError(f"{label} does not parse: {exc.message}", result) from exc

    def _require_locked(self, policy_id: str) -> Policy:
        policy = self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFound(policy_id)
        return policy

    def _persist_locked(self) -> None:
        if not self.backend.save(list(self._policies.values())):
            logger.error("[SANDBOX_AGENT] Failed to persist policies")

    def _lock_for(self, policy_id: str) -> threading.Lock:
        with self._lock:
            lock = self._policy_locks.get(policy_id)
            if lock is None:
                lock = self._policy_locks[policy_id] = threading.Lock()
            return lock

    def _count(self, policy_id: str, *, failed: bool, executed: bool = False) -> None:
        with self._lock:
            counters = self._counters.setdefault(policy_id, _Counters())
            if executed:
                counters.executions += 1
            if failed:
                counters.failures += 1

    def _store_record(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records[record.id] = record
            while len(self._records) > self._max_records:
                self._records.popitem(last=False)

    def _emit(self, gate: str, policy_id: Optional[str], status: str = "ok", **attributes: Any) -> None:
        if policy_id is not None:
            attributes["policy_id"] = policy_id
        try:
            self.sink.emit(TelemetryEvent(f"policy_agent.{gate}", attributes, status))
        except Exception:
            logger.warning("[SANDBOX_AGENT] Telemetry sink failed for %s", gate, exc_info=True)


def _failure(result: ExecutionResult) -> Optional[SandboxError]:
    if result.success:
        return None
    return error_for(result.error_kind or ErrorKind.RUNTIME, result.error or "execution failed")
