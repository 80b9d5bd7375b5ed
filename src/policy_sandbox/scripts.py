"""Ad-hoc script runner.

Runs user or agent supplied scripts through the same validator, engine and
gates as policy actions, keyed by caller id instead of policy id, with the
tighter code-execution profile. A handful of maintenance scripts ship
predefined.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from policy_sandbox.capabilities import build_context
from policy_sandbox.circuit_breaker import CircuitBreakerRegistry
from policy_sandbox.config import SandboxConfig
from policy_sandbox.engine import ExecutionEngine
from policy_sandbox.errors import ErrorKind, SandboxError, error_for
from policy_sandbox.quota import QuotaManager
from policy_sandbox.tasks import TASK_ORIGINS, InMemoryTaskStore, TaskStore
from policy_sandbox.telemetry import NullSink, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

SCRIPT_NAMES = ("input", "params")
SCRIPT_FUNCTIONS = (
    "createTask", "updateTask", "getTasks", "log", "now", "today", "daysUntil", "daysSince",
)


@dataclass(frozen=True)
class PredefinedScript:
    key: str
    name: str
    description: str
    code: str


PREDEFINED_SCRIPTS: Dict[str, PredefinedScript] = {
    "prioritize_tasks": PredefinedScript(
        key="prioritize_tasks",
        name="Prioritize Tasks",
        description="Recalculate all task priorities",
        code=r"""
const tasks = getTasks()
log('Recalculating priorities for ' + tasks.length + ' tasks')
let updated = 0
for (const task of tasks) {
  if (task.status !== 'done') {
    let priority = 50
    if (task.deadline) {
      const days = daysUntil(task.deadline)
      if (days < 3) { priority = priority + 30 }
      else if (days < 7) { priority = priority + 20 }
      else if (days < 14) { priority = priority + 10 }
    }
    if (task.tags.includes('urgent')) { priority = priority + 20 }
    if (task.tags.includes('important')) { priority = priority + 15 }
    updateTask(task.id, { priority })
    updated = updated + 1
  }
}
log('Priority update complete')
return { updated }
""",
    ),
    "create_daily_summary": PredefinedScript(
        key="create_daily_summary",
        name="Daily Summary",
        description="Create summary task of daily activities",
        code=r"""
const tasks = getTasks()
let completed = 0
let pending = 0
let urgent = 0
for (const task of tasks) {
  if (task.status === 'done') { completed = completed + 1 }
  if (task.status === 'pending') {
    pending = pending + 1
    if (task.priority > 70) { urgent = urgent + 1 }
  }
}
const summary = 'Daily Summary:\n- Completed: ' + completed + ' tasks\n- Pending: ' + pending + ' tasks\n- Urgent: ' + urgent + ' tasks'
createTask('Daily Summary - ' + today(), {
  description: summary,
  tags: ['summary', 'auto-generated']
})
return { summary, completed, pending }
""",
    ),
    "cleanup_completed": PredefinedScript(
        key="cleanup_completed",
        name="Archive Completed Tasks",
        description="Tag completed tasks untouched for 30 days as archived",
        code=r"""
const tasks = getTasks()
let archived = 0
for (const task of tasks) {
  if (task.status === 'done' && daysSince(task.updated_at) > 30 && !task.tags.includes('archived')) {
    updateTask(task.id, { tags: task.tags.concat('archived') })
    archived = archived + 1
  }
}
log('Archived ' + archived + ' old completed tasks')
return { archived }
""",
    ),
}


@dataclass(frozen=True)
class ScriptResult:
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: float = 0.0
    logs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind,
            "duration_ms": round(self.duration_ms, 3),
            "logs": list(self.logs),
        }


def _parse_timestamp(value: str) -> datetime:
    if not isinstance(value, str):
        raise ValueError("Expected an ISO-8601 timestamp string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _days_between(start: datetime, end: datetime) -> int:
    return math.floor((end - start).total_seconds() / 86400)


class ScriptRunner:
    """Runs scripts for a caller under quota and a per-caller breaker.

    Args:
        engine: Execution engine; defaults to the code-execution profile.
        task_store: Collaborator behind ``createTask``/``updateTask``/``getTasks``.
        quota: Per-caller quota.
        breakers: Per-caller circuit breakers.
        sink: Telemetry sink.
    """

    def __init__(
        self,
        engine: Optional[ExecutionEngine] = None,
        task_store: Optional[TaskStore] = None,
        quota: Optional[QuotaManager] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sink: Optional[TelemetrySink] = None,
    ) -> None:
        profile = SandboxConfig.for_code_execution()
        self.engine = engine if engine is not None else ExecutionEngine.from_config(profile)
        self.task_store = task_store if task_store is not None else InMemoryTaskStore()
        self.quota = quota if quota is not None else QuotaManager.from_config(profile.quota)
        if breakers is None:
            breakers = CircuitBreakerRegistry.from_config(profile.circuit_breaker)
        self.breakers = breakers
        self.sink: TelemetrySink = sink or NullSink()

    @classmethod
    def from_config(
        cls,
        config: SandboxConfig,
        task_store: Optional[TaskStore] = None,
        sink: Optional[TelemetrySink] = None,
    ) -> ScriptRunner:
        return cls(
            ExecutionEngine.from_config(config),
            task_store,
            QuotaManager.from_config(config.quota),
            CircuitBreakerRegistry.from_config(config.circuit_breaker),
            sink,
        )

    def run(
        self,
        code: str,
        *,
        caller_id: str = "anonymous",
        input: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> ScriptResult:
        """Validate and run *code* for *caller_id*. Never raises for script errors."""
        quota = self.quota.check_quota(caller_id)
        if not quota.allowed:
            return self._rejected(caller_id, ErrorKind.QUOTA_EXCEEDED, quota.reason or "quota exceeded")
        breaker = self.breakers.check_breaker(caller_id)
        if not breaker.allowed:
            return self._rejected(caller_id, ErrorKind.CIRCUIT_OPEN, breaker.reason or "circuit open")

        logs: List[Dict[str, Any]] = []
        try:
            context = build_context({"input": input, "params": dict(params or {})}, SCRIPT_NAMES)
        except SandboxError as exc:
            self.breakers.release(caller_id)
            return self._rejected(caller_id, exc.kind, exc.message)
        result = self.engine.execute_action(
            code, context, self._functions(caller_id, logs), timeout_ms=timeout_ms
        )

        if result.error_kind == ErrorKind.VALIDATION:
            self.breakers.release(caller_id)
        else:
            failure = None if result.success else error_for(
                result.error_kind or ErrorKind.RUNTIME, result.error or "script failed"
            )
            self.breakers.record_outcome(caller_id, result.success, error=failure)

        kind = result.error_kind.value if result.error_kind else None
        self._emit(
            "run", caller_id, "ok" if result.success else "error",
            error_kind=kind, duration_ms=round(result.duration_ms, 3), log_count=len(logs),
        )
        return ScriptResult(
            success=result.success,
            result=result.result,
            error=result.error,
            error_kind=kind,
            duration_ms=result.duration_ms,
            logs=list(logs),
        )

    def run_script(
        self,
        name: str,
        input: Any = None,
        *,
        caller_id: str = "predefined",
        params: Optional[Mapping[str, Any]] = None,
    ) -> ScriptResult:
        """Run one of :data:`PREDEFINED_SCRIPTS` by key.

        Raises:
            KeyError: if *name* is not a predefined script.
        """
        script = PREDEFINED_SCRIPTS.get(name)
        if script is None:
            raise KeyError(f"Unknown script: {name}")
        return self.run(script.code, caller_id=caller_id, input=input, params=params)

    @staticmethod
    def available_scripts() -> List[Dict[str, str]]:
        return [
            {"key": s.key, "name": s.name, "description": s.description}
            for s in PREDEFINED_SCRIPTS.values()
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _functions(self, caller_id: str, logs: List[Dict[str, Any]]) -> Dict[str, Callable[..., Any]]:
        store = self.task_store
        logs_lock = threading.Lock()

        def create_task(title: Any, opts: Any = None) -> Dict[str, Any]:
            if isinstance(title, dict):
                opts = dict(title)
                title = opts.pop("title", None)
            if not isinstance(title, str):
                raise ValueError("createTask requires a title")
            options = dict(opts or {})
            if options.get("origin") not in TASK_ORIGINS:
                options["origin"] = "script"
            metadata = dict(options.get("metadata") or {})
            metadata["caller_id"] = caller_id
            options["metadata"] = metadata
            return store.create_task(title, options).to_dict()

        def update_task(task_id: str, updates: Dict[str, Any]) -> None:
            store.update_task(task_id, updates)

        def get_tasks() -> List[Dict[str, Any]]:
            return [task.to_dict() for task in store.list_tasks()]

        def log(message: Any, data: Any = None) -> None:
            entry = {
                "message": str(message),
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            with logs_lock:
                logs.append(entry)
            logger.debug("[SANDBOX_SCRIPT] %s: %s", caller_id, message)

        def now() -> float:
            return datetime.now(timezone.utc).timestamp()

        def today() -> str:
            return date.today().isoformat()

        def days_until(value: str) -> int:
            return _days_between(datetime.now(timezone.utc), _parse_timestamp(value))

        def days_since(value: str) -> int:
            return _days_between(_parse_timestamp(value), datetime.now(timezone.utc))

        return {
            "createTask": create_task,
            "updateTask": update_task,
            "getTasks": get_tasks,
            "log": log,
            "now": now,
            "today": today,
            "daysUntil": days_until,
            "daysSince": days_since,
        }

    def _rejected(self, caller_id: str, kind: ErrorKind, reason: str) -> ScriptResult:
        logger.info("[SANDBOX_SCRIPT] %s rejected: %s", caller_id, reason)
        self._emit("run", caller_id, "error", error_kind=kind.value, reason=reason)
        return ScriptResult(success=False, error=reason, error_kind=kind.value)

    def _emit(self, name: str, caller_id: str, status: str, **attributes: Any) -> None:
        attributes["caller_id"] = caller_id
        try:
            self.sink.emit(TelemetryEvent(f"script_runner.{name}", attributes, status))
        except Exception:
            logger.warning("[SANDBOX_SCRIPT] Telemetry sink failed", exc_info=True)
