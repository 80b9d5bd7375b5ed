"""Task store collaborator.

Actions and scripts reach the task store only through allowed functions;
the sandbox never calls it directly. :class:`InMemoryTaskStore` is the
reference implementation used by the CLI and tests.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TASK_STATUSES: tuple[str, ...] = ("pending", "in_progress", "done")
TASK_ORIGINS: tuple[str, ...] = (
    "manual", "policy", "script", "webhook", "llm", "sensor",
)

# Fields an update may change; everything else is owned by the store.
_UPDATABLE = frozenset({
    "title", "description", "tags", "status", "priority", "deadline", "metadata",
})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Task:
    title: str
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    description: str = ""
    tags: List[str] = field(default_factory=list)
    status: str = "pending"
    origin: str = "manual"
    priority: int = 50
    deadline: Optional[str] = None
    span_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@runtime_checkable
class TaskStore(Protocol):
    """What the sandbox needs from a task store."""

    def create_task(self, title: str, options: Optional[Mapping[str, Any]] = None) -> Task: ...

    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> None: ...

    def list_tasks(self) -> List[Task]: ...


class InMemoryTaskStore:
    """Thread-safe in-process task store."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()

    def create_task(self, title: str, options: Optional[Mapping[str, Any]] = None) -> Task:
        if not isinstance(title, str) or not title.strip():
            raise ValueError("Task title must be a non-empty string")
        opts = dict(options or {})
        status = opts.get("status", "pending")
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        task = Task(
            title=title.strip(),
            description=str(opts.get("description") or ""),
            tags=[str(t) for t in opts.get("tags") or []],
            status=status,
            origin=str(opts.get("origin") or "manual"),
            priority=int(opts.get("priority", 50)),
            deadline=opts.get("deadline"),
            span_id=opts.get("span_id"),
            metadata=dict(opts.get("metadata") or {}),
        )
        with self._lock:
            self._tasks[task.id] = task
        logger.debug("[SANDBOX_TASKS] Created task %s (%s)", task.id, task.origin)
        return copy.deepcopy(task)

    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> None:
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        if "status" in updates and updates["status"] not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {updates['status']}")
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Task not found: {task_id}")
            for key, value in updates.items():
                setattr(task, key, copy.deepcopy(value))
            task.updated_at = _now_iso()

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task is not None else None

    def list_tasks(self) -> List[Task]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
