"""Policy, trigger event and execution record models."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from policy_sandbox.dedup import content_hash
from policy_sandbox.errors import ValidationError
from policy_sandbox.schema import BoolSchema, ListSchema, ObjectSchema, StringSchema

POLICY_TRIGGERS: tuple[str, ...] = (
    "file.uploaded",
    "task.created",
    "task.completed",
    "webhook.received",
    "span.error",
    "focus.started",
    "focus.ended",
    "daily.summary",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


POLICY_RECORD_SCHEMA = ObjectSchema(
    required={
        "id": StringSchema(min_length=1),
        "name": StringSchema(min_length=1),
        "trigger": StringSchema(min_length=1),
        "condition": StringSchema(),
        "action": StringSchema(),
    },
    optional={
        "description": StringSchema(),
        "enabled": BoolSchema(),
        "created_at": StringSchema(),
        "updated_at": StringSchema(),
        "created_by": StringSchema(),
        "history": ListSchema(StringSchema()),
    },
)


@dataclass
class Policy:
    """A trigger, a condition and an action, plus bookkeeping.

    ``history`` holds execution-record ids (never the records themselves),
    newest last.
    """

    name: str
    trigger: str
    condition: str
    action: str
    description: str = ""
    enabled: bool = True
    created_by: str = "user"
    id: str = field(default_factory=lambda: f"policy_{uuid.uuid4().hex[:12]}")
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger": self.trigger,
            "condition": self.condition,
            "action": self.action,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "created_by": self.created_by,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Policy:
        """Rebuild a policy from its persisted record.

        Raises:
            ValidationError: if the record does not have the policy shape.
        """
        problems = POLICY_RECORD_SCHEMA.check(data)
        if problems:
            raise ValidationError("Malformed policy record: " + "; ".join(problems))
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            trigger=data["trigger"],
            condition=data["condition"],
            action=data["action"],
            enabled=data.get("enabled", True),
            created_by=data.get("created_by", "user"),
            created_at=data.get("created_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
            history=list(data.get("history", [])),
        )

    def touch(self) -> None:
        self.updated_at = _now_iso()


@dataclass(frozen=True)
class TriggerEvent:
    """One occurrence of a trigger. Transient: never persisted."""

    trigger: str
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def content_hash(self) -> str:
        """Digest of trigger and payload. The timestamp is excluded."""
        return content_hash({"trigger": self.trigger, "payload": self.payload})

    def to_context(self) -> Dict[str, Any]:
        """Names visible to conditions and actions."""
        return {
            "event": self.payload,
            "trigger": self.trigger,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    """Audit entry for one action execution. Referenced from Policy.history by id."""

    policy_id: str
    event_hash: str
    success: bool
    duration_ms: float
    error: Optional[str] = None
    error_kind: Optional[str] = None
    dry_run: bool = False
    id: str = field(default_factory=lambda: f"exec_{uuid.uuid4().hex[:16]}")
    executed_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "event_hash": self.event_hash,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
            "error": self.error,
            "error_kind": self.error_kind,
            "dry_run": self.dry_run,
            "executed_at": self.executed_at,
        }
