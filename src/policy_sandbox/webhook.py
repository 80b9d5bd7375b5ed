"""Upstream webhook ingestion guard.

:class:`WebhookGuard` holds the individual checks (HMAC signature, rate
limit with lifetime lock-out, provider payload shape, replay suppression,
sanitization). :class:`WebhookIngress` chains them in front of a
:class:`~policy_sandbox.agent.PolicyAgent` and turns an accepted delivery
into a ``webhook.received`` dispatch.
"""

from __future__ import annotations

import hashlib
import hmac
import html
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from policy_sandbox.config import WebhookConfig
from policy_sandbox.dedup import DeduplicationLedger, content_hash
from policy_sandbox.quota import QuotaDecision, QuotaManager, QuotaWindow
from policy_sandbox.schema import (
    AnyOfSchema,
    AnySchema,
    NumberSchema,
    ObjectSchema,
    Schema,
    StringSchema,
)
from policy_sandbox.telemetry import NullSink, TelemetryEvent, TelemetrySink

if TYPE_CHECKING:
    from policy_sandbox.agent import DispatchReport, PolicyAgent

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = (
    "x-webhook-signature",
    "x-hub-signature-256",
    "x-hub-signature",
    "x-telegram-bot-api-secret-token",
)
TIMESTAMP_HEADERS = ("x-webhook-timestamp", "x-slack-request-timestamp")
_SIGNATURE_PREFIXES = ("sha256=", "hmac-sha256=")
_DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})
_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", *SIGNATURE_HEADERS})

_TELEGRAM_UPDATE = NumberSchema(integer=True)

PROVIDER_SCHEMAS: Dict[str, Schema] = {
    "github": AnyOfSchema((
        ObjectSchema(required={"action": StringSchema()}),
        ObjectSchema(required={"repository": ObjectSchema()}),
        ObjectSchema(required={"sender": ObjectSchema()}),
    )),
    "telegram": AnyOfSchema(tuple(
        ObjectSchema(required={"update_id": _TELEGRAM_UPDATE, kind: AnySchema()})
        for kind in ("message", "edited_message", "callback_query")
    )),
    "generic": ObjectSchema(),
}

Payload = Union[str, bytes, Mapping[str, Any], List[Any]]


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    reason: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one delivery. ``status`` mirrors the HTTP status to return."""

    accepted: bool
    status: int
    reason: Optional[str] = None
    event_id: Optional[str] = None
    report: Optional["DispatchReport"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "status": self.status,
            "reason": self.reason,
            "event_id": self.event_id,
            "report": self.report.to_dict() if self.report is not None else None,
        }


def _payload_text(payload: Payload) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class WebhookGuard:
    """Security checks for inbound webhooks.

    Args:
        config: Webhook limits.
        quota: Rate limiter keyed by IP+endpoint. Built from *config* when
            omitted, with the lifetime lock-out enabled.
        ledger: Replay ledger. Built from *config* when omitted.
    """

    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        quota: Optional[QuotaManager] = None,
        ledger: Optional[DeduplicationLedger] = None,
    ) -> None:
        self.config = config or WebhookConfig()
        self.quota = quota if quota is not None else QuotaManager(
            [QuotaWindow(self.config.max_requests_per_minute, 60.0, "minute")],
            max_cost_per_request=1,
            max_violations=self.config.max_violations,
        )
        window = self.config.dedup_window_seconds
        if ledger is None:
            ledger = DeduplicationLedger(window, retention=max(window * 2, 3600.0))
        self.ledger = ledger

    @staticmethod
    def rate_limit_key(client_ip: str, endpoint: str) -> str:
        return f"{client_ip}:{endpoint}"

    def verify_signature(
        self,
        payload: Payload,
        secret: str,
        signature: str,
        timestamp: Optional[str] = None,
    ) -> SignatureCheck:
        """Verify an HMAC-SHA256 signature over *payload*.

        Accepts ``sha256=<hex>``, ``hmac-sha256=<hex>`` and bare hex. When
        *timestamp* (milliseconds since the epoch) is given it must be
        within the configured skew.
        """
        ts: Optional[int] = None
        if timestamp is not None:
            try:
                ts = int(timestamp)
            except (TypeError, ValueError):
                return SignatureCheck(False, "Invalid timestamp format")
            skew_ms = abs(time.time() * 1000 - ts)
            max_skew_ms = self.config.max_timestamp_skew_seconds * 1000
            if skew_ms > max_skew_ms:
                return SignatureCheck(
                    False,
                    f"Timestamp skew too large: {skew_ms:.0f}ms (max {max_skew_ms:.0f}ms)",
                )

        try:
            text = _payload_text(payload)
        except UnicodeDecodeError:
            return SignatureCheck(False, "Payload is not valid UTF-8")
        body = text.encode("utf-8")
        if len(body) > self.config.max_payload_bytes:
            return SignatureCheck(
                False,
                f"Payload too large: {len(body)} bytes (max {self.config.max_payload_bytes})",
            )

        provided = signature.strip()
        for prefix in _SIGNATURE_PREFIXES:
            if provided.startswith(prefix):
                provided = provided[len(prefix):]
                break

        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, provided.lower()):
            return SignatureCheck(False, "Signature mismatch", ts)
        return SignatureCheck(True, None, ts)

    def sign(self, payload: Payload, secret: str) -> str:
        """Signature header value for *payload* (``sha256=<hex>``)."""
        body = _payload_text(payload).encode("utf-8")
        return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def check_rate_limit(self, key: str) -> QuotaDecision:
        return self.quota.check_quota(key)

    def validate_structure(self, payload: Any, provider: Optional[str] = None) -> List[str]:
        """Problems with *payload* for *provider*; empty when acceptable."""
        if not isinstance(payload, Mapping):
            return ["$: payload must be an object"]
        schema = PROVIDER_SCHEMAS.get(provider or "generic", PROVIDER_SCHEMAS["generic"])
        return schema.check(payload)

    def is_replay(self, endpoint: str, payload: Any) -> bool:
        return self.ledger.is_duplicate(endpoint, content_hash(payload))

    def forget(self, endpoint: str, payload: Any) -> None:
        self.ledger.release(endpoint, content_hash(payload))

    def sanitize_payload(self, payload: Any, max_depth: Optional[int] = None) -> Any:
        """HTML-escape strings and drop prototype-tampering keys, recursively.

        Raises:
            ValueError: if the structure is nested deeper than *max_depth*.
        """
        depth = self.config.max_depth if max_depth is None else max_depth
        if depth <= 0:
            raise ValueError("Payload structure too deep")
        if isinstance(payload, str):
            return html.escape(payload, quote=True).replace("/", "&#x2F;")
        if isinstance(payload, (list, tuple)):
            return [self.sanitize_payload(item, depth - 1) for item in payload]
        if isinstance(payload, Mapping):
            return {
                str(key): self.sanitize_payload(value, depth - 1)
                for key, value in payload.items()
                if key not in _DANGEROUS_KEYS
            }
        return payload

    @staticmethod
    def generate_secret(length: int = 32) -> str:
        return secrets.token_hex(length)


class WebhookIngress:
    """Runs every delivery through the guard, then dispatches it.

    Stages: rate limit -> parse -> structure -> replay -> signature ->
    sanitize -> ``agent.dispatch("webhook.received", ...)``.
    """

    def __init__(
        self,
        guard: WebhookGuard,
        agent: "PolicyAgent",
        sink: Optional[TelemetrySink] = None,
        trigger: str = "webhook.received",
    ) -> None:
        self.guard = guard
        self.agent = agent
        self.sink: TelemetrySink = sink or NullSink()
        self.trigger = trigger

    def receive(
        self,
        endpoint: str,
        payload: Payload,
        headers: Optional[Mapping[str, str]] = None,
        *,
        client_ip: str = "unknown",
        secret: Optional[str] = None,
        provider: Optional[str] = None,
        require_signature: bool = False,
    ) -> IngestResult:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        key = self.guard.rate_limit_key(client_ip, endpoint)

        rate = self.guard.check_rate_limit(key)
        if not rate.allowed:
            return self._reject(endpoint, 429, f"Rate limit: {rate.reason}")

        try:
            raw_size = len(_payload_text(payload).encode("utf-8"))
        except UnicodeDecodeError:
            return self._reject(endpoint, 400, "Payload is not valid UTF-8")
        if raw_size > self.guard.config.max_payload_bytes:
            return self._reject(endpoint, 413, f"Payload too large: {raw_size} bytes")

        try:
            data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
        except json.JSONDecodeError as exc:
            return self._reject(endpoint, 400, f"Invalid JSON payload: {exc.msg}")

        problems = self.guard.validate_structure(data, provider)
        if problems:
            return self._reject(
                endpoint, 400, f"Invalid {provider or 'generic'} payload: {problems[0]}"
            )

        if self.guard.is_replay(endpoint, data):
            return self._reject(endpoint, 409, "Duplicate webhook rejected")

        if secret or require_signature:
            signature = next((headers[h] for h in SIGNATURE_HEADERS if h in headers), None)
            if not signature:
                self.guard.forget(endpoint, data)
                return self._reject(endpoint, 401, "Webhook signature required but not provided")
            timestamp = next((headers[h] for h in TIMESTAMP_HEADERS if h in headers), None)
            check = self.guard.verify_signature(payload, secret or "", signature, timestamp)
            if not check.valid:
                self.guard.forget(endpoint, data)
                return self._reject(endpoint, 401, f"Signature verification failed: {check.reason}")
            self._emit("signature_verified", endpoint)

        try:
            clean = self.guard.sanitize_payload(data)
        except ValueError as exc:
            self.guard.forget(endpoint, data)
            return self._reject(endpoint, 400, str(exc))

        event_id = uuid.uuid4().hex
        report = self.agent.dispatch(
            self.trigger,
            {
                "endpoint": endpoint,
                "provider": provider or "generic",
                "payload": clean,
                "headers": {
                    k: v for k, v in headers.items() if k not in _SENSITIVE_HEADERS
                },
            },
        )
        self._emit("received", endpoint, event_id=event_id, policies=len(report.outcomes))
        logger.info(
            "[SANDBOX_WEBHOOK] Accepted delivery %s on %s (%d policies)",
            event_id, endpoint, len(report.outcomes),
        )
        return IngestResult(True, 202, None, event_id, report)

    def _reject(self, endpoint: str, status: int, reason: str) -> IngestResult:
        logger.warning("[SANDBOX_WEBHOOK] Rejected delivery on %s: %s", endpoint, reason)
        self._emit("rejected", endpoint, status="error", http_status=status, reason=reason)
        return IngestResult(False, status, reason)

    def _emit(self, name: str, endpoint: str, status: str = "ok", **attributes: Any) -> None:
        attributes["endpoint"] = endpoint
        try:
            self.sink.emit(TelemetryEvent(f"webhook.{name}", attributes, status))
        except Exception:
            logger.warning("[SANDBOX_WEBHOOK] Telemetry sink failed", exc_info=True)
