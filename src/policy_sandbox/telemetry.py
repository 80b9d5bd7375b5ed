"""Telemetry sinks for sandbox audit events.

Every gate transition is emitted as a :class:`TelemetryEvent`. Sinks are for
audit only: control flow never depends on them, and a failing sink is logged
and skipped.

OpenTelemetry export is optional. Requires opentelemetry-sdk installed
separately; without it :class:`OtelSink` stays disabled.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryEvent:
    """One structured audit event."""

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = "ok"
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "ts": self.ts,
            "attributes": dict(self.attributes),
        }


@runtime_checkable
class TelemetrySink(Protocol):
    """Protocol for telemetry sinks."""

    def emit(self, event: TelemetryEvent) -> None: ...


class NullSink:
    """Sink that discards all events."""

    def emit(self, event: TelemetryEvent) -> None:
        pass


class MemorySink:
    """Keeps events in a bounded list. Thread-safe."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: List[TelemetryEvent] = []
        self._max = max_events
        self._lock = threading.Lock()

    def emit(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max:
                del self._events[: len(self._events) - self._max]

    @property
    def events(self) -> List[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class JsonlFileSink:
    """Append events as JSON lines to a file. Thread-safe."""

    def __init__(self, path: str | Path = "./sandbox-events.jsonl") -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: TelemetryEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self) -> List[Dict[str, Any]]:
        """Return every well-formed record in the file."""
        records: List[Dict[str, Any]] = []
        if not self._path.exists():
            return records
        with self._lock:
            with open(self._path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        return records


class CompositeSink:
    """Fan-out to multiple sinks. Individual sink errors are logged, not raised."""

    def __init__(self, sinks: List[TelemetrySink]) -> None:
        self._sinks = list(sinks)

    def emit(self, event: TelemetryEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logger.warning(
                    "CompositeSink: sink %s failed for event %s",
                    type(sink).__name__,
                    event.name,
                    exc_info=True,
                )


def _otel_value(value: Any) -> Any:
    if isinstance(value, (bool, int, float, str)):
        return value
    return json.dumps(value, default=str)[:500]


class OtelSink:
    """Forwards events to OpenTelemetry as span events.

    Events are attached to the current span when one is recording; otherwise
    each event gets its own short span so nothing is lost.

    Args:
        tracer: An existing tracer. When None, a tracer provider is built
            from opentelemetry-sdk for *service_name*.
        service_name: Resource service name for the built provider.
        exporter: Optional span exporter for the built provider.
    """

    def __init__(
        self,
        tracer: Any = None,
        service_name: str = "policy-sandbox",
        exporter: Any = None,
    ) -> None:
        self._tracer = tracer
        if self._tracer is None:
            self._tracer = self._build_tracer(service_name, exporter)

    @staticmethod
    def _build_tracer(service_name: str, exporter: Any) -> Any:
        try:
            from opentelemetry.sdk.resources import SERVICE_NAME, Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import SimpleSpanProcessor
        except ImportError as exc:
            logger.warning("opentelemetry-sdk not installed. OTel disabled. %s", exc)
            return None

        provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
        if exporter is not None:
            provider.add_span_processor(SimpleSpanProcessor(exporter))
        logger.info("Sandbox OTel enabled: service=%r", service_name)
        return provider.get_tracer("policy-sandbox")

    @property
    def enabled(self) -> bool:
        return self._tracer is not None

    def emit(self, event: TelemetryEvent) -> None:
        if self._tracer is None:
            return
        attributes = {f"sandbox.{k}": _otel_value(v) for k, v in event.attributes.items()}
        attributes["sandbox.status"] = event.status
        try:
            from opentelemetry import trace

            current = trace.get_current_span()
            if current is not None and current.is_recording():
                current.add_event(name=event.name, attributes=attributes)
                return
            with self._tracer.start_as_current_span(event.name) as span:
                span.add_event(name=event.name, attributes=attributes)
                if event.status == "error":
                    span.set_status(trace.Status(trace.StatusCode.ERROR))
        except Exception as exc:
            logger.debug("OTel emit failed: %s", exc)
