"""Tests for telemetry sinks: NullSink, MemorySink, JsonlFileSink, CompositeSink."""
from __future__ import annotations

import json
from unittest.mock import Mock

from policy_sandbox.telemetry import (
    CompositeSink,
    JsonlFileSink,
    MemorySink,
    NullSink,
    TelemetryEvent,
    TelemetrySink,
)


def _make_event(name: str = "policy_agent.quota", status: str = "ok") -> TelemetryEvent:
    return TelemetryEvent(name, {"policy_id": "p1", "remaining": 3}, status)


# --- TelemetryEvent ---


def test_event_to_dict():
    event = _make_event()
    data = event.to_dict()
    assert data["name"] == "policy_agent.quota"
    assert data["attributes"] == {"policy_id": "p1", "remaining": 3}
    assert data["status"] == "ok"
    assert isinstance(data["ts"], float)


# --- NullSink ---


def test_null_sink_discards():
    sink = NullSink()
    sink.emit(_make_event())  # no error
    assert isinstance(sink, TelemetrySink)


# --- MemorySink ---


def test_memory_sink_keeps_events_in_order():
    sink = MemorySink()
    sink.emit(_make_event("a"))
    sink.emit(_make_event("b"))
    assert sink.names() == ["a", "b"]
    sink.clear()
    assert sink.events == []


def test_memory_sink_is_bounded():
    sink = MemorySink(max_events=3)
    for i in range(5):
        sink.emit(_make_event(str(i)))
    assert sink.names() == ["2", "3", "4"]


# --- JsonlFileSink ---


def test_jsonl_sink_appends_lines(tmp_path):
    path = tmp_path / "audit" / "events.jsonl"
    sink = JsonlFileSink(path)
    sink.emit(_make_event("first"))
    sink.emit(_make_event("second", status="error"))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["status"] == "error"
    assert [r["name"] for r in sink.read()] == ["first", "second"]


def test_jsonl_sink_skips_corrupt_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    sink = JsonlFileSink(path)
    sink.emit(_make_event("ok"))
    with open(path, "a", encoding="utf-8") as f:
        f.write("{not json\n\n")
    assert [r["name"] for r in sink.read()] == ["ok"]


def test_jsonl_sink_read_missing_file(tmp_path):
    assert JsonlFileSink(tmp_path / "none.jsonl").read() == []


def test_jsonl_sink_serializes_unknown_values(tmp_path):
    sink = JsonlFileSink(tmp_path / "events.jsonl")
    sink.emit(TelemetryEvent("x", {"when": tmp_path}))
    assert sink.read()[0]["attributes"]["when"] == str(tmp_path)


# --- CompositeSink ---


def test_composite_fans_out():
    a, b = MemorySink(), MemorySink()
    CompositeSink([a, b]).emit(_make_event())
    assert len(a.events) == len(b.events) == 1


def test_composite_survives_failing_sink():
    broken = Mock()
    broken.emit.side_effect = RuntimeError("disk full")
    good = MemorySink()
    CompositeSink([broken, good]).emit(_make_event())
    broken.emit.assert_called_once()
    assert len(good.events) == 1
