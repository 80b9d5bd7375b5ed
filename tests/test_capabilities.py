"""Tests for capability contexts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType

import pytest

from policy_sandbox.capabilities import (
    CapabilityContext,
    CapabilityFunction,
    build_context,
    freeze,
    thaw,
)
from policy_sandbox.errors import CapabilityError


class TestBuildContext:
    def test_only_allowed_keys_visible(self):
        ctx = build_context({"event": {"a": 1}, "secret": "s3cr3t"}, ["event"])
        assert list(ctx) == ["event"]
        assert len(ctx) == 1
        assert "secret" not in ctx
        assert set(ctx.keys()) == {"event"}

    def test_hidden_key_raises_and_logs(self, caplog):
        ctx = build_context({"event": {}, "secret": "x"}, ["event"])
        with caplog.at_level(logging.WARNING):
            with pytest.raises(CapabilityError):
                ctx["secret"]
        assert "Blocked access to 'secret'" in caplog.text

    def test_missing_allowed_key_reads_none(self):
        ctx = build_context({}, ["event"])
        assert ctx["event"] is None
        assert "event" in ctx

    def test_values_are_deep_frozen(self):
        ctx = build_context({"event": {"tags": ["a"], "meta": {"k": "v"}}}, ["event"])
        event = ctx["event"]
        assert isinstance(event, MappingProxyType)
        assert event["tags"] == ("a",)
        with pytest.raises(TypeError):
            event["meta"]["k"] = "changed"

    def test_source_mutation_does_not_leak(self):
        source = {"event": {"n": 1}}
        ctx = build_context(source, ["event"])
        source["event"]["n"] = 2
        assert ctx["event"]["n"] == 1

    def test_get_on_hidden_key_raises(self):
        # Mapping.get goes through __getitem__
        ctx = build_context({"secret": 1}, [])
        with pytest.raises(CapabilityError):
            ctx.get("secret")


class TestImmutability:
    def test_item_assignment_rejected(self):
        ctx = build_context({"event": {}}, ["event"])
        with pytest.raises(CapabilityError):
            ctx["event"] = {}
        with pytest.raises(CapabilityError):
            del ctx["event"]

    def test_attribute_assignment_rejected(self):
        ctx = build_context({}, [])
        with pytest.raises(CapabilityError):
            ctx.anything = 1
        with pytest.raises(CapabilityError):
            del ctx._values

    def test_extend_returns_new_context(self):
        ctx = build_context({"event": {}}, ["event"])
        extended = ctx.extend({"log": print, "hidden": len}, allowed=["log"])
        assert list(extended) == ["event", "log"]
        assert list(ctx) == ["event"]
        assert isinstance(extended["log"], CapabilityFunction)
        with pytest.raises(CapabilityError):
            extended["hidden"]

    def test_allowed_keys(self):
        ctx = build_context({}, ["a", "b", "a"])
        assert ctx.allowed_keys == frozenset({"a", "b"})
        assert isinstance(ctx, CapabilityContext)


class TestCapabilityFunction:
    def test_arguments_thawed_and_result_frozen(self):
        seen = []

        def create(data):
            seen.append(data)
            return {"id": 1, "items": [1, 2]}

        fn = CapabilityFunction("create", create)
        result = fn(MappingProxyType({"tags": ("a",)}))
        assert seen == [{"tags": ["a"]}]
        assert isinstance(seen[0], dict)
        assert result["items"] == (1, 2)
        assert isinstance(result, MappingProxyType)

    def test_wrapper_is_immutable(self):
        fn = CapabilityFunction("f", lambda: None)
        with pytest.raises(CapabilityError):
            fn.name = "g"
        with pytest.raises(AttributeError):
            fn.__dict__

    def test_function_cannot_be_passed_back_to_host(self):
        inner = CapabilityFunction("inner", lambda: None)
        outer = CapabilityFunction("outer", lambda x: x)
        with pytest.raises(CapabilityError):
            outer(inner)

    def test_repr(self):
        assert repr(CapabilityFunction("log", print)) == "<capability log>"


class TestFreezeThaw:
    def test_freeze_scalars_and_containers(self):
        assert freeze(None) is None
        assert freeze({1, 2}) in ((1, 2), (2, 1))
        assert freeze(Decimal("1.5")) == 1.5
        assert freeze(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00+00:00"

    def test_freeze_dataclass(self):
        @dataclass
        class Point:
            x: int
            y: int

        assert dict(freeze(Point(1, 2))) == {"x": 1, "y": 2}

    def test_freeze_rejects_host_objects(self):
        with pytest.raises(CapabilityError, match="cannot enter the sandbox"):
            freeze(object())

    def test_thaw_non_strict(self):
        fn = CapabilityFunction("log", print)
        assert thaw((fn, 1), strict=False) == ["<capability log>", 1]
