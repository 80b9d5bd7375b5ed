"""Tests for structural schemas."""

from __future__ import annotations

from policy_sandbox.schema import (
    AnyOfSchema,
    AnySchema,
    BoolSchema,
    ListSchema,
    NullSchema,
    NumberSchema,
    ObjectSchema,
    StringSchema,
)


class TestScalars:
    def test_null_and_bool(self):
        assert NullSchema().matches(None)
        assert NullSchema().check(0) == ["$: expected null, got number"]
        assert BoolSchema().matches(False)
        assert not BoolSchema().matches(0)

    def test_string_constraints(self):
        schema = StringSchema(min_length=2, max_length=4, pattern=r"[a-z]+")
        assert schema.matches("abc")
        assert schema.check("a") == ["$: shorter than 2 characters"]
        assert schema.check("abcde") == ["$: longer than 4 characters"]
        assert schema.check("AB") == ["$: does not match '[a-z]+'"]
        assert schema.check(1) == ["$: expected string, got number"]

    def test_string_choices(self):
        schema = StringSchema(choices=("open", "closed"))
        assert schema.check("ajar") == ["$: must be one of open, closed"]

    def test_number_rejects_bool(self):
        assert NumberSchema().check(True) == ["$: expected number, got boolean"]

    def test_number_bounds_and_integer(self):
        schema = NumberSchema(minimum=0, maximum=10, integer=True)
        assert schema.matches(3)
        assert schema.matches(4.0)
        assert schema.check(2.5) == ["$: expected an integer"]
        assert schema.check(-1) == ["$: below minimum 0"]
        assert schema.check(11) == ["$: above maximum 10"]


class TestContainers:
    def test_list_items_report_index(self):
        schema = ListSchema(StringSchema(), min_items=1)
        assert schema.check(["a", 2]) == ["$[1]: expected string, got number"]
        assert schema.check([]) == ["$: fewer than 1 items"]
        assert schema.check("abc") == ["$: expected array, got string"]

    def test_object_required_and_optional(self):
        schema = ObjectSchema(
            required={"id": StringSchema(min_length=1)},
            optional={"tags": ListSchema(StringSchema())},
        )
        assert schema.matches({"id": "x", "extra": 1})
        assert schema.check({}) == ["$.id: missing"]
        assert schema.check({"id": ""}) == ["$.id: shorter than 1 characters"]
        assert schema.check({"id": "x", "tags": [1]}) == ["$.tags[0]: expected string, got number"]
        assert schema.matches({"id": "x", "tags": None})

    def test_object_closed(self):
        schema = ObjectSchema(required={"a": AnySchema()}, allow_extra=False)
        assert schema.check({"a": 1, "b": 2}) == ["$.b: unexpected key"]

    def test_nested_paths(self):
        schema = ObjectSchema(required={"user": ObjectSchema(required={"id": NumberSchema()})})
        assert schema.check({"user": {"id": "7"}}) == ["$.user.id: expected number, got string"]


class TestAnyOf:
    def test_first_match_wins(self):
        schema = AnyOfSchema((StringSchema(), NumberSchema()))
        assert schema.matches("x")
        assert schema.matches(1)

    def test_no_match_collects_problems(self):
        schema = AnyOfSchema((StringSchema(), NumberSchema()))
        problems = schema.check(None)
        assert problems[0] == "$: matches none of 2 alternatives"
        assert len(problems) == 3

    def test_empty_any_of_accepts(self):
        assert AnyOfSchema().matches(object())
