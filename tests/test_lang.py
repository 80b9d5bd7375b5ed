"""Tests for the restricted script language: lexer, parser and interpreter."""

from __future__ import annotations

import math
from types import MappingProxyType

import pytest

from policy_sandbox.capabilities import build_context
from policy_sandbox.config import ExecutionConfig
from policy_sandbox.engine import CancellationToken
from policy_sandbox.errors import (
    CapabilityError,
    ExecutionFailed,
    ExecutionTimeout,
    ScriptSyntaxError,
    StepBudgetExceeded,
)
from policy_sandbox.lang import Interpreter, parse_expression, parse_program, strict_equal, to_display, truthy
from policy_sandbox.lang import nodes
from policy_sandbox.lang.lexer import tokenize


def _eval(code: str, **names):
    ctx = build_context(names, list(names))
    return Interpreter(ctx).evaluate_expression(parse_expression(code))


def _run(code: str, config: ExecutionConfig | None = None, token=None, **names):
    ctx = build_context(names, list(names))
    return Interpreter(ctx, config, token).run_program(parse_program(code))


class TestLexer:
    def test_numbers_strings_and_names(self):
        kinds = [(t.kind, t.value) for t in tokenize("x = 1.5 + 'a\\n' // note")]
        assert kinds == [
            ("name", "x"),
            ("op", "="),
            ("num", 1.5),
            ("op", "+"),
            ("str", "a\n"),
            ("eof", None),
        ]

    def test_longest_operator_wins(self):
        ops = [t.value for t in tokenize("a === b !== c") if t.kind == "op"]
        assert ops == ["===", "!=="]

    def test_keywords(self):
        tok = tokenize("const")[0]
        assert tok.kind == "kw"

    def test_unicode_escape(self):
        assert tokenize("'\\u0041'")[0].value == "A"

    def test_template_literal_rejected(self):
        with pytest.raises(ScriptSyntaxError):
            tokenize("`x`")

    def test_unterminated_string_reports_position(self):
        with pytest.raises(ScriptSyntaxError) as exc_info:
            tokenize("a\n  'abc")
        assert exc_info.value.line == 2
        assert exc_info.value.column == 3

    def test_unexpected_character(self):
        with pytest.raises(ScriptSyntaxError):
            tokenize("a # b")


class TestParser:
    def test_precedence(self):
        expr = parse_expression("1 + 2 * 3")
        assert isinstance(expr, nodes.Binary)
        assert expr.op == "+"
        assert isinstance(expr.right, nodes.Binary)
        assert expr.right.op == "*"

    def test_member_call_chain(self):
        expr = parse_expression("event.tags.includes('x')")
        assert isinstance(expr, nodes.Call)
        assert isinstance(expr.callee, nodes.Member)
        assert expr.callee.name == "includes"

    def test_object_shorthand(self):
        expr = parse_expression("{ a, b: 2 }")
        assert isinstance(expr, nodes.ObjectLit)
        assert expr.entries[0] == ("a", nodes.Name("a"))

    def test_program_statements(self):
        program = parse_program("let x = 1; if (x) { x = 2 } else x = 3\nreturn x")
        kinds = [type(s).__name__ for s in program.body]
        assert kinds == ["Declare", "If", "Return"]

    def test_trailing_input_rejected_in_expression(self):
        with pytest.raises(ScriptSyntaxError):
            parse_expression("a b")

    def test_statement_rejected_in_expression(self):
        with pytest.raises(ScriptSyntaxError):
            parse_expression("let x = 1")

    def test_nesting_limit(self):
        with pytest.raises(ScriptSyntaxError):
            parse_expression("(" * 100 + "1" + ")" * 100)

    def test_await_chain_counts_toward_nesting(self):
        with pytest.raises(ScriptSyntaxError, match="Nesting too deep"):
            parse_expression("await " * 990 + "true")
        with pytest.raises(ScriptSyntaxError, match="Nesting too deep"):
            parse_program("return " + "await " * 990 + "1")
        assert parse_expression("await await true") is not None


class TestInterpreterExpressions:
    def test_arithmetic(self):
        assert _eval("1 + 2 * 3") == 7
        assert _eval("7 / 2") == 3.5
        assert _eval("6 / 3") == 2
        assert _eval("7 % 3") == 1

    def test_division_by_zero(self):
        assert _eval("1 / 0") == math.inf
        assert math.isnan(_eval("0 / 0"))

    def test_string_concatenation(self):
        assert _eval("'n=' + 5") == "n=5"
        assert _eval("'v: ' + null") == "v: null"
        assert _eval("'' + 2.0") == "2"

    def test_strict_equality_by_kind(self):
        assert _eval("1 == '1'") is False
        assert _eval("1 === 1.0") is True
        assert _eval("[1, 2] == [1, 2]") is True
        assert _eval("{a: 1} === {a: 1}") is True
        assert _eval("null == undefined") is True

    def test_logical_short_circuit(self):
        assert _eval("0 || 'fallback'") == "fallback"
        assert _eval("null ?? 5") == 5
        assert _eval("0 ?? 5") == 0
        assert _eval("false && missing") is False

    def test_word_operators(self):
        assert _eval("not false and true or false") is True

    def test_conditional(self):
        assert _eval("x > 1 ? 'big' : 'small'", x=3) == "big"

    def test_member_access(self):
        event = {"priority": 90, "tags": ["a", "b"]}
        assert _eval("event.priority", event=event) == 90
        assert _eval("event.tags.length", event=event) == 2
        assert _eval("event.missing", event=event) is None
        assert _eval("event['priority']", event=event) == 90
        assert _eval("event.tags[1]", event=event) == "b"
        assert _eval("event.tags[5]", event=event) is None

    def test_null_member_fails(self):
        with pytest.raises(ExecutionFailed):
            _eval("event.a.b", event={})

    def test_string_methods(self):
        assert _eval("'Hello'.toLowerCase()") == "hello"
        assert _eval("' x '.trim()") == "x"
        assert _eval("'a,b'.split(',')") == ("a", "b")
        assert _eval("'abcdef'.slice(1, -1)") == "bcde"
        assert _eval("'abc'.indexOf('c')") == 2
        assert _eval("'abc'.startsWith('ab')") is True

    def test_list_methods(self):
        assert _eval("[1, 2, 3].join('-')") == "1-2-3"
        assert _eval("['a'].concat('b', ['c'])") == ("a", "b", "c")
        assert _eval("[1, 2].includes(2)") is True
        assert _eval("[1, 2].indexOf(3)") == -1

    def test_mapping_keys(self):
        assert _eval("{a: 1, b: 2}.keys()") == ("a", "b")

    def test_in_operator(self):
        assert _eval("'a' in {a: 1}") is True
        assert _eval("2 in [1, 2]") is True
        assert _eval("'ell' in 'hello'") is True

    def test_object_literal_is_read_only(self):
        value = _eval("{a: 1}")
        assert isinstance(value, MappingProxyType)
        with pytest.raises(TypeError):
            value["a"] = 2

    def test_unknown_name_is_capability_error(self):
        with pytest.raises(CapabilityError):
            _eval("secret")

    def test_calling_non_function(self):
        with pytest.raises(ExecutionFailed, match="is not a function"):
            _eval("x()", x=1)

    def test_python_attributes_unreachable(self):
        assert _eval("'abc'.upper") is None
        assert _eval("event.__class__", event={}) is None


class TestInterpreterPrograms:
    def test_return_value(self):
        assert _run("let total = 0\nfor (const n of items) { total = total + n }\nreturn total", items=[1, 2, 3]) == 6

    def test_no_return_is_null(self):
        assert _run("let a = 1") is None

    def test_else_if_chain(self):
        code = "let p = 'low'\nif (x > 10) { p = 'high' } else if (x > 5) { p = 'mid' }\nreturn p"
        assert _run(code, x=7) == "mid"

    def test_const_reassignment_fails(self):
        with pytest.raises(ExecutionFailed, match="constant"):
            _run("const a = 1\na = 2")

    def test_redeclare_fails(self):
        with pytest.raises(ExecutionFailed, match="already been declared"):
            _run("let a = 1\nlet a = 2")

    def test_block_scope(self):
        with pytest.raises(CapabilityError):
            _run("if (true) { let inner = 1 }\nreturn inner")

    def test_assign_to_context_name_fails(self):
        with pytest.raises(CapabilityError, match="read-only"):
            _run("event = 1", event={})

    def test_assign_undeclared_fails(self):
        with pytest.raises(ExecutionFailed, match="not declared"):
            _run("x = 1")

    def test_for_of_requires_iterable(self):
        with pytest.raises(ExecutionFailed, match="not iterable"):
            _run("for (const x of 5) { }")

    def test_loop_iteration_cap(self):
        config = ExecutionConfig(max_loop_iterations=3)
        with pytest.raises(ExecutionFailed, match="Loop exceeded 3 iterations"):
            _run("for (const x of items) { }", config, items=[1, 2, 3, 4])

    def test_step_budget(self):
        config = ExecutionConfig(max_steps=50)
        with pytest.raises(StepBudgetExceeded):
            _run("let n = 0\nfor (const x of items) { n = n + 1 }", config, items=list(range(100)))

    def test_value_length_limit(self):
        config = ExecutionConfig(max_value_length=10)
        with pytest.raises(ExecutionFailed, match="maximum length"):
            _run("let s = 'abcdefgh'\nreturn s + s", config)

    def test_cancelled_token_stops_at_next_step(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExecutionTimeout, match="cancelled"):
            _run("return 1", token=token)

    def test_steps_counted(self):
        ctx = build_context({}, [])
        interpreter = Interpreter(ctx)
        interpreter.evaluate_expression(parse_expression("1 + 2"))
        assert interpreter.steps == 3


class TestHelpers:
    def test_truthy(self):
        assert not truthy(None)
        assert not truthy(0)
        assert not truthy("")
        assert not truthy(math.nan)
        assert truthy(())
        assert truthy(MappingProxyType({}))

    def test_to_display(self):
        assert to_display(True) == "true"
        assert to_display((1, None, "a")) == "1,,a"
        assert to_display(MappingProxyType({})) == "[object Object]"

    def test_strict_equal_bool_vs_number(self):
        assert not strict_equal(True, 1)
        assert strict_equal(False, False)
