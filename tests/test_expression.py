"""Tests for placeholder interpolation."""

from __future__ import annotations

from flowrunner.errors import ExpressionUnresolved
from flowrunner.expression import MAX_PASSES, find_placeholders, parse_expression, resolve_config, serialise
from flowrunner.models import ExecutionResult, WorkflowContext


def make_context(variables=None, outputs=None) -> WorkflowContext:
    return WorkflowContext(execution_id="exec-1", variables=variables or {}, node_outputs=outputs or {})


def trigger_output() -> ExecutionResult:
    return ExecutionResult(
        success=True,
        data={"status": "active", "user": {"email": "a@example.com", "tags": ["x", "y"]}, "count": 3},
        metadata={"nodeType": "trigger", "subtype": "webhook_trigger"},
    )


class TestVariables:
    def test_bare_number(self):
        assert parse_expression("{{$vars.x}}", make_context({"x": 5})) == "5"

    def test_quoted_string(self):
        assert parse_expression("{{$vars.x}}", make_context({"x": "ok"}), quote_strings=True) == "'ok'"

    def test_quoted_mode_leaves_numbers_and_booleans_bare(self):
        ctx = make_context({"n": 2.5, "flag": True})
        assert parse_expression("{{$vars.n}} {{$vars.flag}}", ctx, quote_strings=True) == "2.5 true"

    def test_quoted_mode_escapes_quotes(self):
        ctx = make_context({"name": "foo's"})
        assert parse_expression("{{$vars.name}}", ctx, quote_strings=True) == "'foo\\'s'"

    def test_missing_variable_left_untouched(self):
        assert parse_expression("{{$vars.missing}}", make_context()) == "{{$vars.missing}}"

    def test_nested_path(self):
        ctx = make_context({"order": {"items": [{"sku": "A1"}]}})
        assert parse_expression("{{$vars.order.items.0.sku}}", ctx) == "A1"

    def test_objects_become_json(self):
        ctx = make_context({"order": {"id": 7}})
        assert parse_expression("{{$vars.order}}", ctx) == '{"id": 7}'

    def test_none_becomes_empty_string(self):
        assert parse_expression("[{{$vars.nothing}}]", make_context({"nothing": None})) == "[]"


class TestNodeOutputs:
    def test_walks_into_result(self):
        ctx = make_context(outputs={"hook": trigger_output()})
        assert parse_expression("{{$node.hook.data.user.email}}", ctx) == "a@example.com"

    def test_result_fields_are_addressable(self):
        ctx = make_context(outputs={"hook": trigger_output()})
        assert parse_expression("{{$node.hook.success}}", ctx) == "true"

    def test_missing_node_left_untouched(self):
        assert parse_expression("{{$node.ghost.data.x}}", make_context()) == "{{$node.ghost.data.x}}"

    def test_missing_path_left_untouched(self):
        ctx = make_context(outputs={"hook": trigger_output()})
        assert parse_expression("{{$node.hook.data.nope}}", ctx) == "{{$node.hook.data.nope}}"

    def test_multiple_placeholders_resolve_independently(self):
        ctx = make_context({"greeting": "hi"}, {"hook": trigger_output()})
        text = "{{$vars.greeting}} {{$node.hook.data.status}} {{$vars.nope}} x{{$node.hook.data.count}}"
        assert parse_expression(text, ctx) == "hi active {{$vars.nope}} x3"

    def test_whitespace_inside_braces(self):
        ctx = make_context(outputs={"hook": trigger_output()})
        assert parse_expression("{{ $node.hook.data.status }}", ctx) == "active"


class TestResolution:
    def test_non_strings_pass_through(self):
        ctx = make_context({"x": 1})
        payload = {"a": 1}
        assert parse_expression(payload, ctx) is payload
        assert parse_expression(42, ctx) == 42

    def test_idempotent(self):
        ctx = make_context({"x": "value"})
        once = parse_expression("got {{$vars.x}}", ctx)
        assert parse_expression(once, ctx) == once

    def test_unrecognized_prefix_is_reported(self):
        misses: list[ExpressionUnresolved] = []
        assert parse_expression("{{$env.HOME}}", make_context(), unresolved=misses) == "{{$env.HOME}}"
        assert [miss.reason for miss in misses] == ["unrecognized expression"]

    def test_resolve_config_walks_nested_values(self):
        ctx = make_context({"x": 5, "name": "bob"})
        config = {"body": {"user": "{{$vars.name}}", "ids": ["{{$vars.x}}", 7]}, "flag": True}
        assert resolve_config(config, ctx) == {"body": {"user": "bob", "ids": ["5", 7]}, "flag": True}

    def test_resolve_config_expands_templated_values(self):
        ctx = make_context({"inner": "{{$vars.leaf}}", "leaf": "done"})
        assert resolve_config("{{$vars.inner}}", ctx) == "done"

    def test_resolve_config_reports_misses_once(self):
        misses: list[ExpressionUnresolved] = []
        resolve_config({"a": "{{$vars.nope}}"}, make_context(), unresolved=misses)
        assert [miss.expression for miss in misses] == ["{{$vars.nope}}"]

    def test_self_referencing_variable_stops_expanding(self):
        misses: list[ExpressionUnresolved] = []
        ctx = make_context({"x": "a{{$vars.x}}"})
        out = resolve_config("{{$vars.x}}", ctx, unresolved=misses)
        assert out == "a" * (MAX_PASSES + 1) + "{{$vars.x}}"
        assert [miss.expression for miss in misses] == ["{{$vars.x}}"]
        assert "did not settle" in misses[0].reason

    def test_mutually_referencing_variables_stop_expanding(self):
        ctx = make_context({"a": "{{$vars.b}}", "b": "{{$vars.a}}"})
        assert resolve_config("{{$vars.a}}", ctx) in ("{{$vars.a}}", "{{$vars.b}}")

    def test_quoted_mode_quotes_templated_values_once(self):
        ctx = make_context({"a": "{{$vars.b}}", "b": "ok"})
        assert resolve_config("{{$vars.a}} === 'ok'", ctx, quote_strings=True) == "'ok' === 'ok'"

    def test_quoted_mode_expanded_template_is_a_string(self):
        ctx = make_context({"a": "{{$vars.n}}", "n": 5})
        assert resolve_config("{{$vars.a}} > 1", ctx, quote_strings=True) == "'5' > 1"

    def test_find_placeholders(self):
        assert find_placeholders("a {{$vars.x}} b {{$node.n.data}}") == ["{{$vars.x}}", "{{$node.n.data}}"]

    def test_serialise_lists(self):
        assert serialise([1, "a"]) == '[1, "a"]'
