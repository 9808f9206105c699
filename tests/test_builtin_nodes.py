from __future__ import annotations

import pytest

from flowrunner.models import ContextView, ExecutionResult, NodeKind, WorkflowContext
from flowrunner.nodes import builtin, default_registry
from flowrunner.nodes.agent import validate_ai_prompt
from flowrunner.nodes.base import NodeRegistry, NodeSpec


def view(**variables) -> ContextView:
    return WorkflowContext(execution_id="exec-1", variables=variables).view()


class TestRegistry:
    def test_builtins_are_registered(self, registry):
        assert {
            "manual_trigger",
            "webhook_trigger",
            "set_variable",
            "delay",
            "api_request",
            "template",
            "ai_prompt",
            "branch_condition",
            "filter_condition",
            "transform_data",
        } <= set(registry.list_types())
        assert [spec.subtype for spec in registry.by_kind(NodeKind.TRIGGER)] == ["manual_trigger", "webhook_trigger"]

    def test_unknown_subtype(self, registry):
        assert registry.validate_config("send_fax", {}).errors == {"integration": "Integration not found"}
        assert registry.unregister("echo")
        assert not registry.has("echo")
        assert not registry.unregister("echo")

    def test_required_fields_without_validator(self, registry):
        result = registry.validate_config("template", {"template": ""})
        assert result.errors == {"template": "template is required"}

    @pytest.mark.asyncio
    async def test_invoke_rejects_non_results(self):
        registry = NodeRegistry()
        registry.register(NodeSpec("odd", NodeKind.ACTION, "Returns a dict.", lambda _c, _x: {"ok": True}))
        result = await registry.invoke("odd", {}, view())
        assert not result.success
        assert result.error == "Integration odd returned dict instead of a result"

    @pytest.mark.asyncio
    async def test_invoke_awaits_async_handlers(self):
        async def handler(config, _context):
            return ExecutionResult(success=True, data={"seen": config["x"]})

        registry = NodeRegistry()
        registry.register(NodeSpec("async_node", NodeKind.ACTION, "Async.", handler))
        result = await registry.invoke("async_node", {"x": 1}, view())
        assert result.data == {"seen": 1}


def test_manual_trigger():
    result = builtin.manual_trigger_handler({}, view())
    assert result.success
    assert result.data["triggerName"] == "Manual Trigger"
    assert result.metadata == {"nodeType": "trigger", "subtype": "manual_trigger"}


def test_webhook_trigger_parses_payload():
    result = builtin.webhook_trigger_handler({"method": "post", "samplePayload": '{"a": 1}'}, view())
    assert result.data["method"] == "POST"
    assert result.data["body"] == {"a": 1}
    assert not builtin.webhook_trigger_handler({"samplePayload": "{nope"}, view()).success


class TestSetVariable:
    def test_json_values_are_decoded(self):
        result = builtin.set_variable_handler({"variableName": "order", "value": '{"id": 3}'}, view())
        assert result.data["value"] == {"id": 3}

    def test_plain_text_is_kept(self):
        result = builtin.set_variable_handler({"variableName": "name", "value": "Ada"}, view())
        assert result.data["value"] == "Ada"

    def test_invalid_name(self):
        assert not builtin.set_variable_handler({"variableName": "a-b", "value": "1"}, view()).success


class TestDelay:
    @pytest.mark.asyncio
    async def test_delay_is_capped(self, test_config):
        result = await builtin.delay_handler(
            {"amount": 2, "unit": "minutes"}, view(), app_settings=test_config
        )
        assert result.success
        assert result.data["requestedDelayMs"] == 120000
        assert result.data["actualDelayMs"] == 50

    @pytest.mark.asyncio
    async def test_bad_unit(self, test_config):
        result = await builtin.delay_handler(
            {"amount": 1, "unit": "fortnights"}, view(), app_settings=test_config
        )
        assert result.error == "Invalid delay unit: 'fortnights'"

    def test_validation(self):
        assert builtin.validate_delay({"amount": "1", "unit": "seconds"}).valid
        assert set(builtin.validate_delay({"amount": "x", "unit": "days"}).errors) == {"amount", "unit"}


class TestApiRequest:
    @pytest.mark.asyncio
    async def test_blocks_domains_outside_allowlist(self, test_config):
        result = await builtin.api_request_handler(
            {"url": "https://evil.example.org/", "method": "GET"}, view(), app_settings=test_config
        )
        assert not result.success
        assert result.error.startswith("Domain blocked")

    @pytest.mark.asyncio
    async def test_rejects_bad_urls(self, test_config):
        result = await builtin.api_request_handler(
            {"url": "ftp://api.example.com/x", "method": "GET"}, view(), app_settings=test_config
        )
        assert result.error == "Invalid URL: 'ftp://api.example.com/x'"

    @pytest.mark.asyncio
    async def test_sends_json_body(self, test_config, monkeypatch):
        calls = []

        def fake_call(url, method, headers, body, timeout):
            calls.append((url, method, headers, body))
            return 201, "Created", {"Content-Type": "application/json"}, '{"id": 9}'

        monkeypatch.setattr(builtin, "_http_call", fake_call)
        result = await builtin.api_request_handler(
            {"url": "https://api.example.com/items", "method": "post", "body": '{"name": "x"}'},
            view(),
            app_settings=test_config,
        )
        assert result.success
        assert result.data["status"] == 201
        assert result.data["response"] == {"id": 9}
        url, method, headers, body = calls[0]
        assert (url, method, body) == ("https://api.example.com/items", "POST", b'{"name": "x"}')
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_error_status_fails(self, test_config, monkeypatch):
        monkeypatch.setattr(builtin, "_http_call", lambda *args: (503, "Service Unavailable", {}, "down"))
        result = await builtin.api_request_handler(
            {"url": "https://api.example.com/", "method": "GET"}, view(), app_settings=test_config
        )
        assert not result.success
        assert result.error == "HTTP 503: Service Unavailable"
        assert result.data["response"] == "down"


def test_template_fills_json_placeholder():
    result = builtin.template_handler({"template": "vars={{json}}"}, view(x=1))
    assert result.data["text"] == 'vars={"x": 1}'


class TestBranchCondition:
    def test_true_path_with_label(self):
        result = builtin.branch_condition_handler({"condition": "'a' === 'a'", "trueLabel": "yes"}, view())
        assert result.data["result"] is True
        assert result.data["path"] == "true"
        assert result.data["label"] == "yes"

    def test_invalid_condition_takes_false_path(self):
        result = builtin.branch_condition_handler({"condition": "__import__('os')"}, view())
        assert result.success
        assert result.data["path"] == "false"
        assert "evaluationError" in result.data

    def test_empty_condition_fails(self):
        assert not builtin.branch_condition_handler({"condition": "  "}, view()).success


@pytest.mark.parametrize(
    ("operator", "field", "value", "expected"),
    [
        ("equals", "5", 5, True),
        ("not_equals", "a", "b", True),
        ("contains", "hello world", "world", True),
        ("greater_than", "10", "9", False),
        ("greater_than", 10, "9", True),
        ("less_than", 1, 2, True),
    ],
)
def test_filter_condition(operator, field, value, expected):
    result = builtin.filter_condition_handler({"field": field, "operator": operator, "value": value}, view())
    assert result.data["conditionMet"] is expected


def test_filter_condition_bad_comparison():
    result = builtin.filter_condition_handler({"field": "abc", "operator": "less_than", "value": 3}, view())
    assert not result.success


class TestTransformData:
    def test_extract_field(self):
        result = builtin.transform_data_handler(
            {"inputData": '{"user": {"tags": ["a", "b"]}}', "transformation": "extract_field", "fieldPath": "user.tags.1"},
            view(),
        )
        assert result.data["result"] == "b"

    def test_extract_missing_field(self):
        result = builtin.transform_data_handler(
            {"inputData": "{}", "transformation": "extract_field", "fieldPath": "nope"},
            view(),
        )
        assert result.error == "Field path not found: nope"

    def test_to_number(self):
        result = builtin.transform_data_handler({"inputData": "4.0", "transformation": "to_number"}, view())
        assert result.data["result"] == 4

    def test_format_json(self):
        result = builtin.transform_data_handler({"inputData": '{"a": 1}', "transformation": "format_json"}, view())
        assert result.data["result"] == '{\n  "a": 1\n}'

    def test_unknown_transformation(self, registry):
        assert not registry.validate_config("transform_data", {"inputData": "1", "transformation": "shout"}).valid


def test_ai_prompt_validation(test_config):
    assert validate_ai_prompt({"prompt": "hi"}, app_settings=test_config).valid
    errors = validate_ai_prompt({"prompt": "", "num_ctx": 0, "temperature": "hot"}, app_settings=test_config).errors
    assert set(errors) == {"prompt", "num_ctx", "temperature"}


@pytest.mark.asyncio
async def test_registry_binds_its_config(test_config):
    registry = default_registry(test_config)
    result = await registry.invoke("delay", {"amount": 1, "unit": "hours"}, view())
    assert result.data["actualDelayMs"] == 50
    blocked = await registry.invoke("api_request", {"url": "https://other.example.org/", "method": "GET"}, view())
    assert blocked.error == "Domain blocked. Allowed domains: ['api.example.com']"
