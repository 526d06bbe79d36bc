import asyncio
import re

from session_orchestrator.domain.tool.tool_executor import ConsentGate, ToolExecutor
from session_orchestrator.domain.tool.tool_registry import ToolDefinition, ToolRegistry
from session_orchestrator.domain.tool.tool_validator import ToolParameterValidator

WEATHER_SCHEMA = {
    "type": "object",
    "properties": {"city": {"type": "string"}},
    "required": ["city"],
}


def weather_tool(handler=None):
    return ToolDefinition(
        name="get_weather",
        description="Current weather for a city",
        category="external",
        parameters=WEATHER_SCHEMA,
        handler=handler or (lambda city: f"Sunny in {city}")
    )


class TestToolRegistry:
    def test_builtin_tools(self):
        names = [tool["name"] for tool in ToolRegistry().list_tools()]

        assert names == ["get_date", "get_time"]

    def test_without_builtins(self):
        assert ToolRegistry(include_builtin=False).list_tools() == []

    def test_register_and_unregister(self):
        registry = ToolRegistry()
        registry.register_tool(weather_tool())

        assert registry.get_tool("get_weather") is not None
        assert [tool["name"] for tool in registry.get_tools_by_category("external")] == ["get_weather"]

        assert registry.unregister_tool("get_weather") is True
        assert registry.unregister_tool("get_weather") is False
        assert registry.get_tools_by_category("external") == []

    def test_register_replaces_same_name(self):
        registry = ToolRegistry(include_builtin=False)
        registry.register_tool(weather_tool())
        registry.register_tool(weather_tool())

        assert len(registry.list_tools()) == 1

    def test_clear_category(self):
        registry = ToolRegistry()
        registry.register_tool(weather_tool())

        registry.clear_category("external")

        assert registry.get_tool("get_weather") is None
        assert registry.get_tool("get_date") is not None

    def test_search(self):
        registry = ToolRegistry()
        registry.register_tool(weather_tool())

        assert [tool["name"] for tool in registry.search_tools("WEATHER")] == ["get_weather"]

    def test_description_omits_handler(self):
        described = weather_tool().describe()

        assert "handler" not in described
        assert described["schema"] == WEATHER_SCHEMA


class TestToolParameterValidator:
    def test_valid_arguments(self):
        result = ToolParameterValidator.validate_tool_call(weather_tool(), {"city": "Oslo"})

        assert result.is_valid
        assert result.errors == []

    def test_missing_required_argument(self):
        result = ToolParameterValidator.validate_tool_call(weather_tool(), {})

        assert not result.is_valid
        assert "city" in result.errors[0]

    def test_wrong_type(self):
        result = ToolParameterValidator.validate_tool_call(weather_tool(), {"city": 42})

        assert not result.is_valid


class TestToolExecutor:
    async def test_builtin_date(self):
        result = await ToolExecutor().invoke("get_date")

        assert result.success
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", result.data)
        assert result.execution_time_ms >= 0

    async def test_unknown_tool(self):
        result = await ToolExecutor().invoke("launch_rockets")

        assert result.success is False
        assert "not registered" in result.error

    async def test_invalid_arguments(self):
        registry = ToolRegistry()
        registry.register_tool(weather_tool())

        result = await ToolExecutor(registry).invoke("get_weather", {})

        assert result.success is False
        assert "Schema validation failed" in result.error

    async def test_handler_failure_becomes_a_result(self):
        def broken(city):
            raise ValueError("service down")

        registry = ToolRegistry()
        registry.register_tool(weather_tool(broken))

        result = await ToolExecutor(registry).invoke("get_weather", {"city": "Oslo"})

        assert result.success is False
        assert result.error == "service down"

    async def test_async_handler_is_awaited(self):
        async def forecast(city):
            return f"Rain in {city}"

        registry = ToolRegistry()
        registry.register_tool(weather_tool(forecast))

        result = await ToolExecutor(registry).invoke("get_weather", {"city": "Bergen"})

        assert result.data == "Rain in Bergen"


class TestConsentGate:
    async def test_approved_call_runs(self):
        gate = ConsentGate(timeout=1)

        async def approve(request):
            gate.resolve(request.id, True)

        gate.add_listener(approve)

        result = await ToolExecutor(consent_gate=gate).invoke("get_time")

        assert result.success

    async def test_denied_call_fails(self):
        gate = ConsentGate(timeout=1)

        async def deny(request):
            gate.resolve(request.id, False)

        gate.add_listener(deny)

        result = await ToolExecutor(consent_gate=gate).invoke("get_time")

        assert result.success is False
        assert "Consent denied" in result.error

    async def test_timeout_counts_as_denial(self):
        gate = ConsentGate(timeout=0.01)

        assert await gate.request("get_time", {}) is False
        assert gate.pending_requests() == []

    async def test_pending_request_is_listed_until_resolved(self):
        gate = ConsentGate(timeout=1)
        task = asyncio.create_task(gate.request("get_date", {}))
        await asyncio.sleep(0)

        pending = gate.pending_requests()
        assert [request.tool_name for request in pending] == ["get_date"]

        assert gate.resolve(pending[0].id, True) is True
        assert await task is True
        assert gate.resolve(pending[0].id, True) is False

    async def test_consent_not_required(self):
        assert await ConsentGate(require_consent=False).request("get_date", {}) is True

    async def test_failing_listener_does_not_block_the_decision(self):
        gate = ConsentGate(timeout=1)

        async def broken(request):
            raise RuntimeError("renderer gone")

        async def approve(request):
            gate.resolve(request.id, True)

        gate.add_listener(broken)
        gate.add_listener(approve)

        assert await gate.request("get_date", {}) is True
