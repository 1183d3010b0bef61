#!/usr/bin/env python3
"""
Test script for the tool catalog, MCP-hosted tools and the heartbeat context tool.
"""

from __future__ import annotations

import asyncio
from typing import Any

from mcp import McpError, types

from heartloop.heartbeat.manager import MAX_INTERVAL_MS, HeartbeatManager
from heartloop.tools import ParameterProperty, Tool, ToolParameters, ToolResult
from heartloop.tools.catalog import ToolCatalog
from heartloop.tools.heartbeat_context import HeartbeatContextTool
from heartloop.tools.mcp_tool import McpTool, pluck_content, schema_to_parameters


class EchoTool(Tool):
    description = "Echo the input"
    parameters = ToolParameters(
        properties={"text": ParameterProperty(description="Text to echo")},
        required=["text"],
    )

    def __init__(self, name: str = "debug.echo", description: str = "Echo the input") -> None:
        self.name = name
        self.description = description

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        return ToolResult.ok(params.get("text"))


class FakeMCPClient:
    """Stands in for MCPClient with a fixed tool list."""

    def __init__(self, name: str = "fs", connected: bool = True) -> None:
        self.name = name
        self.is_connected = connected
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.result = types.CallToolResult(
            content=[types.TextContent(type="text", text="file body")], isError=False
        )
        self.error: McpError | None = None

    async def list_tools(self) -> list[types.Tool]:
        return [
            types.Tool(
                name="read_file",
                description="Read a file",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "File path"},
                        "limit": {"type": ["integer", "null"]},
                    },
                    "required": ["path"],
                },
                annotations=types.ToolAnnotations(readOnlyHint=True),
            ),
            types.Tool(
                name="write_file",
                description="Write a file",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        return self.result


def test_register_get_and_schema():
    print("🧪 Testing catalog registration...")
    catalog = ToolCatalog()
    catalog.register(EchoTool(), EchoTool("debug.other"))

    assert len(catalog) == 2
    assert "debug.echo" in catalog
    assert catalog.names() == {"debug.echo", "debug.other"}
    assert catalog.get("missing") is None

    schema = catalog.to_api_schema()
    assert [d.name for d in schema] == ["debug.echo", "debug.other"]
    assert schema[0].input_schema.required == ["text"]
    assert schema[0].input_schema.to_json_schema()["properties"]["text"]["type"] == "string"
    print("✅ Catalog registration works")


def test_last_registration_wins():
    catalog = ToolCatalog()
    catalog.register(EchoTool(description="first"))
    catalog.register(EchoTool(description="second"))
    assert len(catalog) == 1
    assert catalog.get("debug.echo").description == "second"


def test_default_parameters_are_not_shared():
    class First(Tool):
        name = "first.tool"

        async def execute(self, params: dict[str, Any]) -> ToolResult:
            return ToolResult.ok()

    class Second(Tool):
        name = "second.tool"

        async def execute(self, params: dict[str, Any]) -> ToolResult:
            return ToolResult.ok()

    class LoudEcho(EchoTool):
        pass

    First.parameters.properties["flag"] = ParameterProperty(type="boolean")
    assert Second.parameters.properties == {}
    assert First().parameters is not Second().parameters

    LoudEcho.parameters.required.append("volume")
    assert EchoTool.parameters.required == ["text"]
    assert list(LoudEcho.parameters.properties) == ["text"]


def test_schema_to_parameters_collapses_nullable_types():
    params = schema_to_parameters(
        {
            "properties": {
                "limit": {"type": ["null", "integer"], "minimum": 1},
                "mode": {"type": "string", "enum": ["a", "b"]},
            },
            "required": ["mode"],
        }
    )
    assert params.properties["limit"].type == "integer"
    assert params.to_json_schema()["properties"]["limit"]["minimum"] == 1
    assert params.properties["mode"].enum == ["a", "b"]
    assert params.required == ["mode"]


def test_pluck_content():
    empty = types.CallToolResult(content=[], isError=False)
    assert pluck_content(empty) == "✓ done"

    mixed = types.CallToolResult(
        content=[
            types.TextContent(type="text", text="line one"),
            types.ImageContent(type="image", data="aGVsbG8=", mimeType="image/png"),
        ],
        isError=False,
    )
    assert pluck_content(mixed) == "line one\n[Image: image/png, 8 bytes]"


async def test_register_mcp_client_namespaces_tools():
    print("🧪 Testing MCP tool registration...")
    catalog = ToolCatalog()
    client = FakeMCPClient()

    count = await catalog.register_mcp_client(client)

    assert count == 2
    assert catalog.names() == {"fs.read_file", "fs.write_file"}
    read_tool = catalog.get("fs.read_file")
    assert isinstance(read_tool, McpTool)
    assert read_tool.requires_approval is False
    assert catalog.get("fs.write_file").requires_approval is True
    assert read_tool.parameters.properties["limit"].type == "integer"
    print("✅ MCP tools registered under the server namespace")


async def test_disconnected_client_is_skipped():
    catalog = ToolCatalog()
    assert await catalog.register_mcp_client(FakeMCPClient(connected=False)) == 0
    assert len(catalog) == 0


async def test_mcp_tool_execute():
    print("🧪 Testing MCP tool execution...")
    client = FakeMCPClient()
    tool = McpTool((await client.list_tools())[0], client)

    result = await tool.execute({"path": "/tmp/a"})
    assert result.success and result.data == "file body"
    assert client.calls == [("read_file", {"path": "/tmp/a"})]

    client.result = types.CallToolResult(
        content=[types.TextContent(type="text", text="no such file")], isError=True
    )
    result = await tool.execute({"path": "/nope"})
    assert not result.success and result.error == "no such file"

    client.error = McpError(types.ErrorData(code=-32000, message="server gone"))
    result = await tool.execute({"path": "/tmp/a"})
    assert not result.success and result.error == "MCP error: server gone"
    print("✅ MCP tool results and failures converted")


async def test_heartbeat_context_tool():
    print("🧪 Testing heartbeat.context tool...")
    manager = HeartbeatManager()
    tool = HeartbeatContextTool(manager)

    result = await tool.execute({"action": "set", "context": "waiting for build"})
    assert result.success
    assert result.data["active"] is True
    assert manager.active_task_context == "waiting for build"

    result = await tool.execute({"action": "clear"})
    assert result.success and result.data["active"] is False
    assert manager.active_task_context is None
    assert manager.current_interval_ms == MAX_INTERVAL_MS

    assert (await tool.execute({})).error == "Missing 'action' parameter"
    assert (await tool.execute({"action": "set"})).success is False
    assert (await tool.execute({"action": "pause"})).error == (
        "Unknown action: pause. Use 'set' or 'clear'."
    )
    print("✅ heartbeat.context works")


if __name__ == "__main__":
    test_register_get_and_schema()
    test_last_registration_wins()
    test_default_parameters_are_not_shared()
    test_schema_to_parameters_collapses_nullable_types()
    test_pluck_content()
    asyncio.run(test_register_mcp_client_namespaces_tools())
    asyncio.run(test_disconnected_client_is_skipped())
    asyncio.run(test_mcp_tool_execute())
    asyncio.run(test_heartbeat_context_tool())
    print("\n🎉 All tool catalog tests passed!")
