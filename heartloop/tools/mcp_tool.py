"""
MCP-hosted tools.

Adapts a tool advertised by an MCP server to the Tool contract so the agent
loop can gate and execute it like any built-in capability.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from mcp import McpError, types

from heartloop.tools.base import ParameterProperty, Tool, ToolParameters, ToolResult

if TYPE_CHECKING:
    from heartloop.mcp_client import MCPClient

logger = logging.getLogger(__name__)


def schema_to_parameters(schema: dict[str, Any] | None) -> ToolParameters:
    """Convert an MCP ``inputSchema`` into ToolParameters."""
    schema = schema or {}
    properties: dict[str, ParameterProperty] = {}
    for prop_name, prop in (schema.get("properties") or {}).items():
        prop = dict(prop)
        prop_type = prop.pop("type", "string")
        # ["string", "null"] style unions collapse to the first concrete type
        if isinstance(prop_type, list):
            prop_type = next((t for t in prop_type if t != "null"), "string")
        properties[prop_name] = ParameterProperty(type=prop_type, **prop)
    return ToolParameters(
        properties=properties,
        required=list(schema.get("required") or []),
    )


def pluck_content(res: types.CallToolResult) -> str:
    """
    Extract readable content from an MCP CallToolResult.

    Structured content wins when present; otherwise each content item is
    rendered by type, with placeholders for binary payloads.
    """
    if not res.content:
        return "✓ done"

    if getattr(res, "structuredContent", None):
        try:
            return json.dumps(res.structuredContent, indent=2)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize structured content: %s", e)

    out: list[str] = []
    for item in res.content:
        if isinstance(item, types.TextContent):
            out.append(item.text)
        elif isinstance(item, types.ImageContent):
            out.append(f"[Image: {item.mimeType}, {len(item.data)} bytes]")
        elif isinstance(item, types.EmbeddedResource):
            if isinstance(item.resource, types.TextResourceContents):
                out.append(f"[Embedded resource: {item.resource.text}]")
            else:
                out.append(f"[Embedded resource: {type(item.resource).__name__}]")
        else:
            out.append(f"[{type(item).__name__}]")

    return "\n".join(out)


class McpTool(Tool):
    """Tool proxied to an MCP server, named ``<server>.<tool>``."""

    def __init__(self, tool: types.Tool, client: MCPClient) -> None:
        self.remote_name = tool.name
        self.client = client
        self.name = f"{client.name}.{tool.name}"
        self.description = tool.description or ""
        self.parameters = schema_to_parameters(tool.inputSchema)
        annotations = getattr(tool, "annotations", None)
        # Anything not declared read-only is treated as a write
        self.requires_approval = not (
            annotations is not None and getattr(annotations, "readOnlyHint", False)
        )

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        try:
            result = await self.client.call_tool(self.remote_name, params)
        except McpError as e:
            return ToolResult.fail(f"MCP error: {e.error.message}")

        content = pluck_content(result)
        if result.isError:
            return ToolResult.fail(content)
        return ToolResult.ok(content)
