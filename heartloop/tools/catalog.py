"""Tool Catalog for the agent runtime.

This module provides a lightweight name-keyed registry that:
- Holds every tool the model may call (built-in and MCP-hosted)
- Emits vendor-neutral tool definitions on demand
- Discovers tools from connected MCP servers

Design goals:
- No schema conversion here beyond the neutral ToolApiDefinition projection;
  each provider adapter shapes it for its own wire format
- Last registration for a name wins (logged, not prevented)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from heartloop.chat.models import ToolApiDefinition
from heartloop.tools.base import Tool
from heartloop.tools.mcp_tool import McpTool

if TYPE_CHECKING:
    from heartloop.mcp_client import MCPClient

logger = logging.getLogger(__name__)


class ToolCatalog:
    """Name -> Tool map consulted by the agent loop on every iteration."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, *tools: Tool) -> None:
        """Register one or more tools. A later tool replaces an earlier one."""
        for tool in tools:
            if tool.name in self._tools:
                logger.warning(
                    "Tool name conflict: '%s' already registered, replacing", tool.name
                )
            self._tools[tool.name] = tool
            logger.debug("Registered tool '%s'", tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> set[str]:
        return set(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def to_api_schema(self) -> list[ToolApiDefinition]:
        """Project every registered tool into the definition sent to providers."""
        return [
            ToolApiDefinition(
                name=tool.name,
                description=tool.description,
                input_schema=tool.parameters,
            )
            for tool in self._tools.values()
        ]

    async def register_mcp_client(self, client: MCPClient) -> int:
        """
        Register all tools from a connected MCP client.

        Each tool is exposed as ``<client name>.<tool name>`` so MCP tools share
        the dotted namespace of the built-in tools. Disconnected clients are
        skipped.

        Returns:
            Number of tools registered from this client.
        """
        if not client.is_connected:
            logger.warning(
                f"Skipping tool registration for disconnected client '{client.name}'"
            )
            return 0

        try:
            tools = await client.list_tools()
        except Exception as e:
            logger.error(f"Error registering tools from client '{client.name}': {e}")
            raise

        for mcp_tool in tools:
            self.register(McpTool(mcp_tool, client))

        logger.info(f"Registered {len(tools)} tools from client '{client.name}'")
        return len(tools)
