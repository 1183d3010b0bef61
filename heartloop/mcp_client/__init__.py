"""MCP client for sourcing tools from external servers."""

from __future__ import annotations

from .client import MCPClient

__all__ = ["MCPClient"]
