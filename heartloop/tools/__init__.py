"""Tool contract, catalog and built-in tools."""

from __future__ import annotations

from .base import ParameterProperty, Tool, ToolParameters, ToolResult

__all__ = ["ParameterProperty", "Tool", "ToolParameters", "ToolResult"]
