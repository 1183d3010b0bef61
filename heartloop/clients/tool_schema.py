"""
Tool schema projection per vendor, and the reversible tool-name mapper.

Tool names in the catalog are dotted (``sms.read``). Some vendors only accept
``[a-zA-Z0-9_-]`` in function names, so those adapters sanitize names for the
outbound request and map the names the model sends back to the original.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from heartloop.chat.models import ToolApiDefinition

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
# Characters a vendor may put in front of a returned function name
_SUFFIX_BOUNDARIES = ("_", ".", ":", "/")


def sanitize_tool_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name)


class ToolNameMapper:
    """
    Per-request map between dotted tool names and vendor-safe names.

    Built fresh for every outbound request from that request's tool list, so
    the reverse lookup only ever considers tools the model was offered.
    Colliding sanitized names (``a.b_c`` and ``a_b.c``) get a numeric suffix
    so every original name has a unique wire name.
    """

    def __init__(self, names: list[str] | None = None) -> None:
        self._to_wire: dict[str, str] = {}
        self._to_original: dict[str, str] = {}
        for name in names or []:
            self.add(name)

    def add(self, name: str) -> str:
        if name in self._to_wire:
            return self._to_wire[name]

        base = sanitize_tool_name(name)
        wire = base
        counter = 2
        while wire in self._to_original:
            wire = f"{base}_{counter}"
            counter += 1

        self._to_wire[name] = wire
        self._to_original[wire] = name
        return wire

    def to_wire(self, name: str) -> str:
        """Vendor-safe name for a dotted tool name (registers it if new)."""
        return self._to_wire.get(name) or self.add(name)

    def to_original(self, wire_name: str) -> str:
        """
        Resolve a name sent back by the model.

        Priority: exact map hit, then a unique suffix match aligned on a name
        boundary, then naive substitution of the first ``_`` with ``.``.
        """
        original = self._to_original.get(wire_name)
        if original is not None:
            return original

        if wire_name in self._to_wire:
            # Model echoed the dotted name itself
            return wire_name

        matches = self._suffix_matches(wire_name)
        if len(matches) == 1:
            logger.debug(f"Resolved tool name '{wire_name}' by suffix to '{matches[0]}'")
            return matches[0]
        if len(matches) > 1:
            logger.warning(
                f"Ambiguous tool name '{wire_name}' matches {sorted(matches)}; "
                "falling back to naive substitution"
            )

        fallback = wire_name.replace("_", ".", 1)
        logger.warning(f"Unmapped tool name '{wire_name}', using '{fallback}'")
        return fallback

    def _suffix_matches(self, wire_name: str) -> list[str]:
        matches: list[str] = []
        for wire, original in self._to_original.items():
            if _ends_on_boundary(wire_name, wire) or _ends_on_boundary(wire, wire_name):
                matches.append(original)
        return matches

    def __len__(self) -> int:
        return len(self._to_wire)


def _ends_on_boundary(longer: str, suffix: str) -> bool:
    if len(longer) <= len(suffix) or not suffix or not longer.endswith(suffix):
        return False
    return longer[-len(suffix) - 1] in _SUFFIX_BOUNDARIES


# ==============================================================================
# VENDOR PROJECTIONS
# ==============================================================================


def to_anthropic_tools(tools: list[ToolApiDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": _json_schema(tool),
        }
        for tool in tools
    ]


def to_openai_tools(
    tools: list[ToolApiDefinition], mapper: ToolNameMapper
) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": mapper.to_wire(tool.name),
                "description": tool.description,
                "parameters": _json_schema(tool),
            },
        }
        for tool in tools
    ]


def to_gemini_declarations(
    tools: list[ToolApiDefinition], mapper: ToolNameMapper
) -> list[dict[str, Any]]:
    """Gemini function declarations; schema types are upper-case."""
    declarations: list[dict[str, Any]] = []
    for tool in tools:
        declaration: dict[str, Any] = {
            "name": mapper.to_wire(tool.name),
            "description": tool.description,
        }
        # Gemini rejects an OBJECT schema with no properties
        if tool.input_schema.properties:
            declaration["parameters"] = _upper_types(_json_schema(tool))
        declarations.append(declaration)
    return declarations


def _json_schema(tool: ToolApiDefinition) -> dict[str, Any]:
    schema = tool.input_schema.to_json_schema()
    if not schema.get("required"):
        schema.pop("required", None)
    return schema


def _upper_types(node: Any) -> Any:
    if isinstance(node, dict):
        out: dict[str, Any] = {}
        for key, value in node.items():
            if key == "type" and isinstance(value, str):
                out[key] = value.upper()
            elif key == "properties" and isinstance(value, dict):
                out[key] = {name: _upper_types(prop) for name, prop in value.items()}
            else:
                out[key] = _upper_types(value)
        return out
    if isinstance(node, list):
        return [_upper_types(item) for item in node]
    return node
