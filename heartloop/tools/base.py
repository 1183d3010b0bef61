"""
Tool contract.

A tool is a named, schema-described capability the model can invoke. What a
tool does is its own business; the agent loop only depends on this contract.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ParameterProperty(BaseModel):
    """One parameter of a tool's input schema.

    Extra JSON-schema keywords (items, minimum, ...) are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    type: str = "string"
    description: str = ""
    enum: list[Any] | None = None


class ToolParameters(BaseModel):
    """JSON-schema style description of a tool's parameters."""

    type: str = "object"
    properties: dict[str, ParameterProperty] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)

    def to_json_schema(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ToolResult(BaseModel):
    """Outcome of a tool execution."""

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, message: str) -> ToolResult:
        return cls(success=False, error=message)

    def as_text(self) -> str:
        """Render the result the way it is folded back into the conversation."""
        if not self.success:
            return self.error or "Unknown error"
        if self.data is None:
            return "Success"
        if isinstance(self.data, str):
            return self.data
        try:
            return json.dumps(self.data)
        except (TypeError, ValueError):
            return str(self.data)


class Tool(ABC):
    """Base class for every capability exposed to the model.

    Subclasses set ``name`` (dotted, e.g. ``"sms.read"``), ``description``,
    ``parameters`` and ``requires_approval`` and implement ``execute``.
    """

    name: str
    description: str = ""
    parameters: ToolParameters
    requires_approval: bool = False

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        # Each class owns its schema; an inherited one is copied, not shared
        if "parameters" not in cls.__dict__:
            inherited = getattr(cls, "parameters", None)
            cls.parameters = (
                ToolParameters() if inherited is None else inherited.model_copy(deep=True)
            )

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> ToolResult:
        """Run the tool with a flat parameter object matching ``parameters``."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
