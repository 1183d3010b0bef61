"""
Agent Data Models

Vendor-neutral conversation model shared by every provider adapter, plus the
state and event types the agent loop publishes to observers.
All strongly typed with Pydantic for validation and type safety.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from heartloop.tools.base import ToolParameters, ToolResult

# ==============================================================================
# CONVERSATION CONTENT
# ==============================================================================


class Role(str, Enum):
    """Author of a message. Tool results travel in USER messages."""

    USER = "user"
    ASSISTANT = "assistant"


class TextBlock(BaseModel):
    """Plain text, or a provider "thought" when is_thought is set.

    thought_signature is an opaque provider token that must be sent back
    verbatim on the next request containing this block.
    """

    type: Literal["text"] = "text"
    text: str
    is_thought: bool = False
    thought_signature: str | None = None


class ToolUseBlock(BaseModel):
    """Tool call requested by the model."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    thought_signature: str | None = None


class ToolResultBlock(BaseModel):
    """Result of a tool call, matched to its ToolUseBlock by tool_use_id."""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


class ImageBlock(BaseModel):
    """Base64 image attachment."""

    type: Literal["image"] = "image"
    base64_data: str
    media_type: str = "image/png"


ContentBlock = Annotated[
    TextBlock | ToolUseBlock | ToolResultBlock | ImageBlock,
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One turn of the conversation."""

    role: Role
    content: list[ContentBlock] = Field(default_factory=list)  # type: ignore

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role=Role.ASSISTANT, content=[TextBlock(text=text)])

    @classmethod
    def tool_results(cls, results: list[ToolResultBlock]) -> Message:
        return cls(role=Role.USER, content=list(results))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_result_blocks(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def visible_text(self) -> str:
        """Concatenated non-thought text of this message."""
        return "".join(
            b.text for b in self.content if isinstance(b, TextBlock) and not b.is_thought
        )


# ==============================================================================
# TOOL DEFINITIONS
# ==============================================================================


class ToolApiDefinition(BaseModel):
    """Tool description sent to a provider. Names use a dotted namespace."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    input_schema: ToolParameters


# ==============================================================================
# REQUEST/RESPONSE MODELS
# ==============================================================================


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    ERROR = "error"


class Usage(BaseModel):
    """Token usage information."""

    input_tokens: int = 0
    output_tokens: int = 0


class CompletionRequest(BaseModel):
    """Everything a provider needs for one completion call. Immutable."""

    model_config = ConfigDict(frozen=True)

    system_prompt: str
    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolApiDefinition] = Field(default_factory=list)
    max_tokens: int = 4096


class CompletionResponse(BaseModel):
    """Vendor-neutral completion result."""

    content: list[ContentBlock] = Field(default_factory=list)  # type: ignore
    stop_reason: StopReason = StopReason.END_TURN
    usage: Usage | None = None

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


# ==============================================================================
# STREAMING MODELS
# ==============================================================================


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolUseStart(BaseModel):
    type: Literal["tool_use_start"] = "tool_use_start"
    id: str
    name: str


class ToolUseInputDelta(BaseModel):
    type: Literal["tool_use_input_delta"] = "tool_use_input_delta"
    delta: str


class StreamComplete(BaseModel):
    type: Literal["complete"] = "complete"
    response: CompletionResponse


class StreamError(BaseModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = TextDelta | ToolUseStart | ToolUseInputDelta | StreamComplete | StreamError


# ==============================================================================
# AGENT STATE & EVENTS
# ==============================================================================


class AgentState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING_TOOLS = "executing_tools"
    WAITING_APPROVAL = "waiting_approval"
    PAUSED = "paused"
    ERROR = "error"


class UserMessageEvent(BaseModel):
    type: Literal["user_message"] = "user_message"
    text: str


class AssistantTextEvent(BaseModel):
    type: Literal["assistant_text"] = "assistant_text"
    text: str


class ThinkingTextEvent(BaseModel):
    type: Literal["thinking_text"] = "thinking_text"
    text: str


class ToolCallStartEvent(BaseModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    name: str
    params: dict[str, Any] = Field(default_factory=dict)


class ToolCallResultEvent(BaseModel):
    type: Literal["tool_call_result"] = "tool_call_result"
    name: str
    result: ToolResult


class ToolCallDeniedEvent(BaseModel):
    type: Literal["tool_call_denied"] = "tool_call_denied"
    name: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


class HeartbeatStartEvent(BaseModel):
    type: Literal["heartbeat_start"] = "heartbeat_start"


class HeartbeatCompleteEvent(BaseModel):
    type: Literal["heartbeat_complete"] = "heartbeat_complete"
    result: str
    is_task_complete: bool = False
    status_note: str | None = None


class ProviderFailoverEvent(BaseModel):
    type: Literal["provider_failover"] = "provider_failover"
    from_provider: str
    to_provider: str
    reason: str


AgentEvent = (
    UserMessageEvent
    | AssistantTextEvent
    | ThinkingTextEvent
    | ToolCallStartEvent
    | ToolCallResultEvent
    | ToolCallDeniedEvent
    | ErrorEvent
    | HeartbeatStartEvent
    | HeartbeatCompleteEvent
    | ProviderFailoverEvent
)
