"""
Anthropic Messages API adapter.

Supports extended thinking: thinking blocks come back as thought TextBlocks
carrying the provider signature and are echoed back verbatim on later turns.
``stream()`` decodes the server-sent-event stream block by block.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from heartloop.chat.models import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    ImageBlock,
    Message,
    StopReason,
    StreamComplete,
    StreamError,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseInputDelta,
    ToolUseStart,
    Usage,
)
from heartloop.clients.base import LLMProvider, ProviderError, error_body
from heartloop.clients.tool_schema import to_anthropic_tools

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
MIN_THINKING_BUDGET = 1024

_STOP_REASONS = {
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
}


class AnthropicProvider(LLMProvider):
    name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

    @property
    def url(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _thinking_budget(self, max_tokens: int) -> int | None:
        """Configured thinking budget, or None when thinking must stay off."""
        budget = int(self.provider_config.get("thinking_budget_tokens") or 0)
        if budget < MIN_THINKING_BUDGET or budget >= max_tokens:
            return None
        return budget

    def build_payload(self, request: CompletionRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "system": request.system_prompt,
            "messages": [self._message_to_json(m) for m in request.messages],
        }
        if stream:
            payload["stream"] = True

        budget = self._thinking_budget(request.max_tokens)
        if budget is not None:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}

        if request.tools:
            payload["tools"] = to_anthropic_tools(request.tools)
        return payload

    def _message_to_json(self, message: Message) -> dict[str, Any]:
        content = [
            block_json
            for block in message.content
            if (block_json := self._block_to_json(block)) is not None
        ]
        if not content:
            content = [{"type": "text", "text": "(no content)"}]
        return {"role": message.role.value, "content": content}

    @staticmethod
    def _block_to_json(block: ContentBlock) -> dict[str, Any] | None:
        if isinstance(block, TextBlock):
            if block.is_thought:
                # Unsigned thoughts (e.g. from another vendor) are rejected by the API
                if not block.thought_signature:
                    return None
                return {
                    "type": "thinking",
                    "thinking": block.text,
                    "signature": block.thought_signature,
                }
            if not block.text:
                return None
            return {"type": "text", "text": block.text}
        if isinstance(block, ToolUseBlock):
            return {
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": block.input,
            }
        if isinstance(block, ToolResultBlock):
            out: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": block.tool_use_id,
                "content": block.content,
            }
            if block.is_error:
                out["is_error"] = True
            return out
        if isinstance(block, ImageBlock):
            return {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": block.media_type,
                    "data": block.base64_data,
                },
            }
        return None

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self._require_key()
        payload = self.build_payload(request)
        logger.info(
            f"→ LLM[anthropic]: model={self.model}, messages={len(request.messages)}, "
            f"tools={len(request.tools)}"
        )

        start_time = time.monotonic()
        try:
            response = await self.client.post(self.url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling Anthropic: {e}")
            raise ProviderError(f"HTTP error: {e!s}") from e

        if not response.is_success:
            raise ProviderError(
                f"Anthropic API error {response.status_code}: {error_body(response)}",
                response.status_code,
            )
        if not response.content:
            raise ProviderError("Empty response body", response.status_code)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProviderError(f"Invalid JSON in response: {e}") from e

        result = self.parse_response(data)
        logger.info(
            f"← LLM[anthropic]: stop_reason={result.stop_reason.value}, "
            f"blocks={len(result.content)}, "
            f"elapsed={(time.monotonic() - start_time) * 1000:.0f}ms"
        )
        return result

    @staticmethod
    def parse_response(data: dict[str, Any]) -> CompletionResponse:
        blocks: list[ContentBlock] = []
        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "thinking":
                blocks.append(
                    TextBlock(
                        text=block.get("thinking", ""),
                        is_thought=True,
                        thought_signature=block.get("signature"),
                    )
                )
            elif block_type == "text":
                blocks.append(TextBlock(text=block.get("text", "")))
            elif block_type == "tool_use":
                blocks.append(
                    ToolUseBlock(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        input=block.get("input") or {},
                    )
                )
            else:
                logger.debug(f"Skipping unsupported content block type: {block_type}")

        usage = None
        if usage_data := data.get("usage"):
            usage = Usage(
                input_tokens=usage_data.get("input_tokens", 0),
                output_tokens=usage_data.get("output_tokens", 0),
            )

        return CompletionResponse(
            content=blocks,
            stop_reason=_STOP_REASONS.get(data.get("stop_reason") or "", StopReason.END_TURN),
            usage=usage,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield StreamError(message=f"No API key configured for provider '{self.name}'")
            return

        payload = self.build_payload(request, stream=True)
        decoder = _SSEDecoder()
        self._active_streams += 1
        logger.debug(f"📈 Started stream, active streams: {self._active_streams}")

        try:
            async with self.client.stream(
                "POST",
                self.url,
                json=payload,
                headers={**self._headers(), "Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    await response.aread()
                    yield StreamError(
                        message=f"API error {response.status_code}: {error_body(response)}"
                    )
                    return

                event_name = ""
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line.startswith("event:"):
                        event_name = line[6:].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif not line.strip():
                        if data_lines:
                            for event in decoder.feed(event_name, "".join(data_lines)):
                                yield event
                        event_name = ""
                        data_lines = []
                    if decoder.finished:
                        return

                # Trailing event without a blank line terminator
                if data_lines:
                    for event in decoder.feed(event_name, "".join(data_lines)):
                        yield event
                if not decoder.finished:
                    yield StreamError(message="Stream closed before message_stop")

        except httpx.HTTPError as e:
            logger.error(f"HTTP error during streaming: {e}")
            yield StreamError(message=f"HTTP error: {e!s}")
        finally:
            self._active_streams -= 1
            logger.debug(f"📉 Ended stream, active streams: {self._active_streams}")


class _SSEDecoder:
    """
    Accumulates Anthropic stream events into a CompletionResponse.

    Text is buffered across text blocks and flushed as one TextBlock when a
    non-text block starts or the message ends. Tool input JSON and thinking
    text are buffered per open block and materialized on content_block_stop.
    """

    def __init__(self) -> None:
        self.blocks: list[ContentBlock] = []
        self.text: list[str] = []
        self.open_blocks: dict[int, dict[str, Any]] = {}
        self.stop_reason = StopReason.END_TURN
        self.usage = Usage()
        self.finished = False

    def feed(self, event_name: str, raw: str) -> list[StreamEvent]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Skipping undecodable stream event: {raw[:200]}")
            return []

        kind = data.get("type") or event_name
        handler = getattr(self, f"_on_{kind}", None)
        if handler is None:
            return []
        return handler(data)

    def _flush_text(self) -> None:
        if self.text:
            self.blocks.append(TextBlock(text="".join(self.text)))
            self.text = []

    def _on_ping(self, data: dict[str, Any]) -> list[StreamEvent]:
        return []

    def _on_message_start(self, data: dict[str, Any]) -> list[StreamEvent]:
        usage = (data.get("message") or {}).get("usage") or {}
        self.usage.input_tokens = usage.get("input_tokens", 0)
        return []

    def _on_content_block_start(self, data: dict[str, Any]) -> list[StreamEvent]:
        index = data.get("index", len(self.open_blocks))
        block = data.get("content_block") or {}
        block_type = block.get("type")

        if block_type != "text":
            self._flush_text()

        if block_type == "tool_use":
            self.open_blocks[index] = {
                "type": "tool_use",
                "id": block.get("id", ""),
                "name": block.get("name", ""),
                "json": [],
            }
            return [ToolUseStart(id=block.get("id", ""), name=block.get("name", ""))]
        if block_type == "thinking":
            self.open_blocks[index] = {
                "type": "thinking",
                "thinking": [block.get("thinking", "")],
                "signature": block.get("signature") or None,
            }
            return []

        self.open_blocks[index] = {"type": "text"}
        if initial := block.get("text"):
            self.text.append(initial)
            return [TextDelta(text=initial)]
        return []

    def _on_content_block_delta(self, data: dict[str, Any]) -> list[StreamEvent]:
        index = data.get("index", 0)
        delta = data.get("delta") or {}
        delta_type = delta.get("type")
        block = self.open_blocks.get(index, {})

        if delta_type == "text_delta":
            text = delta.get("text", "")
            self.text.append(text)
            return [TextDelta(text=text)]
        if delta_type == "input_json_delta":
            partial = delta.get("partial_json", "")
            block.setdefault("json", []).append(partial)
            return [ToolUseInputDelta(delta=partial)]
        if delta_type == "thinking_delta":
            block.setdefault("thinking", []).append(delta.get("thinking", ""))
        elif delta_type == "signature_delta":
            block["signature"] = (block.get("signature") or "") + delta.get("signature", "")
        return []

    def _on_content_block_stop(self, data: dict[str, Any]) -> list[StreamEvent]:
        block = self.open_blocks.pop(data.get("index", 0), None)
        if not block:
            return []

        if block["type"] == "tool_use":
            raw = "".join(block["json"]).strip()
            try:
                tool_input = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                logger.error(f"Malformed JSON arguments for {block['name']}: {raw[:200]}")
                tool_input = {}
            self.blocks.append(
                ToolUseBlock(
                    id=block["id"],
                    name=block["name"],
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
        elif block["type"] == "thinking":
            self.blocks.append(
                TextBlock(
                    text="".join(block["thinking"]),
                    is_thought=True,
                    thought_signature=block.get("signature"),
                )
            )
        return []

    def _on_message_delta(self, data: dict[str, Any]) -> list[StreamEvent]:
        reason = (data.get("delta") or {}).get("stop_reason")
        if reason:
            self.stop_reason = _STOP_REASONS.get(reason, StopReason.END_TURN)
        usage = data.get("usage") or {}
        if "output_tokens" in usage:
            self.usage.output_tokens = usage["output_tokens"]
        return []

    def _on_message_stop(self, data: dict[str, Any]) -> list[StreamEvent]:
        self.finished = True
        self._flush_text()
        if not self.blocks:
            return [StreamError(message="Stream ended without any content")]
        response = CompletionResponse(
            content=self.blocks, stop_reason=self.stop_reason, usage=self.usage
        )
        return [StreamComplete(response=response)]

    def _on_error(self, data: dict[str, Any]) -> list[StreamEvent]:
        self.finished = True
        error = data.get("error") or {}
        return [StreamError(message=error.get("message") or json.dumps(data))]
