"""
OpenAI chat-completions adapter, and the OpenRouter variant of it.

Dotted tool names are sanitized per request through ToolNameMapper and
mapped back when the model calls them. Transient failures (5xx, 429,
transport errors) are retried up to 3 attempts with linear backoff.
"""

from __future__ import annotations

import asyncio
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
    ToolUseBlock,
    ToolUseInputDelta,
    ToolUseStart,
    Usage,
)
from heartloop.clients.base import LLMProvider, ProviderError, error_body
from heartloop.clients.tool_schema import ToolNameMapper, to_openai_tools

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

_FINISH_REASONS = {
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "stop": StopReason.END_TURN,
}


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


class OpenAIProvider(LLMProvider):
    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    max_tokens_field = "max_completion_tokens"

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def retry_delay(self) -> float:
        return float(self.provider_config.get("retry_delay_seconds", 1.0))

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_payload(
        self, request: CompletionRequest, mapper: ToolNameMapper, stream: bool = False
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": request.system_prompt}
        ]
        for message in request.messages:
            messages.extend(self._message_to_json(message, mapper))

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            self.max_tokens_field: request.max_tokens,
        }
        if request.tools:
            payload["tools"] = to_openai_tools(request.tools, mapper)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _message_to_json(
        message: Message, mapper: ToolNameMapper
    ) -> list[dict[str, Any]]:
        results = message.tool_result_blocks()
        if results:
            # One "tool" message per result
            return [
                {
                    "role": "tool",
                    "tool_call_id": result.tool_use_id,
                    "content": result.content,
                }
                for result in results
            ]

        text = "".join(
            b.text for b in message.content if isinstance(b, TextBlock) and not b.is_thought
        )
        calls = message.tool_uses()
        if calls:
            return [
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": mapper.to_wire(call.name),
                                "arguments": json.dumps(call.input),
                            },
                        }
                        for call in calls
                    ],
                }
            ]

        if any(isinstance(b, ImageBlock) for b in message.content):
            parts: list[dict[str, Any]] = []
            for block in message.content:
                if isinstance(block, TextBlock) and not block.is_thought:
                    parts.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append(
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{block.media_type};base64,{block.base64_data}"
                            },
                        }
                    )
            return [{"role": message.role.value, "content": parts}]

        return [{"role": message.role.value, "content": text}]

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self._require_key()
        mapper = ToolNameMapper([t.name for t in request.tools])
        payload = self.build_payload(request, mapper)
        logger.info(
            f"→ LLM[{self.name}]: model={self.model}, messages={len(request.messages)}, "
            f"tools={len(request.tools)}"
        )

        start_time = time.monotonic()
        last_error: ProviderError | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self.client.post(
                    self.url, json=payload, headers=self._headers()
                )
            except httpx.TransportError as e:
                last_error = ProviderError(f"HTTP error: {e!s}")
                logger.warning(f"{self.name} attempt {attempt}/{MAX_ATTEMPTS} failed: {e}")
                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            if _is_retryable(response.status_code):
                last_error = ProviderError(
                    f"API error {response.status_code}: {error_body(response)}",
                    response.status_code,
                )
                logger.warning(
                    f"{self.name} attempt {attempt}/{MAX_ATTEMPTS} got HTTP {response.status_code}"
                )
                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            if not response.is_success:
                raise ProviderError(
                    f"API error {response.status_code}: {error_body(response)}",
                    response.status_code,
                )
            if not response.content:
                raise ProviderError("Empty response body", response.status_code)

            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise ProviderError(f"Invalid JSON in response: {e}") from e

            result = self.parse_response(data, mapper)
            logger.info(
                f"← LLM[{self.name}]: stop_reason={result.stop_reason.value}, "
                f"blocks={len(result.content)}, "
                f"elapsed={(time.monotonic() - start_time) * 1000:.0f}ms"
            )
            return result

        assert last_error is not None
        raise ProviderError(
            f"{self.name} API failed after {MAX_ATTEMPTS} attempts: {last_error.message}",
            last_error.status_code,
        )

    @staticmethod
    def parse_response(data: dict[str, Any], mapper: ToolNameMapper) -> CompletionResponse:
        choices = data.get("choices") or []
        if not choices or not choices[0].get("message"):
            return CompletionResponse(content=[], stop_reason=StopReason.ERROR)

        choice = choices[0]
        message = choice["message"]
        blocks: list[ContentBlock] = []

        if reasoning := message.get("reasoning_content") or message.get("reasoning"):
            if isinstance(reasoning, str) and reasoning.strip():
                blocks.append(TextBlock(text=reasoning, is_thought=True))

        content = message.get("content")
        if isinstance(content, str) and content.strip():
            blocks.append(TextBlock(text=content))

        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            blocks.append(
                ToolUseBlock(
                    id=call.get("id", ""),
                    name=mapper.to_original(function.get("name", "")),
                    input=_parse_arguments(function.get("name", ""), function.get("arguments")),
                )
            )

        has_calls = any(isinstance(b, ToolUseBlock) for b in blocks)
        stop_reason = (
            StopReason.TOOL_USE
            if has_calls
            else _FINISH_REASONS.get(choice.get("finish_reason") or "", StopReason.END_TURN)
        )

        usage = None
        if usage_data := data.get("usage"):
            usage = Usage(
                input_tokens=usage_data.get("prompt_tokens", 0),
                output_tokens=usage_data.get("completion_tokens", 0),
            )
        return CompletionResponse(content=blocks, stop_reason=stop_reason, usage=usage)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield StreamError(message=f"No API key configured for provider '{self.name}'")
            return

        mapper = ToolNameMapper([t.name for t in request.tools])
        payload = self.build_payload(request, mapper, stream=True)
        text_parts: list[str] = []
        calls: dict[int, dict[str, Any]] = {}
        finish_reason = ""
        usage: Usage | None = None
        chunk_count = 0

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

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break

                    try:
                        chunk: dict[str, Any] = json.loads(data)
                    except json.JSONDecodeError as e:
                        yield StreamError(message=f"Invalid JSON in stream chunk: {e}")
                        return
                    chunk_count += 1

                    if chunk_usage := chunk.get("usage"):
                        usage = Usage(
                            input_tokens=chunk_usage.get("prompt_tokens", 0),
                            output_tokens=chunk_usage.get("completion_tokens", 0),
                        )
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if content := delta.get("content"):
                            text_parts.append(content)
                            yield TextDelta(text=content)
                        for call_delta in delta.get("tool_calls") or []:
                            index = call_delta.get("index", 0)
                            function = call_delta.get("function") or {}
                            if index not in calls:
                                calls[index] = {
                                    "id": call_delta.get("id", ""),
                                    "name": function.get("name", ""),
                                    "arguments": [],
                                }
                                yield ToolUseStart(
                                    id=calls[index]["id"],
                                    name=mapper.to_original(calls[index]["name"]),
                                )
                            elif function.get("name"):
                                calls[index]["name"] += function["name"]
                            if arguments := function.get("arguments"):
                                calls[index]["arguments"].append(arguments)
                                yield ToolUseInputDelta(delta=arguments)
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]

            if chunk_count == 0:
                yield StreamError(message="No streaming chunks received from API")
                return

            blocks: list[ContentBlock] = []
            if text_parts:
                blocks.append(TextBlock(text="".join(text_parts)))
            for index in sorted(calls):
                call = calls[index]
                blocks.append(
                    ToolUseBlock(
                        id=call["id"],
                        name=mapper.to_original(call["name"]),
                        input=_parse_arguments(call["name"], "".join(call["arguments"])),
                    )
                )
            stop_reason = (
                StopReason.TOOL_USE
                if calls
                else _FINISH_REASONS.get(finish_reason, StopReason.END_TURN)
            )
            yield StreamComplete(
                response=CompletionResponse(content=blocks, stop_reason=stop_reason, usage=usage)
            )

        except httpx.HTTPError as e:
            logger.error(f"HTTP error during streaming: {e}")
            yield StreamError(message=f"HTTP error: {e!s}")
        finally:
            self._active_streams -= 1
            logger.debug(f"📉 Ended stream, active streams: {self._active_streams}")


class OpenRouterProvider(OpenAIProvider):
    """OpenAI wire format served by OpenRouter."""

    name = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    max_tokens_field = "max_tokens"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if referer := self.provider_config.get("http_referer"):
            headers["HTTP-Referer"] = referer
        headers["X-Title"] = self.provider_config.get("app_title", "heartloop")
        return headers


def _parse_arguments(tool_name: str, raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"Malformed JSON arguments for {tool_name}: {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}
