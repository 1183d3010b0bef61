"""
Gemini generateContent adapter.

Features:
- Model fallback cascade: the same request is retried against the next
  configured model when a model is unavailable or rate limited
- Dotted tool names sanitized per request and mapped back exactly
- Thought parts and thought signatures passed through untouched
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from heartloop.chat.models import (
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    ImageBlock,
    Message,
    Role,
    StopReason,
    StreamComplete,
    StreamError,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseStart,
    Usage,
)
from heartloop.clients.base import LLMProvider, ProviderError, error_body
from heartloop.clients.tool_schema import ToolNameMapper, to_gemini_declarations

logger = logging.getLogger(__name__)

# Model unavailable (404), rate limited (429), overloaded (503)
FALLBACK_STATUS_CODES = frozenset({404, 429, 503})
NETWORK_ATTEMPTS_PER_MODEL = 3


class GeminiProvider(LLMProvider):
    name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    @property
    def retry_delay(self) -> float:
        return float(self.provider_config.get("retry_delay_seconds", 1.0))

    def model_cascade(self) -> list[str]:
        """Primary model first, then configured fallbacks, without duplicates."""
        models: list[str] = []
        for model in [self.model, *self.provider_config.get("fallback_models", [])]:
            if model and model not in models:
                models.append(model)
        return models

    def url_for(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:generateContent"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_payload(
        self, request: CompletionRequest, mapper: ToolNameMapper
    ) -> dict[str, Any]:
        # functionResponse parts carry the tool name, not the call id
        call_names: dict[str, str] = {
            use.id: use.name for m in request.messages for use in m.tool_uses()
        }

        payload: dict[str, Any] = {
            "system_instruction": {"parts": [{"text": request.system_prompt}]},
            "contents": [
                self._message_to_json(m, mapper, call_names) for m in request.messages
            ],
        }

        if request.tools:
            payload["tools"] = [
                {"function_declarations": to_gemini_declarations(request.tools, mapper)}
            ]

        generation_config: dict[str, Any] = {"maxOutputTokens": request.max_tokens}
        thinking = self.provider_config.get("thinking") or {}
        if thinking.get("include_thoughts"):
            thinking_config: dict[str, Any] = {"includeThoughts": True}
            if thinking.get("budget_tokens") is not None:
                thinking_config["thinkingBudget"] = thinking["budget_tokens"]
            generation_config["thinkingConfig"] = thinking_config
        payload["generationConfig"] = generation_config
        return payload

    @staticmethod
    def _message_to_json(
        message: Message, mapper: ToolNameMapper, call_names: dict[str, str]
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        for block in message.content:
            part: dict[str, Any]
            if isinstance(block, TextBlock):
                if not block.text and not block.thought_signature:
                    continue
                part = {"text": block.text}
                if block.is_thought:
                    part["thought"] = True
                if block.thought_signature:
                    part["thoughtSignature"] = block.thought_signature
            elif isinstance(block, ToolUseBlock):
                part = {
                    "functionCall": {"name": mapper.to_wire(block.name), "args": block.input}
                }
                if block.thought_signature:
                    part["thoughtSignature"] = block.thought_signature
            elif isinstance(block, ToolResultBlock):
                tool_name = call_names.get(block.tool_use_id)
                response: dict[str, Any] = {"content": block.content}
                if block.is_error:
                    response["error"] = True
                part = {
                    "functionResponse": {
                        "name": mapper.to_wire(tool_name) if tool_name else block.tool_use_id,
                        "response": response,
                    }
                }
            elif isinstance(block, ImageBlock):
                part = {
                    "inline_data": {
                        "mime_type": block.media_type,
                        "data": block.base64_data,
                    }
                }
            else:
                continue
            parts.append(part)

        if not parts:
            parts = [{"text": ""}]
        return {
            "role": "user" if message.role == Role.USER else "model",
            "parts": parts,
        }

    # ------------------------------------------------------------------
    # Non-streaming with fallback cascade
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self._require_key()
        mapper = ToolNameMapper([t.name for t in request.tools])
        payload = self.build_payload(request, mapper)
        models = self.model_cascade()
        failures: list[str] = []

        for index, model in enumerate(models):
            logger.info(
                f"→ LLM[gemini]: model={model}, messages={len(request.messages)}, "
                f"tools={len(request.tools)}"
            )
            start_time = time.monotonic()
            response = await self._post_with_retries(model, payload, failures)
            if response is None:
                continue

            if response.status_code in FALLBACK_STATUS_CODES:
                failures.append(f"{model}: HTTP {response.status_code}")
                if index + 1 < len(models):
                    logger.warning(
                        f"Gemini model {model} returned HTTP {response.status_code}, "
                        f"falling back to {models[index + 1]}"
                    )
                continue

            if not response.is_success:
                raise ProviderError(
                    f"Gemini API error {response.status_code}: {error_body(response)}",
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
                f"← LLM[gemini]: model={model}, stop_reason={result.stop_reason.value}, "
                f"blocks={len(result.content)}, "
                f"elapsed={(time.monotonic() - start_time) * 1000:.0f}ms"
            )
            return result

        raise ProviderError(
            f"All Gemini models failed ({len(models)} tried): " + "; ".join(failures)
        )

    async def _post_with_retries(
        self, model: str, payload: dict[str, Any], failures: list[str]
    ) -> httpx.Response | None:
        """POST to one model; transport errors are retried. None when all attempts fail."""
        for attempt in range(1, NETWORK_ATTEMPTS_PER_MODEL + 1):
            try:
                return await self.client.post(
                    self.url_for(model), json=payload, headers=self._headers()
                )
            except httpx.TransportError as e:
                logger.warning(
                    f"Gemini {model} attempt {attempt}/{NETWORK_ATTEMPTS_PER_MODEL} "
                    f"failed: {e}"
                )
                if attempt < NETWORK_ATTEMPTS_PER_MODEL:
                    await asyncio.sleep(self.retry_delay * attempt)
                else:
                    failures.append(f"{model}: {e!s}")
        return None

    @staticmethod
    def parse_response(data: dict[str, Any], mapper: ToolNameMapper) -> CompletionResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            if reason:
                logger.warning(f"Gemini returned no candidates: blockReason={reason}")
            return CompletionResponse(content=[], stop_reason=StopReason.ERROR)

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        blocks: list[ContentBlock] = []

        for part in parts:
            signature = part.get("thoughtSignature")
            if "functionCall" in part:
                call = part["functionCall"] or {}
                blocks.append(
                    ToolUseBlock(
                        id=f"gemini_{uuid.uuid4().hex}",
                        name=mapper.to_original(call.get("name", "")),
                        input=call.get("args") or {},
                        thought_signature=signature,
                    )
                )
            elif "text" in part:
                text = part.get("text") or ""
                if part.get("thought"):
                    blocks.append(
                        TextBlock(text=text, is_thought=True, thought_signature=signature)
                    )
                elif text.strip() or signature:
                    blocks.append(TextBlock(text=text, thought_signature=signature))

        has_calls = any(isinstance(b, ToolUseBlock) for b in blocks)
        finish_reason = candidate.get("finishReason")
        if has_calls:
            stop_reason = StopReason.TOOL_USE
        elif finish_reason == "MAX_TOKENS":
            stop_reason = StopReason.MAX_TOKENS
        else:
            stop_reason = StopReason.END_TURN

        usage = None
        if meta := data.get("usageMetadata"):
            usage = Usage(
                input_tokens=meta.get("promptTokenCount", 0),
                output_tokens=meta.get("candidatesTokenCount", 0),
            )
        return CompletionResponse(content=blocks, stop_reason=stop_reason, usage=usage)

    # ------------------------------------------------------------------
    # Streaming (non-incremental)
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        try:
            response = await self.complete(request)
        except ProviderError as e:
            yield StreamError(message=str(e))
            return

        for block in response.content:
            if isinstance(block, TextBlock) and not block.is_thought:
                yield TextDelta(text=block.text)
            elif isinstance(block, ToolUseBlock):
                yield ToolUseStart(id=block.id, name=block.name)
        yield StreamComplete(response=response)
