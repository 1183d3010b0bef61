"""
Agent Logging Utilities

Shared logging helpers with per-module feature flags. Feature flags are
installed by ``main._configure_advanced_logging`` from the ``logging``
section of the configuration.
"""

from __future__ import annotations

import logging
from typing import Any

from heartloop.chat.models import CompletionResponse, TextBlock, ToolUseBlock

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}
_truncate_lengths: dict[str, int] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    _module_features[module] = dict(features)


def set_truncate_lengths(lengths: dict[str, int]) -> None:
    _truncate_lengths.update(lengths)


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a logging feature is enabled for a module."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, key: str, default: int) -> str:
    limit = _truncate_lengths.get(key, default)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def log_llm_reply(response: CompletionResponse, context: str, provider: str = "") -> None:
    """
    Log a completion with thinking, text and tool calls, truncated.

    Args:
        response: Completion returned by the provider
        context: Descriptive context for the log entry
        provider: Name of the provider that answered
    """
    if not should_log_feature("agent", "llm_replies"):
        return

    thinking = "".join(
        b.text for b in response.content if isinstance(b, TextBlock) and b.is_thought
    )
    content = "".join(
        b.text for b in response.content if isinstance(b, TextBlock) and not b.is_thought
    )
    tool_calls = [b for b in response.content if isinstance(b, ToolUseBlock)]

    log_parts = [f"LLM Reply ({context}):"]
    if thinking:
        log_parts.append(f"Thinking: {_truncate(thinking, 'llm_reply', 500)}")
    if content:
        log_parts.append(f"Content: {_truncate(content, 'llm_reply', 500)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {call.name}")
    log_parts.append(f"Stop: {response.stop_reason.value}")
    if provider:
        log_parts.append(f"Provider: {provider}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(
    tool_name: str, call_index: int = 0, total_calls: int = 1
) -> None:
    if not should_log_feature("agent", "tool_execution"):
        return
    if total_calls > 1:
        logger.info(
            "→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls
        )
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    if not should_log_feature("agent", "tool_execution"):
        return
    logger.info("← Tool[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    """Tool failures are always logged, regardless of feature flags."""
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_arguments(tool_name: str, arguments: dict[str, Any], context: str) -> None:
    if not should_log_feature("mcp", "tool_arguments"):
        return
    args_str = _truncate(str(arguments), "tool_arguments", 500)
    logger.info(f"→ Tool[{tool_name}]: arguments ({context}): {args_str}")


def log_tool_results(tool_name: str, results: Any, context: str) -> None:
    if not should_log_feature("mcp", "tool_results"):
        return
    results_str = _truncate(str(results), "tool_results", 200)
    logger.info(f"← Tool[{tool_name}]: results ({context}): {results_str}")


def log_heartbeat(message: str, *args: Any) -> None:
    if not should_log_feature("agent", "heartbeat"):
        logger.debug("♥ Heartbeat: " + message, *args)
        return
    logger.info("♥ Heartbeat: " + message, *args)
