"""
heartloop - agent orchestration runtime.

Turns a user utterance into LLM completions interleaved with approval-gated
tool calls, and re-invokes the same loop on an adaptive heartbeat timer.
"""

__version__ = "0.1.0"
