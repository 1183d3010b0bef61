#!/usr/bin/env python3
"""
Test script for the agent loop state machine: tool rounds, approval
suspension, cancellation, pause/resume, the iteration cap and heartbeat runs.
"""

from __future__ import annotations

import asyncio
from typing import Any

from heartloop.approval.queue import ApprovalQueue, ApprovalResult
from heartloop.chat.agent_loop import INTERRUPTED_MESSAGE, AgentLoop
from heartloop.chat.autonomy_policy import ApprovalPolicy, AutonomyPolicy
from heartloop.chat.models import (
    AgentState,
    AssistantTextEvent,
    CompletionRequest,
    CompletionResponse,
    ErrorEvent,
    HeartbeatCompleteEvent,
    HeartbeatStartEvent,
    Message,
    ProviderFailoverEvent,
    Role,
    StopReason,
    TextBlock,
    ThinkingTextEvent,
    ToolCallDeniedEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
    ToolUseBlock,
    UserMessageEvent,
)
from heartloop.chat.tool_executor import DENIED_MESSAGE, ToolExecutor
from heartloop.clients.base import ProviderError
from heartloop.heartbeat.detector import HeartbeatResult
from heartloop.heartbeat.manager import (
    BASE_INTERVAL_MS,
    MAX_INTERVAL_MS,
    HeartbeatManager,
    HeartbeatState,
)
from heartloop.tools import Tool, ToolResult
from heartloop.tools.catalog import ToolCatalog


class RecordingTool(Tool):
    description = "Records its calls"

    def __init__(self, name: str, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        self.calls.append(params)
        if self.fail:
            raise RuntimeError("device unavailable")
        return ToolResult.ok({"echo": params})


class ScriptedProviderManager:
    """
    Replays scripted replies. A script entry is a CompletionResponse, an
    exception to raise, or an asyncio.Event to wait on before taking the next
    entry.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.requests: list[CompletionRequest] = []
        self.last_failover_event: ProviderFailoverEvent | None = None

    async def complete_with_failover(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        entry = self.script.pop(0)
        while isinstance(entry, asyncio.Event):
            await entry.wait()
            entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        return entry


def text(reply: str) -> CompletionResponse:
    return CompletionResponse(content=[TextBlock(text=reply)])


def tool_use(*calls: tuple[str, str, dict[str, Any]]) -> CompletionResponse:
    return CompletionResponse(
        content=[ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls],
        stop_reason=StopReason.TOOL_USE,
    )


def make_loop(provider, *tools: Tool, policy: AutonomyPolicy | None = None, **kwargs):
    catalog = ToolCatalog()
    catalog.register(*tools)
    policy = policy or AutonomyPolicy()
    approvals = ApprovalQueue()
    executor = ToolExecutor(catalog, policy, approvals)
    loop = AgentLoop(provider, catalog, executor, system_prompt=lambda: "system", **kwargs)
    events: list[Any] = []
    states: list[AgentState] = []
    loop.add_event_listener(events.append)
    loop.add_state_listener(states.append)
    return loop, approvals, events, states


async def wait_for(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def test_plain_reply():
    print("🧪 Testing a reply without tools...")
    provider = ScriptedProviderManager(
        CompletionResponse(content=[TextBlock(text="pondering", is_thought=True), TextBlock(text="Hello!")])
    )
    loop, _, events, states = make_loop(provider)

    task = loop.submit_message("hi")
    assert loop.state is AgentState.THINKING
    await task

    assert states == [AgentState.THINKING, AgentState.IDLE]
    assert events == [
        UserMessageEvent(text="hi"),
        ThinkingTextEvent(text="pondering"),
        AssistantTextEvent(text="Hello!"),
    ]
    assert [m.role for m in loop.history] == [Role.USER, Role.ASSISTANT]
    request = provider.requests[0]
    assert request.system_prompt == "system"
    assert request.messages == [Message.user("hi")]
    print("✅ One completion, back to IDLE")


async def test_tool_round_answers_every_call():
    print("🧪 Testing a tool round...")
    echo = RecordingTool("debug.echo")
    broken = RecordingTool("device.poke", fail=True)
    provider = ScriptedProviderManager(
        tool_use(
            ("c1", "debug.echo", {"text": "a"}),
            ("c2", "missing.tool", {}),
            ("c3", "device.poke", {}),
        ),
        text("All done."),
    )
    heartbeat = HeartbeatManager()
    loop, _, events, states = make_loop(provider, echo, broken, heartbeat_manager=heartbeat)

    await loop.submit_message("  poke the device  ")

    assert states == [
        AgentState.THINKING,
        AgentState.EXECUTING_TOOLS,
        AgentState.THINKING,
        AgentState.IDLE,
    ]
    history = loop.history
    assert [m.role for m in history] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    results = history[2].tool_result_blocks()
    assert [r.tool_use_id for r in results] == ["c1", "c2", "c3"]
    assert results[0].is_error is False and '"echo"' in results[0].content
    assert results[1].is_error and "Unknown tool 'missing.tool'" in results[1].content
    assert results[2].is_error and results[2].content == "Execution failed: device unavailable"

    assert echo.calls == [{"text": "a"}]
    assert [e.name for e in events if isinstance(e, ToolCallStartEvent)] == [
        "debug.echo",
        "missing.tool",
        "device.poke",
    ]
    assert len([e for e in events if isinstance(e, ToolCallResultEvent)]) == 3
    # The second request carries the tool results
    assert provider.requests[1].messages[-1].tool_result_blocks() == results
    # A run with tool calls keeps the heartbeat watching the request
    assert heartbeat.active_task_context == "poke the device"
    print("✅ Every tool use answered in order")


async def test_approval_suspends_until_answered():
    print("🧪 Testing approval suspension...")
    sender = RecordingTool("sms.send")
    policy = AutonomyPolicy()
    policy.set_policy("sms.send", ApprovalPolicy.ASK)
    provider = ScriptedProviderManager(
        tool_use(("c1", "sms.send", {"to": "555"})),
        text("Sent."),
    )
    loop, approvals, _, states = make_loop(provider, sender, policy=policy)

    task = loop.submit_message("text 555")
    await wait_for(lambda: approvals.pending())
    assert loop.state is AgentState.WAITING_APPROVAL
    assert sender.calls == []

    pending = approvals.pending()[0]
    assert pending.tool_name == "sms.send" and pending.parameters == {"to": "555"}
    approvals.respond(pending.id, ApprovalResult.ALWAYS_ALLOW)
    await task

    assert sender.calls == [{"to": "555"}]
    assert AgentState.WAITING_APPROVAL in states
    assert states[-1] is AgentState.IDLE
    assert policy.get_policy("sms.send") is ApprovalPolicy.AUTO
    print("✅ Approved call executed after the wait")


async def test_denied_call_still_answered():
    sender = RecordingTool("sms.send")
    policy = AutonomyPolicy()
    policy.set_policy("sms.send", ApprovalPolicy.ASK)
    provider = ScriptedProviderManager(tool_use(("c1", "sms.send", {})), text("Okay."))
    loop, approvals, events, _ = make_loop(provider, sender, policy=policy)

    task = loop.submit_message("text someone")
    await wait_for(lambda: approvals.pending())
    approvals.respond(approvals.pending()[0].id, ApprovalResult.DENIED)
    await task

    assert sender.calls == []
    result = loop.history[2].tool_result_blocks()[0]
    assert result.is_error and result.content == DENIED_MESSAGE
    assert ToolCallDeniedEvent(name="sms.send") in events
    assert policy.get_policy("sms.send") is ApprovalPolicy.ASK


async def test_deny_policy_never_asks():
    sender = RecordingTool("sms.send")
    policy = AutonomyPolicy()
    policy.set_policy("sms.send", ApprovalPolicy.DENY)
    provider = ScriptedProviderManager(tool_use(("c1", "sms.send", {})), text("Cannot."))
    loop, approvals, _, states = make_loop(provider, sender, policy=policy)

    await loop.submit_message("text someone")
    assert sender.calls == []
    assert AgentState.WAITING_APPROVAL not in states
    assert approvals.pending() == []


async def test_new_message_cancels_current_run():
    print("🧪 Testing cancellation by a newer message...")
    # The first request never completes
    provider = ScriptedProviderManager(asyncio.Event(), text("second reply"))
    loop, _, events, _ = make_loop(provider)

    first = loop.submit_message("first")
    await wait_for(lambda: len(provider.requests) == 1)
    second = loop.submit_message("second")
    await second
    await first

    assert first.done()
    assert loop.state is AgentState.IDLE
    assert [e.text for e in events if isinstance(e, AssistantTextEvent)] == ["second reply"]
    assert loop.history == [
        Message.user("first"),
        Message.user("second"),
        Message.assistant("second reply"),
    ]
    print("✅ Latest submission wins")


async def test_cancelled_approval_wait_is_dropped():
    sender = RecordingTool("sms.send")
    policy = AutonomyPolicy()
    policy.set_policy("sms.send", ApprovalPolicy.ASK)
    provider = ScriptedProviderManager(tool_use(("c1", "sms.send", {})), text("new topic"))
    loop, approvals, _, _ = make_loop(provider, sender, policy=policy)

    first = loop.submit_message("text someone")
    await wait_for(lambda: approvals.pending())
    second = loop.submit_message("never mind")
    await second
    await first

    assert sender.calls == []
    assert approvals.pending() == []
    history = loop.history
    # The dangling tool use was answered before the new message
    interrupted = history[2].tool_result_blocks()[0]
    assert interrupted.tool_use_id == "c1" and interrupted.content == INTERRUPTED_MESSAGE
    assert history[3] == Message.user("never mind")
    assert loop.state is AgentState.IDLE


async def test_iteration_cap():
    print("🧪 Testing the iteration cap...")
    echo = RecordingTool("debug.echo")
    provider = ScriptedProviderManager(
        *[tool_use((f"c{i}", "debug.echo", {})) for i in range(5)]
    )
    loop, _, events, _ = make_loop(provider, echo, max_iterations=2)

    await loop.submit_message("loop forever")

    assert len(provider.requests) == 2
    assert ErrorEvent(message="Max iterations (2) reached") in events
    assert loop.state is AgentState.IDLE
    assert loop.history[-1].tool_result_blocks()
    print("✅ Stopped after two iterations")


async def test_provider_error_sets_error_state():
    provider = ScriptedProviderManager(ProviderError("All providers failed. Errors:\nx"))
    loop, _, events, _ = make_loop(provider)

    await loop.submit_message("hi")

    assert loop.state is AgentState.ERROR
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].message.startswith("All providers failed")


async def test_failover_event_is_forwarded():
    provider = ScriptedProviderManager(text("from backup"))
    provider.last_failover_event = ProviderFailoverEvent(
        from_provider="anthropic", to_provider="gemini", reason="overloaded"
    )
    loop, _, events, _ = make_loop(provider)
    await loop.submit_message("hi")
    assert provider.last_failover_event in events


async def test_pause_and_resume():
    print("🧪 Testing pause and resume...")
    echo = RecordingTool("debug.echo")
    hold = asyncio.Event()
    provider = ScriptedProviderManager(hold, tool_use(("c1", "debug.echo", {})), text("Finished."))
    loop, _, _, _ = make_loop(provider, echo)

    task = loop.submit_message("do it")
    await wait_for(lambda: len(provider.requests) == 1)
    loop.pause()
    hold.set()
    await task

    # The in-flight iteration completed, the next one never started
    assert loop.state is AgentState.PAUSED
    assert len(provider.requests) == 1
    assert loop.history[-1].role is Role.USER

    resumed = loop.resume()
    assert resumed is not None
    await resumed
    assert loop.state is AgentState.IDLE
    assert loop.history[-1].visible_text() == "Finished."
    print("✅ Resumed from history")


async def test_resume_without_pending_user_turn():
    provider = ScriptedProviderManager(text("done"))
    loop, _, _, _ = make_loop(provider)
    await loop.submit_message("hi")

    assert loop.resume() is None
    loop.pause()
    assert loop.resume() is None
    assert loop.state is AgentState.IDLE


async def test_clear_history():
    provider = ScriptedProviderManager(text("done"))
    loop, _, _, _ = make_loop(provider)
    await loop.submit_message("hi")
    loop.clear_history()
    assert loop.history == []
    assert loop.state is AgentState.IDLE


async def test_heartbeat_ok_is_pruned():
    print("🧪 Testing a quiet heartbeat...")
    provider = ScriptedProviderManager(text("Hi there"), text("HEARTBEAT_OK - still waiting"))
    heartbeat = HeartbeatManager()
    loop, _, events, _ = make_loop(provider, heartbeat_manager=heartbeat)
    await loop.submit_message("hello")
    before = loop.history
    events.clear()

    task = loop.submit_heartbeat("[Heartbeat Check]")
    await task

    assert loop.history == before
    assert loop.state is AgentState.IDLE
    assert events == [
        HeartbeatStartEvent(),
        HeartbeatCompleteEvent(result="ok_nothing_to_do", status_note="still waiting"),
    ]
    assert heartbeat.consecutive_ok_count == 1
    assert heartbeat.last_heartbeat_at is not None
    print("✅ Exchange removed from history")


async def test_heartbeat_that_acts_is_kept():
    echo = RecordingTool("debug.echo")
    provider = ScriptedProviderManager(
        tool_use(("h1", "debug.echo", {"text": "check"})),
        text("HEARTBEAT_OK - task complete"),
    )
    heartbeat = HeartbeatManager()
    heartbeat.set_active_task_context("watch the build")
    loop, _, events, _ = make_loop(provider, echo, heartbeat_manager=heartbeat)

    await loop.submit_heartbeat("[Heartbeat Check]")

    assert len(loop.history) == 4
    complete = [e for e in events if isinstance(e, HeartbeatCompleteEvent)][0]
    assert complete.result == HeartbeatResult.ACTED.value
    assert complete.is_task_complete
    # Per-call events are not surfaced for heartbeat runs
    assert not [e for e in events if isinstance(e, ToolCallStartEvent)]
    assert heartbeat.active_task_context is None
    assert heartbeat.current_interval_ms == BASE_INTERVAL_MS


async def test_heartbeat_skipped_when_busy():
    hold = asyncio.Event()
    provider = ScriptedProviderManager(hold, text("done"))
    heartbeat = HeartbeatManager()
    loop, _, _, _ = make_loop(provider, heartbeat_manager=heartbeat)

    task = loop.submit_message("work")
    assert loop.submit_heartbeat("[Heartbeat Check]") is None
    assert heartbeat.last_heartbeat_at is not None
    assert heartbeat.current_interval_ms == BASE_INTERVAL_MS
    hold.set()
    await task
    assert len(provider.requests) == 1


async def test_heartbeat_error_returns_to_idle():
    provider = ScriptedProviderManager(ProviderError("boom", 500))
    heartbeat = HeartbeatManager()
    loop, _, _, _ = make_loop(provider, heartbeat_manager=heartbeat)

    await loop.submit_heartbeat("[Heartbeat Check]")

    assert loop.state is AgentState.IDLE
    assert heartbeat.current_interval_ms == min(BASE_INTERVAL_MS * 2, MAX_INTERVAL_MS)


async def test_paused_heartbeat_is_dropped_and_rescheduled():
    print("🧪 Testing a heartbeat paused mid-run...")
    echo = RecordingTool("debug.echo")
    hold = asyncio.Event()
    provider = ScriptedProviderManager(hold, tool_use(("h1", "debug.echo", {})), text("unused"))
    heartbeat = HeartbeatManager(always_poll=True)
    loop, _, events, _ = make_loop(provider, echo, heartbeat_manager=heartbeat)
    heartbeat.attach(loop)
    heartbeat.start()

    heartbeat._tick()
    assert heartbeat.state is HeartbeatState.POLLING
    task = loop.current_task
    await wait_for(lambda: len(provider.requests) == 1)
    loop.pause()
    hold.set()
    await task

    # The scheduler heard back and has a tick pending again
    assert heartbeat.state is HeartbeatState.ACTIVE
    assert heartbeat._handle is not None
    assert heartbeat.last_heartbeat_at is not None
    # Nothing from the abandoned heartbeat is left to replay
    assert loop.history == []
    assert not [e for e in events if isinstance(e, HeartbeatCompleteEvent)]
    assert loop.resume() is None
    assert loop.state is AgentState.IDLE
    assert len(provider.requests) == 1
    heartbeat.stop()
    print("✅ Paused heartbeat discarded, next tick scheduled")


class CancelResistantProviderManager(ScriptedProviderManager):
    """Turns cancellation of a pending request into a provider failure."""

    async def complete_with_failover(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            raise ProviderError("connection reset", 502) from None
        raise AssertionError("unreachable")


async def test_superseded_heartbeat_failure_is_not_an_error():
    provider = CancelResistantProviderManager()
    heartbeat = HeartbeatManager()
    loop, _, events, _ = make_loop(provider, heartbeat_manager=heartbeat)

    task = loop.submit_heartbeat("[Heartbeat Check]")
    await wait_for(lambda: len(provider.requests) == 1)
    loop.stop()
    await task

    assert loop.state is AgentState.IDLE
    assert not [e for e in events if isinstance(e, ErrorEvent)]
    # Reported as skipped, so the interval is not doubled
    assert heartbeat.last_heartbeat_at is not None
    assert heartbeat.current_interval_ms == BASE_INTERVAL_MS


async def test_event_queue_subscription():
    provider = ScriptedProviderManager(text("queued"))
    loop, _, _, _ = make_loop(provider)
    queue = loop.subscribe()
    await loop.submit_message("hi")
    assert queue.get_nowait() == UserMessageEvent(text="hi")
    assert queue.get_nowait() == AssistantTextEvent(text="queued")
    loop.unsubscribe(queue)


if __name__ == "__main__":
    asyncio.run(test_plain_reply())
    asyncio.run(test_tool_round_answers_every_call())
    asyncio.run(test_approval_suspends_until_answered())
    asyncio.run(test_denied_call_still_answered())
    asyncio.run(test_deny_policy_never_asks())
    asyncio.run(test_new_message_cancels_current_run())
    asyncio.run(test_cancelled_approval_wait_is_dropped())
    asyncio.run(test_iteration_cap())
    asyncio.run(test_provider_error_sets_error_state())
    asyncio.run(test_failover_event_is_forwarded())
    asyncio.run(test_pause_and_resume())
    asyncio.run(test_resume_without_pending_user_turn())
    asyncio.run(test_clear_history())
    asyncio.run(test_heartbeat_ok_is_pruned())
    asyncio.run(test_heartbeat_that_acts_is_kept())
    asyncio.run(test_heartbeat_skipped_when_busy())
    asyncio.run(test_heartbeat_error_returns_to_idle())
    asyncio.run(test_paused_heartbeat_is_dropped_and_rescheduled())
    asyncio.run(test_superseded_heartbeat_failure_is_not_an_error())
    asyncio.run(test_event_queue_subscription())
    print("\n🎉 All agent loop tests passed!")
