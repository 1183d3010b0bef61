#!/usr/bin/env python3
"""
Test script for the heartbeat: response classification, prompt wording and
the scheduler's backoff and tick decisions.
"""

from __future__ import annotations

import asyncio

from heartloop.chat.models import AgentState
from heartloop.heartbeat.detector import (
    SENTINEL,
    HeartbeatDetector,
    HeartbeatResult,
    extract_status_note,
)
from heartloop.heartbeat.manager import (
    BASE_INTERVAL_MS,
    MAX_INTERVAL_MS,
    HeartbeatManager,
    HeartbeatState,
)
from heartloop.heartbeat.prompt import build_heartbeat_prompt


class FakeAgent:
    def __init__(self, state: AgentState = AgentState.IDLE) -> None:
        self.state = state
        self.prompts: list[str] = []

    def submit_heartbeat(self, prompt: str) -> None:
        self.prompts.append(prompt)


def test_detector_classification():
    print("🧪 Testing heartbeat response classification...")
    ok = HeartbeatDetector.analyze(["HEARTBEAT_OK"], had_tool_calls=False)
    assert ok.heartbeat_result is HeartbeatResult.OK_NOTHING_TO_DO
    assert not ok.is_task_complete and ok.status_note is None

    bold = HeartbeatDetector.analyze(["**heartbeat_ok**"], had_tool_calls=False)
    assert bold.heartbeat_result is HeartbeatResult.OK_NOTHING_TO_DO

    acted = HeartbeatDetector.analyze(["I replied to the message."], had_tool_calls=False)
    assert acted.heartbeat_result is HeartbeatResult.ACTED
    assert acted.status_note is None

    tools = HeartbeatDetector.analyze(["HEARTBEAT_OK"], had_tool_calls=True)
    assert tools.heartbeat_result is HeartbeatResult.ACTED

    nothing = HeartbeatDetector.analyze([], had_tool_calls=False)
    assert nothing.heartbeat_result is HeartbeatResult.ACTED
    print("✅ Sentinel and tool calls decide the outcome")


def test_task_complete_and_notes():
    done = HeartbeatDetector.analyze(["HEARTBEAT_OK - Task Complete"], had_tool_calls=False)
    assert done.is_task_complete
    assert done.status_note == "Task Complete"

    em_dash = HeartbeatDetector.analyze(["**HEARTBEAT_OK** — task complete"], had_tool_calls=True)
    assert em_dash.heartbeat_result is HeartbeatResult.ACTED
    assert em_dash.is_task_complete

    split = HeartbeatDetector.analyze(["Checked.", "HEARTBEAT_OK: opponent hasn't moved"], False)
    assert split.status_note == "opponent hasn't moved"
    assert not split.is_task_complete

    assert extract_status_note("HEARTBEAT_OK -   ") is None
    assert extract_status_note("no sentinel here") is None


def test_prompt_wording():
    with_task = build_heartbeat_prompt("waiting for the build")
    assert with_task.startswith("[Heartbeat Check]\n")
    assert "You are currently working on: waiting for the build" in with_task
    assert f"reply with exactly: {SENTINEL}" in with_task
    assert f"{SENTINEL} - task complete" in with_task
    assert with_task.endswith("\n")

    idle = build_heartbeat_prompt(None)
    assert "periodic check-in" in idle
    assert "currently working on" not in idle
    assert "- Do NOT invent tasks" in idle


async def test_backoff_schedule():
    print("🧪 Testing heartbeat backoff...")
    manager = HeartbeatManager(FakeAgent())
    manager.start()
    assert manager.state is HeartbeatState.ACTIVE
    assert manager.current_interval_ms == BASE_INTERVAL_MS

    intervals = []
    for _ in range(5):
        manager.on_heartbeat_result(HeartbeatResult.OK_NOTHING_TO_DO)
        intervals.append(manager.current_interval_ms)
    assert intervals == [5000, 10000, 30000, 60000, 60000]
    assert manager.consecutive_ok_count == 5

    manager.on_heartbeat_result(HeartbeatResult.ACTED)
    assert manager.current_interval_ms == BASE_INTERVAL_MS
    assert manager.consecutive_ok_count == 0

    manager.on_heartbeat_result(HeartbeatResult.SKIPPED_BUSY)
    assert manager.current_interval_ms == BASE_INTERVAL_MS

    errors = []
    for _ in range(5):
        manager.on_heartbeat_result(HeartbeatResult.ERROR)
        errors.append(manager.current_interval_ms)
    assert errors == [10000, 20000, 40000, 60000, 60000]

    manager.stop()
    assert manager.state is HeartbeatState.STOPPED
    assert not manager.is_running
    print("✅ Interval follows 5s → 10s → 30s → 60s")


async def test_task_context_resets_backoff():
    manager = HeartbeatManager(FakeAgent())
    manager.start()
    for _ in range(3):
        manager.on_heartbeat_result(HeartbeatResult.OK_NOTHING_TO_DO)

    manager.set_active_task_context("reply to Sam")
    assert manager.active_task_context == "reply to Sam"
    assert manager.current_interval_ms == BASE_INTERVAL_MS
    assert manager.consecutive_ok_count == 0

    manager.clear_active_task_context()
    assert manager.active_task_context is None
    assert manager.current_interval_ms == MAX_INTERVAL_MS

    manager.set_active_task_context("again")
    manager.stop()
    # Stopping forgets the task
    assert manager.active_task_context is None


async def test_tick_decisions():
    print("🧪 Testing heartbeat ticks...")
    agent = FakeAgent()
    states: list[HeartbeatState] = []
    manager = HeartbeatManager(agent)
    manager.subscribe(states.append)
    manager.start()

    # No task and no always-poll: slow down, do not prompt
    manager._tick()
    assert agent.prompts == []
    assert manager.current_interval_ms == MAX_INTERVAL_MS

    manager.set_active_task_context("watch the oven timer")
    manager._tick()
    assert manager.state is HeartbeatState.POLLING
    assert "You are currently working on: watch the oven timer" in agent.prompts[0]

    manager.on_heartbeat_result(HeartbeatResult.OK_NOTHING_TO_DO)
    agent.state = AgentState.EXECUTING_TOOLS
    manager._tick()
    assert len(agent.prompts) == 1
    assert manager.state is HeartbeatState.ACTIVE

    agent.state = AgentState.IDLE
    manager.enabled = False
    manager._tick()
    assert manager.state is HeartbeatState.STOPPED
    assert states == [
        HeartbeatState.ACTIVE,
        HeartbeatState.POLLING,
        HeartbeatState.ACTIVE,
        HeartbeatState.STOPPED,
    ]
    print("✅ Ticks skip, slow down, poll and stop as expected")


async def test_always_poll_without_context():
    agent = FakeAgent()
    manager = HeartbeatManager(agent, always_poll=True)
    manager.start()
    manager._tick()
    assert len(agent.prompts) == 1
    assert "periodic check-in" in agent.prompts[0]
    manager.stop()


async def test_disabled_manager_does_not_start():
    manager = HeartbeatManager(FakeAgent(), enabled=False)
    manager.start()
    assert not manager.is_running
    assert manager.state is HeartbeatState.STOPPED


async def test_timer_fires_tick():
    agent = FakeAgent()
    manager = HeartbeatManager(agent, always_poll=True)
    manager.start()
    # Shorten the pending timer instead of waiting five seconds
    manager._handle.cancel()
    manager._handle = asyncio.get_running_loop().call_later(0.01, manager._tick)
    await asyncio.sleep(0.05)
    assert len(agent.prompts) == 1
    manager.stop()


if __name__ == "__main__":
    test_detector_classification()
    test_task_complete_and_notes()
    test_prompt_wording()
    asyncio.run(test_backoff_schedule())
    asyncio.run(test_task_context_resets_backoff())
    asyncio.run(test_tick_decisions())
    asyncio.run(test_always_poll_without_context())
    asyncio.run(test_disabled_manager_does_not_start())
    asyncio.run(test_timer_fires_tick())
    print("\n🎉 All heartbeat tests passed!")
