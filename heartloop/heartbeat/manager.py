"""
Heartbeat Scheduler

Periodically wakes the agent while a task is active. The interval follows a
backoff schedule: each consecutive "nothing to do" moves one step further,
acting resets it, errors double it. A single asyncio timer handle is kept so
at most one tick is ever pending.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from heartloop.chat.logging_utils import log_heartbeat
from heartloop.chat.models import AgentState
from heartloop.heartbeat.detector import HeartbeatResult
from heartloop.heartbeat.prompt import build_heartbeat_prompt

logger = logging.getLogger(__name__)

MIN_INTERVAL_MS = 3000
BASE_INTERVAL_MS = 5000
MAX_INTERVAL_MS = 60000
BACKOFF_SCHEDULE_MS = (5000, 10000, 30000, 60000)


class HeartbeatState(str, Enum):
    STOPPED = "stopped"
    ACTIVE = "active"
    POLLING = "polling"


class HeartbeatAgent(Protocol):
    """What the scheduler needs from the agent loop."""

    @property
    def state(self) -> AgentState: ...

    def submit_heartbeat(self, prompt: str) -> Any: ...


class HeartbeatManager:
    def __init__(
        self,
        agent: HeartbeatAgent | None = None,
        enabled: bool = True,
        always_poll: bool = False,
    ) -> None:
        self.agent = agent
        self.enabled = enabled
        self.always_poll = always_poll

        self._state = HeartbeatState.STOPPED
        self._running = False
        self._handle: asyncio.TimerHandle | None = None
        self._current_interval_ms = BASE_INTERVAL_MS
        self._consecutive_ok_count = 0
        self._active_task_context: str | None = None
        self._last_heartbeat_at: float | None = None
        self._observers: list[Callable[[HeartbeatState], None]] = []

    # Read-only views

    @property
    def state(self) -> HeartbeatState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_interval_ms(self) -> int:
        return self._current_interval_ms

    @property
    def consecutive_ok_count(self) -> int:
        return self._consecutive_ok_count

    @property
    def active_task_context(self) -> str | None:
        return self._active_task_context

    @property
    def last_heartbeat_at(self) -> float | None:
        return self._last_heartbeat_at

    def attach(self, agent: HeartbeatAgent) -> None:
        self.agent = agent

    def subscribe(self, callback: Callable[[HeartbeatState], None]) -> None:
        if callback not in self._observers:
            self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[HeartbeatState], None]) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    # Lifecycle

    def start(self) -> None:
        if not self.enabled:
            logger.info("Heartbeat disabled, not starting")
            return
        self._running = True
        self._reset_backoff()
        self._set_state(HeartbeatState.ACTIVE)
        log_heartbeat("started, interval %dms", self._current_interval_ms)
        self._schedule_next()

    def stop(self) -> None:
        self._running = False
        self._cancel_timer()
        self._set_state(HeartbeatState.STOPPED)
        self._active_task_context = None
        log_heartbeat("stopped")

    # Task context

    def set_active_task_context(self, context: str) -> None:
        self._active_task_context = context
        self._reset_backoff()
        log_heartbeat("task context set: %s", context)
        if self._running:
            self._schedule_next()

    def clear_active_task_context(self) -> None:
        self._active_task_context = None
        self._current_interval_ms = MAX_INTERVAL_MS
        log_heartbeat("task context cleared, slowing to %dms", MAX_INTERVAL_MS)

    # Results

    def on_heartbeat_result(self, result: HeartbeatResult) -> None:
        """Adjust the next interval from the outcome of a tick."""
        self._last_heartbeat_at = time.time()
        self._set_state(HeartbeatState.ACTIVE)

        if result is HeartbeatResult.OK_NOTHING_TO_DO:
            self._consecutive_ok_count += 1
            step = min(self._consecutive_ok_count - 1, len(BACKOFF_SCHEDULE_MS) - 1)
            self._current_interval_ms = BACKOFF_SCHEDULE_MS[step]
        elif result is HeartbeatResult.ACTED:
            self._reset_backoff()
        elif result is HeartbeatResult.ERROR:
            self._current_interval_ms = min(self._current_interval_ms * 2, MAX_INTERVAL_MS)
        # SKIPPED_BUSY keeps the interval

        log_heartbeat(
            "result %s, next in %dms (ok streak %d)",
            result.value,
            self._current_interval_ms,
            self._consecutive_ok_count,
        )
        if self._running:
            self._schedule_next()

    # Timer

    def _schedule_next(self) -> None:
        self._cancel_timer()
        delay_ms = max(self._current_interval_ms, MIN_INTERVAL_MS)
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000, self._tick)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return
        if not self.enabled:
            self.stop()
            return
        if self.agent is None:
            logger.warning("Heartbeat tick without an attached agent")
            self._schedule_next()
            return

        if self.agent.state is not AgentState.IDLE:
            log_heartbeat("agent busy (%s), skipping", self.agent.state.value)
            self.on_heartbeat_result(HeartbeatResult.SKIPPED_BUSY)
            return

        if self._active_task_context is None and not self.always_poll:
            self._current_interval_ms = MAX_INTERVAL_MS
            self._schedule_next()
            return

        self._set_state(HeartbeatState.POLLING)
        log_heartbeat("polling (context: %s)", self._active_task_context)
        self.agent.submit_heartbeat(build_heartbeat_prompt(self._active_task_context))

    def _reset_backoff(self) -> None:
        self._consecutive_ok_count = 0
        self._current_interval_ms = BASE_INTERVAL_MS

    def _set_state(self, state: HeartbeatState) -> None:
        if state is self._state:
            return
        self._state = state
        for callback in list(self._observers):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in heartbeat observer: {e}")
