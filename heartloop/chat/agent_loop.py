"""
Agent Loop

The state machine that turns a user message into a sequence of completions
interleaved with tool calls:

    IDLE → THINKING → (EXECUTING_TOOLS | WAITING_APPROVAL)* → THINKING → … → IDLE

At most one run is active. ``submit_message`` cancels the current run and
starts a new one; ``submit_heartbeat`` never cancels and is skipped when the
agent is busy. Every run carries a run id; work belonging to a superseded run
can no longer touch state or history.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from heartloop.chat.logging_utils import log_heartbeat, log_llm_reply
from heartloop.chat.models import (
    AgentEvent,
    AgentState,
    AssistantTextEvent,
    CompletionRequest,
    ErrorEvent,
    HeartbeatCompleteEvent,
    HeartbeatStartEvent,
    Message,
    Role,
    StopReason,
    TextBlock,
    ThinkingTextEvent,
    ToolResultBlock,
    UserMessageEvent,
)
from heartloop.chat.system_prompt import build_system_prompt
from heartloop.chat.tool_executor import StaleRunError, ToolExecutor
from heartloop.config import DEFAULT_MAX_ITERATIONS
from heartloop.heartbeat.detector import HeartbeatDetector, HeartbeatResult

if TYPE_CHECKING:
    from heartloop.clients.provider_manager import ProviderManager
    from heartloop.heartbeat.manager import HeartbeatManager
    from heartloop.tools.catalog import ToolCatalog

logger = logging.getLogger(__name__)

TASK_CONTEXT_LENGTH = 120
INTERRUPTED_MESSAGE = "Tool call interrupted before it completed"


class AgentLoop:
    def __init__(
        self,
        provider_manager: ProviderManager,
        catalog: ToolCatalog,
        tool_executor: ToolExecutor,
        system_prompt: Callable[[], str] | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_tokens: int = 4096,
        heartbeat_manager: HeartbeatManager | None = None,
    ) -> None:
        self.provider_manager = provider_manager
        self.catalog = catalog
        self.tool_executor = tool_executor
        self._system_prompt = system_prompt or (lambda: build_system_prompt(catalog, {}))
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.heartbeat_manager = heartbeat_manager

        self._state = AgentState.IDLE
        self._history: list[Message] = []
        self._task: asyncio.Task[None] | None = None
        self._run_id = 0
        self._is_heartbeat_run = False
        self._heartbeat_history_start = 0
        self._paused = False

        self._event_listeners: list[Callable[[AgentEvent], None]] = []
        self._state_listeners: list[Callable[[AgentState], None]] = []
        self._subscribers: list[asyncio.Queue[AgentEvent]] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def current_task(self) -> asyncio.Task[None] | None:
        return self._task

    def add_event_listener(self, callback: Callable[[AgentEvent], None]) -> None:
        if callback not in self._event_listeners:
            self._event_listeners.append(callback)

    def remove_event_listener(self, callback: Callable[[AgentEvent], None]) -> None:
        if callback in self._event_listeners:
            self._event_listeners.remove(callback)

    def add_state_listener(self, callback: Callable[[AgentState], None]) -> None:
        if callback not in self._state_listeners:
            self._state_listeners.append(callback)

    def remove_state_listener(self, callback: Callable[[AgentState], None]) -> None:
        if callback in self._state_listeners:
            self._state_listeners.remove(callback)

    def subscribe(self) -> asyncio.Queue[AgentEvent]:
        """Queue receiving every event emitted from now on."""
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AgentEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def attach_heartbeat(self, heartbeat_manager: HeartbeatManager) -> None:
        self.heartbeat_manager = heartbeat_manager

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def submit_message(self, text: str) -> asyncio.Task[None]:
        """Cancel any in-flight run and start a new one for ``text``."""
        run_id = self._start_run(heartbeat=False)
        self._task = asyncio.get_running_loop().create_task(self._run_user(run_id, text))
        return self._task

    def submit_heartbeat(self, prompt: str) -> asyncio.Task[None] | None:
        """Start a heartbeat run, or report SKIPPED_BUSY when not idle."""
        if self._state is not AgentState.IDLE:
            log_heartbeat("agent is %s, skipping", self._state.value)
            self._report_heartbeat(HeartbeatResult.SKIPPED_BUSY)
            return None
        run_id = self._start_run(heartbeat=True)
        self._task = asyncio.get_running_loop().create_task(
            self._run_heartbeat(run_id, prompt)
        )
        return self._task

    def stop(self) -> None:
        self._cancel_current()
        self._run_id += 1
        self._paused = False
        self._set_state(AgentState.IDLE)

    def pause(self) -> None:
        """The current run stops at its next iteration boundary."""
        self._paused = True
        self._set_state(AgentState.PAUSED)

    def resume(self) -> asyncio.Task[None] | None:
        """Continue from history after ``pause``."""
        if self._state is not AgentState.PAUSED:
            return None
        self._paused = False
        self._repair_history()
        if not self._history or self._history[-1].role is not Role.USER:
            self._set_state(AgentState.IDLE)
            return None
        run_id = self._start_run(heartbeat=False)
        self._task = asyncio.get_running_loop().create_task(self._run_resumed(run_id))
        return self._task

    def clear_history(self) -> None:
        self.stop()
        self._history.clear()
        logger.info("Conversation history cleared")

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _start_run(self, heartbeat: bool) -> int:
        self._cancel_current()
        self._run_id += 1
        self._is_heartbeat_run = heartbeat
        self._paused = False
        self._set_state(AgentState.THINKING)
        return self._run_id

    def _cancel_current(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _is_current(self, run_id: int) -> bool:
        return run_id == self._run_id

    def _check_current(self, run_id: int) -> None:
        if not self._is_current(run_id):
            raise StaleRunError(f"run {run_id} superseded")

    def _run_state(self, run_id: int, state: AgentState) -> None:
        """State change on behalf of a run; ignored once stale or paused."""
        if self._is_current(run_id) and not self._paused:
            self._set_state(state)

    async def _run_user(self, run_id: int, text: str) -> None:
        try:
            self._repair_history()
            self._history.append(Message.user(text))
            self._emit(UserMessageEvent(text=text))
            had_tool_calls = await self._run_loop(run_id)

            if had_tool_calls and self.heartbeat_manager is not None:
                # Keep watching whatever the user just asked for
                task_summary = text.strip()[:TASK_CONTEXT_LENGTH]
                self.heartbeat_manager.set_active_task_context(task_summary)
        except (asyncio.CancelledError, StaleRunError):
            logger.debug(f"Run {run_id} cancelled")
            self._run_state(run_id, AgentState.IDLE)
        except Exception as e:
            if not self._is_current(run_id):
                return
            logger.error(f"Agent loop error: {type(e).__name__}: {e}")
            self._run_state(run_id, AgentState.ERROR)
            self._emit(ErrorEvent(message=str(e) or type(e).__name__))

    async def _run_heartbeat(self, run_id: int, prompt: str) -> None:
        try:
            self._repair_history()
            self._heartbeat_history_start = len(self._history)
            self._history.append(Message.user(prompt))
            self._emit(HeartbeatStartEvent())
            await self._run_loop(run_id)
        except (asyncio.CancelledError, StaleRunError):
            log_heartbeat("run %d cancelled", run_id)
            self._run_state(run_id, AgentState.IDLE)
            self._report_heartbeat(HeartbeatResult.SKIPPED_BUSY)
        except Exception as e:
            if not self._is_current(run_id):
                # Superseded; the scheduler still needs an answer to reschedule
                self._report_heartbeat(HeartbeatResult.SKIPPED_BUSY)
                return
            logger.error(f"Heartbeat error: {type(e).__name__}: {e}")
            self._run_state(run_id, AgentState.IDLE)
            self._report_heartbeat(HeartbeatResult.ERROR)
        finally:
            if self._is_current(run_id):
                self._is_heartbeat_run = False

    async def _run_resumed(self, run_id: int) -> None:
        try:
            await self._run_loop(run_id)
        except (asyncio.CancelledError, StaleRunError):
            self._run_state(run_id, AgentState.IDLE)
        except Exception as e:
            if not self._is_current(run_id):
                return
            logger.error(f"Agent loop error: {type(e).__name__}: {e}")
            self._run_state(run_id, AgentState.ERROR)
            self._emit(ErrorEvent(message=str(e) or type(e).__name__))

    async def _run_loop(self, run_id: int) -> bool:
        """
        Iterate completions and tool calls until the model stops asking for tools.

        Returns:
            True when at least one tool call was made during the run
        """
        heartbeat = self._is_heartbeat_run
        # Heartbeat runs are background work; only their outcome is surfaced
        emit: Callable[[AgentEvent], None] = (lambda event: None) if heartbeat else self._emit
        iterations = 0
        had_tool_calls = False

        while iterations < self.max_iterations:
            self._check_current(run_id)
            if self._paused:
                logger.info(f"Run {run_id} paused after {iterations} iterations")
                if heartbeat:
                    self._abandon_heartbeat()
                return had_tool_calls
            iterations += 1

            request = CompletionRequest(
                system_prompt=self._system_prompt(),
                messages=list(self._history),
                tools=self.catalog.to_api_schema(),
                max_tokens=self.max_tokens,
            )
            logger.info(
                "→ LLM: iteration %d/%d, %d messages, %d tools",
                iterations,
                self.max_iterations,
                len(request.messages),
                len(request.tools),
            )
            response = await self.provider_manager.complete_with_failover(request)
            self._check_current(run_id)

            failover = self.provider_manager.last_failover_event
            if failover is not None:
                self._emit(failover)
            log_llm_reply(response, f"iteration {iterations}")

            texts: list[str] = []
            for block in response.content:
                if not isinstance(block, TextBlock):
                    continue
                if block.is_thought:
                    emit(ThinkingTextEvent(text=block.text))
                elif block.text:
                    texts.append(block.text)
                    emit(AssistantTextEvent(text=block.text))

            self._history.append(Message(role=Role.ASSISTANT, content=list(response.content)))

            tool_calls = response.tool_uses()
            if response.stop_reason is not StopReason.TOOL_USE or not tool_calls:
                logger.info(
                    "← LLM: done after %d iterations (stop: %s)",
                    iterations,
                    response.stop_reason.value,
                )
                if heartbeat:
                    self._finish_heartbeat(texts, had_tool_calls)
                self._run_state(run_id, AgentState.IDLE)
                return had_tool_calls

            had_tool_calls = True
            self._run_state(run_id, AgentState.EXECUTING_TOOLS)
            results = await self.tool_executor.execute_tool_calls(
                tool_calls,
                emit=emit,
                set_state=lambda state: self._run_state(run_id, state),
                is_current=lambda: self._is_current(run_id),
            )
            self._check_current(run_id)
            self._history.append(Message.tool_results(results))
            self._run_state(run_id, AgentState.THINKING)

        logger.warning(f"Max iterations ({self.max_iterations}) reached")
        self._emit(ErrorEvent(message=f"Max iterations ({self.max_iterations}) reached"))
        if heartbeat:
            self._report_heartbeat(HeartbeatResult.ERROR)
        self._run_state(run_id, AgentState.IDLE)
        return had_tool_calls

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _repair_history(self) -> None:
        """Answer tool uses left unanswered by an interrupted run."""
        if not self._history:
            return
        last = self._history[-1]
        if last.role is not Role.ASSISTANT:
            return
        dangling = last.tool_uses()
        if not dangling:
            return
        logger.info(f"Answering {len(dangling)} interrupted tool calls")
        self._history.append(
            Message.tool_results(
                [
                    ToolResultBlock(tool_use_id=call.id, content=INTERRUPTED_MESSAGE, is_error=True)
                    for call in dangling
                ]
            )
        )

    def _prune_last_heartbeat_exchange(self) -> None:
        """Drop the heartbeat prompt and its bare reply from history."""
        if len(self._history) < 2:
            return
        if self._history[-1].role is Role.ASSISTANT and self._history[-2].role is Role.USER:
            del self._history[-2:]

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _finish_heartbeat(self, texts: list[str], had_tool_calls: bool) -> None:
        detection = HeartbeatDetector.analyze(texts, had_tool_calls)
        self._emit(
            HeartbeatCompleteEvent(
                result=detection.heartbeat_result.value,
                is_task_complete=detection.is_task_complete,
                status_note=detection.status_note,
            )
        )
        log_heartbeat(
            "complete: %s (task complete: %s, note: %s)",
            detection.heartbeat_result.value,
            detection.is_task_complete,
            detection.status_note,
        )

        if detection.is_task_complete and self.heartbeat_manager is not None:
            self.heartbeat_manager.clear_active_task_context()
        if detection.heartbeat_result is HeartbeatResult.OK_NOTHING_TO_DO:
            self._prune_last_heartbeat_exchange()
        self._report_heartbeat(detection.heartbeat_result)

    def _abandon_heartbeat(self) -> None:
        """
        A paused heartbeat is dropped rather than resumed: its prompt and any
        partial exchange leave history, and the scheduler is told it was skipped.
        """
        discarded = len(self._history) - self._heartbeat_history_start
        log_heartbeat("paused mid-run, discarding %d messages", discarded)
        del self._history[self._heartbeat_history_start :]
        self._report_heartbeat(HeartbeatResult.SKIPPED_BUSY)

    def _report_heartbeat(self, result: HeartbeatResult) -> None:
        if self.heartbeat_manager is not None:
            self.heartbeat_manager.on_heartbeat_result(result)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _set_state(self, state: AgentState) -> None:
        if state is self._state:
            return
        logger.debug(f"Agent state: {self._state.value} → {state.value}")
        self._state = state
        for callback in list(self._state_listeners):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in state listener: {e}")

    def _emit(self, event: AgentEvent) -> None:
        for callback in list(self._event_listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event listener: {e}")
        for queue in self._subscribers:
            queue.put_nowait(event)
