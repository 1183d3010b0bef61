"""
Tool execution for the agent loop.

Runs the tool calls of one assistant turn, in request order:
1. Unknown tool names become error results
2. The autonomy policy decides AUTO / DENY / ASK; ASK suspends on the gate
3. Approved calls execute; any fault becomes an error result

Exactly one ToolResultBlock is produced per call, so every tool use in
history is answered before the next request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from heartloop.approval.queue import (
    ApprovalGate,
    ApprovalPolicyManager,
    ApprovalRequest,
    ApprovalResult,
)
from heartloop.chat.autonomy_policy import ApprovalPolicy, AutonomyPolicy
from heartloop.chat.logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from heartloop.chat.models import (
    AgentEvent,
    AgentState,
    ToolCallDeniedEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
    ToolResultBlock,
    ToolUseBlock,
)
from heartloop.tools.base import ToolResult

if TYPE_CHECKING:
    from heartloop.tools.catalog import ToolCatalog

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Tool execution denied by user"


class StaleRunError(Exception):
    """The run that started this work was superseded while it was suspended."""


class ToolExecutor:
    """Gates and executes tool calls against the catalog."""

    def __init__(
        self,
        catalog: ToolCatalog,
        autonomy_policy: AutonomyPolicy,
        approval_gate: ApprovalGate,
        policy_manager: ApprovalPolicyManager | None = None,
        approval_timeout: float | None = None,
    ) -> None:
        self.catalog = catalog
        self.autonomy_policy = autonomy_policy
        self.approval_gate = approval_gate
        self.policy_manager = policy_manager or ApprovalPolicyManager(autonomy_policy)
        self.approval_timeout = approval_timeout

    async def execute_tool_calls(
        self,
        calls: list[ToolUseBlock],
        emit: Callable[[AgentEvent], None],
        set_state: Callable[[AgentState], None],
        is_current: Callable[[], bool] = lambda: True,
    ) -> list[ToolResultBlock]:
        """
        Execute calls sequentially and return one result block per call.

        Args:
            calls: Tool uses from the latest assistant message
            emit: Event sink (ToolCallStart / ToolCallDenied / ToolCallResult)
            set_state: Agent state sink for WAITING_APPROVAL transitions
            is_current: False once the owning run has been superseded

        Raises:
            StaleRunError: The run was superseded during an approval wait
        """
        logger.info("→ Tools: executing %d tool calls", len(calls))
        results: list[ToolResultBlock] = []

        for i, call in enumerate(calls):
            emit(ToolCallStartEvent(name=call.name, params=call.input))
            log_tool_execution_start(call.name, i, len(calls))

            tool = self.catalog.get(call.name)
            if tool is None:
                result = ToolResult.fail(f"Error: Unknown tool '{call.name}'")
                log_tool_execution_error(call.name, result.error or "")
                results.append(self._to_block(call, result))
                emit(ToolCallResultEvent(name=call.name, result=result))
                continue

            approved = await self._check_approval(call, set_state)
            if not is_current():
                raise StaleRunError(call.name)
            if not approved:
                result = ToolResult.fail(DENIED_MESSAGE)
                logger.info("Tool '%s' denied", call.name)
                results.append(self._to_block(call, result))
                emit(ToolCallDeniedEvent(name=call.name))
                emit(ToolCallResultEvent(name=call.name, result=result))
                continue

            log_tool_arguments(call.name, call.input, "execute")
            try:
                result = await tool.execute(call.input)
            except Exception as e:
                result = ToolResult.fail(f"Execution failed: {e}")

            if result.success:
                content = result.as_text()
                log_tool_execution_success(call.name, len(content))
                log_tool_results(call.name, content, "execute")
            else:
                log_tool_execution_error(call.name, result.error or "")

            results.append(self._to_block(call, result))
            emit(ToolCallResultEvent(name=call.name, result=result))

        logger.info("← Tools: completed all tool executions")
        return results

    async def _check_approval(
        self, call: ToolUseBlock, set_state: Callable[[AgentState], None]
    ) -> bool:
        policy = self.autonomy_policy.get_policy(call.name)
        if policy is ApprovalPolicy.AUTO:
            return True
        if policy is ApprovalPolicy.DENY:
            return False

        set_state(AgentState.WAITING_APPROVAL)
        request = ApprovalRequest(
            tool_name=call.name,
            parameters=call.input,
            description=f"Allow {call.name}?",
        )
        try:
            if self.approval_timeout:
                verdict = await asyncio.wait_for(
                    self.approval_gate.request(request), timeout=self.approval_timeout
                )
            else:
                verdict = await self.approval_gate.request(request)
        except asyncio.TimeoutError:
            logger.warning(
                "Approval for '%s' timed out after %ss, treating as denied",
                call.name,
                self.approval_timeout,
            )
            verdict = ApprovalResult.DENIED
        set_state(AgentState.EXECUTING_TOOLS)

        self.policy_manager.handle_result(call.name, verdict)
        return verdict in (ApprovalResult.APPROVED, ApprovalResult.ALWAYS_ALLOW)

    @staticmethod
    def _to_block(call: ToolUseBlock, result: ToolResult) -> ToolResultBlock:
        return ToolResultBlock(
            tool_use_id=call.id,
            content=result.as_text(),
            is_error=not result.success,
        )
