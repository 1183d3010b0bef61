"""Built-in tool that lets the model arm or disarm heartbeat monitoring."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from heartloop.tools.base import ParameterProperty, Tool, ToolParameters, ToolResult

if TYPE_CHECKING:
    from heartloop.heartbeat.manager import HeartbeatManager


class HeartbeatContextTool(Tool):
    name = "heartbeat.context"
    description = (
        "Set or clear the active task context for the heartbeat system.\n"
        "When you start a long-running task that requires periodic monitoring "
        "(waiting for responses, watching for changes, etc.), call this with "
        'action "set" and a brief description.\n'
        "The heartbeat will periodically wake you up to check on the task.\n"
        'Call with action "clear" when the task is complete.'
    )
    parameters = ToolParameters(
        properties={
            "action": ParameterProperty(
                type="string",
                description="Action: 'set' to activate monitoring, 'clear' to deactivate",
                enum=["set", "clear"],
            ),
            "context": ParameterProperty(
                type="string",
                description="Brief description of the active task (required for 'set')",
            ),
        },
        required=["action"],
    )
    requires_approval = False

    def __init__(self, heartbeat_manager: HeartbeatManager) -> None:
        self.heartbeat_manager = heartbeat_manager

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        action = params.get("action")
        if not action:
            return ToolResult.fail("Missing 'action' parameter")

        if action == "set":
            context = params.get("context")
            if not context:
                return ToolResult.fail("Missing 'context' for set action")
            self.heartbeat_manager.set_active_task_context(str(context))
            return ToolResult.ok(
                {
                    "active": True,
                    "context": context,
                    "message": (
                        "Heartbeat monitoring activated. "
                        f"Will periodically check on: {context}"
                    ),
                }
            )

        if action == "clear":
            self.heartbeat_manager.clear_active_task_context()
            return ToolResult.ok(
                {"active": False, "message": "Heartbeat monitoring deactivated."}
            )

        return ToolResult.fail(f"Unknown action: {action}. Use 'set' or 'clear'.")
