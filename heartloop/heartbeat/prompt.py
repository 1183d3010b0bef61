"""Prompt sent to the agent on each heartbeat tick."""

from __future__ import annotations

from heartloop.heartbeat.detector import SENTINEL


def build_heartbeat_prompt(task_context: str | None) -> str:
    """Build the heartbeat prompt; the wording depends on whether a task is active."""
    lines = ["[Heartbeat Check]", ""]

    if task_context:
        lines += [
            f"You are currently working on: {task_context}",
            "",
            "Check the current state of this task using the tools available to you. "
            "Determine if any action is needed to continue it.",
            "",
            "If you need to take action, do so now using the appropriate tools.",
        ]
    else:
        lines += [
            "This is a periodic check-in. Check whether anything needs your attention.",
            "",
            "If something requires action based on prior conversation context, "
            "take appropriate action.",
        ]

    lines += [
        "",
        f"If nothing needs attention right now, reply with exactly: {SENTINEL}",
        f"You may include a brief status note after {SENTINEL} "
        f'(e.g., "{SENTINEL} - opponent hasn\'t moved yet").',
        "",
        f"If the task appears to be complete, say: {SENTINEL} - task complete",
        "",
        "Rules:",
        "- Do NOT repeat or summarize previous actions",
        "- Do NOT invent tasks that weren't previously discussed",
        "- Keep responses minimal, this is a background check, not a conversation",
    ]
    return "\n".join(lines) + "\n"
