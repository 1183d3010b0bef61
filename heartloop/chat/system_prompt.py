"""System prompt assembly from agent config and the tool catalog."""

from __future__ import annotations

from typing import Any

from heartloop.heartbeat.detector import SENTINEL
from heartloop.tools.catalog import ToolCatalog

DEFAULT_IDENTITY = (
    "You are {name}, an autonomous AI assistant. You work through the tools "
    "made available to you to accomplish what the user asks, and you keep "
    "following up on ongoing tasks in the background.\n\n"
    "You are helpful, proactive, and safety-conscious. For sensitive actions "
    "you will ask for approval unless the user has set those tools to auto-approve."
)


def build_system_prompt(
    catalog: ToolCatalog, agent_config: dict[str, Any], skills_prompt: str = ""
) -> str:
    name = agent_config.get("name") or "Heartloop"
    sections = [DEFAULT_IDENTITY.format(name=name)]

    user_name = (agent_config.get("user_name") or "").strip()
    if user_name:
        sections.append(f"The user's name is {user_name}.")

    personality = (agent_config.get("personality") or "").strip()
    if personality:
        sections.append(f"## Custom Instructions\n{personality}")

    tools = catalog.all()
    if tools:
        lines = ["## Available Tools"]
        lines += [f"- **{tool.name}**: {tool.description}" for tool in tools]
        sections.append("\n".join(lines))

    if skills_prompt:
        sections.append(skills_prompt)

    sections.append(
        "## Tool Use Guidelines\n"
        "- Use tools proactively to help the user accomplish their goals.\n"
        "- For tools that require approval, the user will be prompted before execution.\n"
        "- Always explain what you're about to do before using a tool.\n"
        "- If a tool fails, explain the error and suggest alternatives."
    )

    sections.append(
        "## Heartbeat System\n"
        "- The heartbeat system is invisible to the user. Never mention it.\n"
        "- Heartbeat monitoring is activated automatically after you use tools; "
        "you do not need to call heartbeat.context to start it.\n"
        "- A message starting with [Heartbeat Check] is an automated check-in, "
        "not a user message.\n"
        "- During a heartbeat check, verify the current task is progressing and act if needed.\n"
        f"- If nothing needs your attention, respond with exactly: {SENTINEL}\n"
        f"- You may append a brief status note: {SENTINEL} - waiting for the build to finish\n"
        f"- When the task is fully complete, respond with: {SENTINEL} - task complete\n"
        "- Call heartbeat.context with action 'clear' to stop monitoring early."
    )

    return "\n\n".join(sections)
