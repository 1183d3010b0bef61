"""Built-in tool returning the full instructions of a loaded skill."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from heartloop.tools.base import ParameterProperty, Tool, ToolParameters, ToolResult

if TYPE_CHECKING:
    from heartloop.skills.registry import SkillRegistry


class SkillReadTool(Tool):
    name = "skill.read"
    description = (
        "Read the full instructions for an installed skill. Use this when a user's "
        "request matches a skill trigger to get detailed steps before executing."
    )
    parameters = ToolParameters(
        properties={
            "name": ParameterProperty(
                type="string",
                description='The name of the skill to read (e.g. "Daily Briefing")',
            ),
        },
        required=["name"],
    )
    requires_approval = False

    def __init__(self, registry: SkillRegistry) -> None:
        self.registry = registry

    async def execute(self, params: dict[str, Any]) -> ToolResult:
        skill_name = params.get("name")
        if not skill_name:
            return ToolResult.fail("Missing 'name' parameter")

        content = self.registry.get_content(str(skill_name))
        if content is None:
            return ToolResult.fail(
                f'Skill not found: "{skill_name}". '
                "Use the skill names from the Available Skills list."
            )
        return ToolResult.ok({"skill": skill_name, "content": content})
