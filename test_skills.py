#!/usr/bin/env python3
"""
Test script for markdown skills: parsing, directory loading, the prompt
manifest and the skill.read tool.
"""

from __future__ import annotations

import asyncio
import os
import tempfile

from heartloop.chat.system_prompt import build_system_prompt
from heartloop.skills import SkillRegistry, parse_skill
from heartloop.tools.catalog import ToolCatalog
from heartloop.tools.skill_read import SkillReadTool

BRIEFING = """# Daily Briefing
Get a morning summary of your day.

## Trigger
daily briefing

## Steps
1. Check the current time
2. Read today's calendar events
3. Compile a summary

## Notes
ignored section

## Tools
- calendar.query
* sms.read
"""


def test_parse_complete_skill():
    print("🧪 Testing skill parsing...")
    skill = parse_skill(BRIEFING)
    assert skill is not None
    assert skill.name == "Daily Briefing"
    assert skill.description == "Get a morning summary of your day."
    assert skill.trigger == "daily briefing"
    assert skill.steps == [
        "Check the current time",
        "Read today's calendar events",
        "Compile a summary",
    ]
    assert skill.tools == ["calendar.query", "sms.read"]
    print("✅ All sections parsed")


def test_parse_minimal_and_invalid():
    skill = parse_skill("# Simple Skill\nJust a basic skill.")
    assert skill is not None and skill.steps == [] and skill.tools == []

    dashed = parse_skill("# Test\nDescription\n\n## Steps\n- Do this\n- Do that\n")
    assert dashed.steps == ["Do this", "Do that"]

    assert parse_skill("") is None
    assert parse_skill("Just some text without a heading") is None


def test_registry_loads_directory():
    print("🧪 Testing skill directory loading...")
    with tempfile.TemporaryDirectory() as tmp:
        with open(os.path.join(tmp, "briefing.md"), "w") as f:
            f.write(BRIEFING)
        with open(os.path.join(tmp, "broken.md"), "w") as f:
            f.write("no heading here")
        with open(os.path.join(tmp, "notes.txt"), "w") as f:
            f.write("# Not A Skill")

        registry = SkillRegistry()
        assert registry.load_directory(tmp) == 1
        assert registry.load_directory(os.path.join(tmp, "missing")) == 0

    assert [s.name for s in registry.skills] == ["Daily Briefing"]
    assert registry.find_by_trigger("Give me my DAILY BRIEFING please").name == "Daily Briefing"
    assert registry.find_by_trigger("what's the weather") is None
    assert registry.get_content("daily briefing") == BRIEFING
    assert registry.get_content("Weather Check") is None
    print("✅ Skill files loaded")


def test_manifest_in_system_prompt():
    registry = SkillRegistry()
    assert registry.build_prompt() == ""
    registry.add(BRIEFING)

    manifest = registry.build_prompt()
    assert manifest.startswith("## Available Skills")
    assert (
        '- **Daily Briefing**: Get a morning summary of your day. Trigger: "daily briefing"'
        in manifest
    )

    prompt = build_system_prompt(ToolCatalog(), {}, manifest)
    assert prompt.index("## Available Skills") < prompt.index("## Tool Use Guidelines")


async def test_skill_read_tool():
    registry = SkillRegistry()
    registry.add(BRIEFING)
    tool = SkillReadTool(registry)

    result = await tool.execute({"name": "DAILY briefing"})
    assert result.success
    assert result.data == {"skill": "DAILY briefing", "content": BRIEFING}

    missing = await tool.execute({"name": "Weather Check"})
    assert not missing.success and "Skill not found" in missing.error
    assert not (await tool.execute({})).success


if __name__ == "__main__":
    test_parse_complete_skill()
    test_parse_minimal_and_invalid()
    test_registry_loads_directory()
    test_manifest_in_system_prompt()
    asyncio.run(test_skill_read_tool())
    print("\n🎉 All skill tests passed!")
