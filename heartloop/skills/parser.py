"""
Skill file parsing.

A skill is a markdown document::

    # Daily Briefing
    Get a morning summary of your day.

    ## Trigger
    daily briefing

    ## Steps
    1. Check the current time
    2. Read today's calendar events

    ## Tools
    - calendar.query

The level-one heading names the skill and the text below it describes it.
Unknown ``##`` sections are ignored.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

_NUMBERED = re.compile(r"^\d+\.\s")
_SECTIONS = {"trigger", "steps", "tools"}


class Skill(BaseModel):
    name: str
    description: str = ""
    trigger: str = ""
    steps: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)


def parse_skill(content: str) -> Skill | None:
    """Parse one skill document. Returns None when it has no ``# Name`` heading."""
    name = ""
    description: list[str] = []
    trigger = ""
    steps: list[str] = []
    tools: list[str] = []
    section = "header"

    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            name = stripped[2:].strip()
            section = "description"
        elif stripped.startswith("## "):
            heading = stripped[3:].strip().lower()
            section = heading if heading in _SECTIONS else "other"
        elif not stripped:
            continue
        elif section == "description":
            description.append(stripped)
        elif section == "trigger":
            trigger = stripped
        elif section == "steps":
            step = _NUMBERED.sub("", stripped.removeprefix("- "), count=1)
            if step.strip():
                steps.append(step)
        elif section == "tools":
            tool = stripped.removeprefix("- ").removeprefix("* ").strip()
            if tool:
                tools.append(tool)

    if not name:
        return None
    return Skill(
        name=name,
        description="\n".join(description),
        trigger=trigger,
        steps=steps,
        tools=tools,
    )
