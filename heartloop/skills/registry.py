"""Loads skill files from directories and renders the prompt manifest."""

from __future__ import annotations

import logging
import os

from heartloop.skills.parser import Skill, parse_skill

logger = logging.getLogger(__name__)


class SkillRegistry:
    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}
        self._content: dict[str, str] = {}

    @property
    def skills(self) -> list[Skill]:
        return list(self._skills.values())

    def __len__(self) -> int:
        return len(self._skills)

    def load_directory(self, path: str) -> int:
        """Load every ``*.md`` skill in ``path``. Returns how many were loaded."""
        if not os.path.isdir(path):
            logger.info(f"Skills directory not found: {path}")
            return 0

        loaded = 0
        for file_name in sorted(os.listdir(path)):
            if not file_name.endswith(".md"):
                continue
            file_path = os.path.join(path, file_name)
            try:
                with open(file_path, encoding="utf-8") as f:
                    content = f.read()
            except OSError as e:
                logger.warning(f"Could not read skill file {file_path}: {e}")
                continue
            if self.add(content) is None:
                logger.warning(f"Skipping {file_path}: no '# Name' heading")
                continue
            loaded += 1

        logger.info(f"Loaded {loaded} skills from {path}")
        return loaded

    def add(self, content: str) -> Skill | None:
        skill = parse_skill(content)
        if skill is None:
            return None
        if skill.name in self._skills:
            logger.warning(f"Skill '{skill.name}' redefined, keeping the latest")
        self._skills[skill.name] = skill
        self._content[skill.name] = content
        return skill

    def find_by_trigger(self, text: str) -> Skill | None:
        lowered = text.lower()
        for skill in self._skills.values():
            if skill.trigger and skill.trigger.lower() in lowered:
                return skill
        return None

    def get_content(self, name: str) -> str | None:
        """Full markdown of a skill; exact name first, then case-insensitive."""
        if name in self._content:
            return self._content[name]
        for skill_name, content in self._content.items():
            if skill_name.lower() == name.lower():
                return content
        return None

    def build_prompt(self) -> str:
        """Compact manifest; the model reads full instructions with skill.read."""
        if not self._skills:
            return ""
        lines = [
            "## Available Skills",
            "When the user's request matches a skill trigger, use the skill.read tool "
            "to get the full skill instructions before executing.",
            "",
        ]
        for skill in self._skills.values():
            summary = skill.description.splitlines()[0] if skill.description else ""
            entry = f"- **{skill.name}**: {summary}"
            if skill.trigger:
                entry += f' Trigger: "{skill.trigger}"'
            lines.append(entry)
        return "\n".join(lines)
