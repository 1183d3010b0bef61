"""Markdown skills: reusable step-by-step recipes listed in the system prompt."""

from __future__ import annotations

from .parser import Skill, parse_skill
from .registry import SkillRegistry

__all__ = ["Skill", "SkillRegistry", "parse_skill"]
