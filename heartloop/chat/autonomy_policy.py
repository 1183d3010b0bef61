"""
Autonomy Policy

Per-tool approval decision table consulted by the agent loop before any tool
runs. Permission profiles bulk-assign policies; individual entries can be
overridden afterwards and stay until the next profile is applied.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum

from heartloop.tools.base import Tool

logger = logging.getLogger(__name__)


class ApprovalPolicy(str, Enum):
    AUTO = "auto"  # run without asking
    ASK = "ask"  # suspend on the approval gate
    DENY = "deny"  # never run


class PermissionProfile(str, Enum):
    FULL_AUTO = "full_auto"
    BALANCED = "balanced"
    CAUTIOUS = "cautious"

    @classmethod
    def parse(cls, value: str | PermissionProfile) -> PermissionProfile:
        if isinstance(value, PermissionProfile):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown permission profile '{value}'. "
                f"Use one of: {', '.join(p.value for p in cls)}"
            ) from None


# Reads auto-approved even by the cautious profile
BASIC_READ_TOOLS: tuple[str, ...] = (
    "sms.read",
    "contacts.search",
    "calendar.query",
    "location.get",
    "clipboard.read",
    "file.read",
    "file.list",
    "settings.get",
)

OTHER_READ_TOOLS: tuple[str, ...] = (
    "sensor.read",
    "phone.log",
    "browser.search",
    "browser.open",
    "screen.read",
    "screen.capture",
    "vision.analyze",
    "notification.listen",
    "messaging.read",
)

APP_CONTROL_TOOLS: tuple[str, ...] = ("app.launch", "app.automate")

WRITE_TOOLS: tuple[str, ...] = (
    "sms.send",
    "phone.call",
    "contacts.add",
    "calendar.create",
    "camera.snap",
    "camera.record",
    "clipboard.write",
    "file.write",
    "script.exec",
    "email.send",
    "schedule.manage",
    "messaging.open",
    "messaging.reply",
    "notification.send",
)

# Internal bookkeeping tools, never gated
INTERNAL_TOOLS: tuple[str, ...] = ("heartbeat.context",)

KNOWN_TOOLS: tuple[str, ...] = (
    BASIC_READ_TOOLS + OTHER_READ_TOOLS + APP_CONTROL_TOOLS + WRITE_TOOLS
)


class AutonomyPolicy:
    """Mutable map tool name -> ApprovalPolicy. Unknown tools are AUTO."""

    def __init__(
        self,
        profile: PermissionProfile | str = PermissionProfile.FULL_AUTO,
        tools: Iterable[Tool] = (),
    ) -> None:
        self._policies: dict[str, ApprovalPolicy] = {}
        self._profile = PermissionProfile.FULL_AUTO
        self.apply_profile(profile, tools)

    @property
    def profile(self) -> PermissionProfile:
        return self._profile

    def get_policy(self, tool_name: str) -> ApprovalPolicy:
        return self._policies.get(tool_name, ApprovalPolicy.AUTO)

    def set_policy(self, tool_name: str, policy: ApprovalPolicy | str) -> None:
        self._policies[tool_name] = ApprovalPolicy(policy)
        logger.debug(f"Policy for '{tool_name}' set to {self._policies[tool_name].value}")

    def all_policies(self) -> dict[str, ApprovalPolicy]:
        return dict(self._policies)

    def apply_profile(
        self, profile: PermissionProfile | str, tools: Iterable[Tool] = ()
    ) -> None:
        """
        Clear the table and rewrite it from a preset.

        ``tools`` are catalog tools outside the known lists; they get AUTO
        under FULL_AUTO, ASK under CAUTIOUS, and under BALANCED ASK only when
        they declare ``requires_approval``.
        """
        profile = PermissionProfile.parse(profile)
        self._policies.clear()
        self._profile = profile

        if profile is PermissionProfile.FULL_AUTO:
            for name in KNOWN_TOOLS:
                self._policies[name] = ApprovalPolicy.AUTO
        elif profile is PermissionProfile.BALANCED:
            for name in BASIC_READ_TOOLS + OTHER_READ_TOOLS + APP_CONTROL_TOOLS:
                self._policies[name] = ApprovalPolicy.AUTO
            for name in WRITE_TOOLS:
                self._policies[name] = ApprovalPolicy.ASK
        else:
            for name in BASIC_READ_TOOLS:
                self._policies[name] = ApprovalPolicy.AUTO
            for name in OTHER_READ_TOOLS + APP_CONTROL_TOOLS + WRITE_TOOLS:
                self._policies[name] = ApprovalPolicy.ASK

        for tool in tools:
            if tool.name in self._policies or tool.name in INTERNAL_TOOLS:
                continue
            if profile is PermissionProfile.FULL_AUTO:
                policy = ApprovalPolicy.AUTO
            elif profile is PermissionProfile.BALANCED:
                policy = ApprovalPolicy.ASK if tool.requires_approval else ApprovalPolicy.AUTO
            else:
                policy = ApprovalPolicy.ASK
            self._policies[tool.name] = policy

        for name in INTERNAL_TOOLS:
            self._policies[name] = ApprovalPolicy.AUTO

        logger.info(
            f"Applied permission profile '{profile.value}' ({len(self._policies)} policies)"
        )
