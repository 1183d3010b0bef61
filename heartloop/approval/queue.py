"""
Approval Gate

The agent loop suspends on ``ApprovalGate.request`` whenever a tool's policy
is ASK. ``ApprovalQueue`` is the in-process gate: each request holds a future
that a presentation layer resolves through ``respond``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from heartloop.chat.autonomy_policy import ApprovalPolicy, AutonomyPolicy

logger = logging.getLogger(__name__)


class ApprovalResult(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    ALWAYS_ALLOW = "always_allow"


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    timestamp: float = Field(default_factory=time.time)


class ApprovalGate(Protocol):
    async def request(self, request: ApprovalRequest) -> ApprovalResult: ...


class ApprovalQueue:
    """In-process approval gate with one pending future per request."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[ApprovalResult]] = {}
        self._requests: dict[str, ApprovalRequest] = {}
        self._listeners: list[Callable[[list[ApprovalRequest]], None]] = []

    async def request(self, request: ApprovalRequest) -> ApprovalResult:
        """Queue the request and wait until someone responds."""
        future: asyncio.Future[ApprovalResult] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        self._requests[request.id] = request
        logger.info(f"→ Approval[{request.tool_name}]: waiting for response ({request.id})")
        self._notify()

        try:
            result = await future
            logger.info(f"← Approval[{request.tool_name}]: {result.value}")
            return result
        finally:
            self._pending.pop(request.id, None)
            self._requests.pop(request.id, None)
            self._notify()

    def respond(self, request_id: str, result: ApprovalResult) -> bool:
        """Resolve one pending request. Returns False if it is not pending."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(result)
        return True

    def respond_all(self, result: ApprovalResult) -> int:
        count = 0
        for request_id in list(self._pending):
            if self.respond(request_id, result):
                count += 1
        return count

    def pending(self) -> list[ApprovalRequest]:
        return list(self._requests.values())

    def add_listener(self, callback: Callable[[list[ApprovalRequest]], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[list[ApprovalRequest]], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self) -> None:
        snapshot = self.pending()
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Error in approval listener: {e}")


class ApprovalPolicyManager:
    """Folds "always allow" verdicts back into the autonomy policy."""

    def __init__(self, autonomy_policy: AutonomyPolicy) -> None:
        self.autonomy_policy = autonomy_policy

    def handle_result(self, tool_name: str, result: ApprovalResult) -> None:
        if result is ApprovalResult.ALWAYS_ALLOW:
            self.autonomy_policy.set_policy(tool_name, ApprovalPolicy.AUTO)
            logger.info(f"Tool '{tool_name}' is now always allowed")
