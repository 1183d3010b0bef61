"""
Heartbeat response classifier.

Decides from the visible text of a heartbeat run, and whether it called any
tools, if the agent acted or reported that nothing needs attention with the
``HEARTBEAT_OK`` sentinel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

SENTINEL = "HEARTBEAT_OK"

_SENTINEL_PATTERN = re.compile(r"\*{0,2}HEARTBEAT_OK\*{0,2}", re.IGNORECASE)
_TASK_COMPLETE_PATTERN = re.compile(
    r"HEARTBEAT_OK\*{0,2}\s*[-—:]\s*task\s+complete", re.IGNORECASE
)
_STATUS_NOTE_PATTERN = re.compile(r"HEARTBEAT_OK\*{0,2}\s*[-—:]\s*(.+)", re.IGNORECASE)


class HeartbeatResult(str, Enum):
    OK_NOTHING_TO_DO = "ok_nothing_to_do"
    ACTED = "acted"
    SKIPPED_BUSY = "skipped_busy"
    ERROR = "error"


@dataclass(frozen=True)
class DetectionResult:
    heartbeat_result: HeartbeatResult
    is_task_complete: bool = False
    status_note: str | None = None


class HeartbeatDetector:
    @staticmethod
    def analyze(response_texts: list[str], had_tool_calls: bool) -> DetectionResult:
        """
        Classify a heartbeat run.

        Args:
            response_texts: Visible text blocks of the run, in order
            had_tool_calls: Whether any tool was called during the run
        """
        full_text = " ".join(response_texts)

        if had_tool_calls:
            return DetectionResult(
                heartbeat_result=HeartbeatResult.ACTED,
                is_task_complete=bool(_TASK_COMPLETE_PATTERN.search(full_text)),
                status_note=extract_status_note(full_text),
            )

        if _SENTINEL_PATTERN.search(full_text):
            return DetectionResult(
                heartbeat_result=HeartbeatResult.OK_NOTHING_TO_DO,
                is_task_complete=bool(_TASK_COMPLETE_PATTERN.search(full_text)),
                status_note=extract_status_note(full_text),
            )

        # Substantive text without the sentinel counts as acting
        return DetectionResult(heartbeat_result=HeartbeatResult.ACTED)


def extract_status_note(text: str) -> str | None:
    """``"HEARTBEAT_OK - still waiting"`` -> ``"still waiting"``."""
    match = _STATUS_NOTE_PATTERN.search(text)
    if not match:
        return None
    note = match.group(1).strip()
    return note or None
