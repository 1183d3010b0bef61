"""Priority queue of background tasks the agent can work through."""

from __future__ import annotations

import logging
import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_PRIORITY_ORDER = (TaskPriority.HIGH, TaskPriority.NORMAL, TaskPriority.LOW)


class AgentTask(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    description: str
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = Field(default_factory=time.time)


class TaskQueue:
    def __init__(self) -> None:
        self._tasks: list[AgentTask] = []

    @property
    def tasks(self) -> list[AgentTask]:
        return list(self._tasks)

    def enqueue(self, description: str, priority: TaskPriority = TaskPriority.NORMAL) -> AgentTask:
        task = AgentTask(description=description, priority=priority)
        self._tasks.append(task)
        logger.debug(f"Task queued: {task.id} ({priority.value})")
        return task

    def dequeue(self) -> AgentTask | None:
        """Take the oldest pending task of the highest priority and mark it in progress."""
        for priority in _PRIORITY_ORDER:
            for task in self._tasks:
                if task.status is TaskStatus.PENDING and task.priority is priority:
                    task.status = TaskStatus.IN_PROGRESS
                    return task
        return None

    def update_status(self, task_id: str, status: TaskStatus) -> bool:
        for task in self._tasks:
            if task.id == task_id:
                task.status = status
                return True
        return False

    def remove(self, task_id: str) -> bool:
        before = len(self._tasks)
        self._tasks = [t for t in self._tasks if t.id != task_id]
        return len(self._tasks) < before

    def clear(self) -> None:
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
