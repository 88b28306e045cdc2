"""In-memory task-status registry shared by background units and pollers.

Every mutation replaces the whole record under one lock, so a poller that
observes a terminal status always sees its result/error populated. Records
live only as long as the process.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from .models import TERMINAL_STATUSES, PlanKind, TaskStatus, TaskStatusRecord

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Thread-safe map of task id -> TaskStatusRecord."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskStatusRecord] = {}
        self._lock = threading.Lock()

    def create(self, kind: PlanKind, *, message: str = "") -> TaskStatusRecord:
        now = datetime.now(tz=UTC)
        record = TaskStatusRecord(
            task_id=str(uuid.uuid4()),
            kind=kind,
            status="pending",
            progress=0,
            message=message,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    def get(self, task_id: str) -> TaskStatusRecord | None:
        with self._lock:
            record = self._tasks.get(task_id)
            return record.model_copy(deep=True) if record is not None else None

    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus,
        progress: int,
        message: str,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskStatusRecord | None:
        """Overwrite a record's mutable fields; unknown ids are ignored."""
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            if current.status in TERMINAL_STATUSES:
                logger.debug(
                    "task_registry event=ignored_update task_id=%s status=%s requested=%s",
                    task_id,
                    current.status,
                    status,
                )
                return current.model_copy(deep=True)

            updated = current.model_copy(
                update={
                    "status": status,
                    "progress": max(current.progress, min(max(progress, 0), 100)),
                    "message": message,
                    "error": error if status == "failed" else None,
                    "result": result if status == "completed" else None,
                    "updated_at": datetime.now(tz=UTC),
                },
                deep=True,
            )
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
