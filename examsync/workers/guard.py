from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import threading

from examsync.domain.models import TaskType


@dataclass(frozen=True)
class RunningTask:
    task_type: TaskType
    run_id: str
    started_at: datetime


@dataclass
class ConcurrencyGuard:
    """Process-local registry allowing one runner per task type.

    Advisory only: checkpoint idempotence remains the real protection against
    overlapping runs. A rejected registration means the trigger is dropped.
    """

    _running: dict[TaskType, RunningTask] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register_if_not_running(self, task_type: TaskType, *, run_id: str) -> bool:
        with self._lock:
            if task_type in self._running:
                return False
            self._running[task_type] = RunningTask(
                task_type=task_type,
                run_id=run_id,
                started_at=datetime.now(tz=UTC),
            )
            return True

    def is_running(self, task_type: TaskType) -> bool:
        with self._lock:
            return task_type in self._running

    def release(self, task_type: TaskType, *, run_id: str) -> None:
        with self._lock:
            current = self._running.get(task_type)
            if current is not None and current.run_id == run_id:
                del self._running[task_type]

    def running(self) -> list[RunningTask]:
        with self._lock:
            return sorted(self._running.values(), key=lambda item: item.started_at)
