from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from examsync.domain.contracts import TaskMutation
from examsync.domain.errors import OptimisticLockError
from examsync.domain.models import TaskSnapshot, TaskType


@dataclass
class InMemoryTaskStore:
    """Non-network task store with the same optimistic-update semantics as Postgres."""

    tasks: dict[TaskType, TaskSnapshot] = field(default_factory=dict)
    writes: list[TaskSnapshot] = field(default_factory=list)
    next_task_id: int = 1

    async def get(self, *, task_type: TaskType) -> TaskSnapshot | None:
        return self.tasks.get(task_type)

    async def get_or_create(self, *, task_type: TaskType) -> TaskSnapshot:
        existing = self.tasks.get(task_type)
        if existing is not None:
            return existing
        now = datetime.now(tz=UTC)
        created = TaskSnapshot(
            id=self.next_task_id,
            version=1,
            task_type=task_type,
            active=False,
            context=None,
            run_count=0,
            error_cause=None,
            error_count=0,
            created=now,
            modified=now,
        )
        self.next_task_id += 1
        self.tasks[task_type] = created
        return created

    async def list_tasks(self) -> list[TaskSnapshot]:
        return sorted(self.tasks.values(), key=lambda task: task.id)

    async def list_active(self) -> list[TaskSnapshot]:
        return [task for task in await self.list_tasks() if task.active]

    async def update(self, *, task: TaskSnapshot, mutate: TaskMutation) -> TaskSnapshot:
        stored = self.tasks.get(task.task_type)
        if stored is None or stored.version != task.version:
            raise OptimisticLockError(task_type=task.task_type, version=task.version)

        mutated = mutate(stored)
        updated = replace(
            mutated,
            id=stored.id,
            task_type=stored.task_type,
            version=stored.version + 1,
            created=stored.created,
            modified=datetime.now(tz=UTC),
        )
        self.tasks[task.task_type] = updated
        self.writes.append(updated)
        return updated
