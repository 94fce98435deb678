from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from examsync.domain.models import TaskSnapshot, TaskType


class TriggerMessage(BaseModel):
    """Payload published on the ``task`` channel: the full task row."""

    model_config = ConfigDict(frozen=True)

    id: int
    version: int
    task_type: TaskType
    active: bool
    context: dict[str, object] | None = None
    run_count: int = 0
    error_cause: str | None = None
    error_count: int = 0
    created: datetime | None = None
    modified: datetime | None = None

    @classmethod
    def from_task(cls, task: TaskSnapshot) -> TriggerMessage:
        return cls(
            id=task.id,
            version=task.version,
            task_type=task.task_type,
            active=task.active,
            context=task.context,
            run_count=task.run_count,
            error_cause=task.error_cause,
            error_count=task.error_count,
            created=task.created,
            modified=task.modified,
        )

    @classmethod
    def parse(cls, payload: str) -> TriggerMessage:
        return cls.model_validate_json(payload)

    def to_json(self) -> str:
        return self.model_dump_json()
