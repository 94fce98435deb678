from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Literal

from examsync.domain.error_taxonomy import ErrorCode
from examsync.domain.errors import UnknownTaskTypeError

CanonicalId = int


# Closed set of synchronization jobs.
#
# IMPORTANT:
# - Keep this enum synchronized with PIPELINES in examsync/domain/lifecycle.py.
# - Keep this enum synchronized with the task_type CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class TaskType(StrEnum):
    FENBI_SYNC = "fenbi_sync"
    OFFCN_SYNC = "offcn_sync"
    CHINAGWY_SYNC = "chinagwy_sync"
    HUATU_SYNC = "huatu_sync"


TASK_TYPE_DESCRIPTIONS: dict[TaskType, str] = {
    TaskType.FENBI_SYNC: "Sync labels, categories and papers from the fenbi source",
    TaskType.OFFCN_SYNC: "Sync labels and papers from the offcn source",
    TaskType.CHINAGWY_SYNC: "Sync papers from the chinagwy source",
    TaskType.HUATU_SYNC: "Sync labels and papers from the huatu source",
}


def parse_task_type(value: str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as exc:
        supported = ", ".join(item.value for item in TaskType)
        raise UnknownTaskTypeError(f"Unsupported task type '{value}'. Supported: {supported}") from exc


@dataclass(frozen=True)
class TaskSnapshot:
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


@dataclass(frozen=True)
class SourceRow:
    id: int
    payload: dict[str, object] = field(default_factory=dict)


RunStatus = Literal["completed", "failed", "cancelled", "skipped"]


@dataclass(frozen=True)
class RunOutcome:
    task_type: TaskType
    status: RunStatus
    detail: str = ""
    error_code: ErrorCode | None = None
    task: TaskSnapshot | None = None
