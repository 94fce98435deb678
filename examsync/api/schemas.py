from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from examsync.domain.models import TaskType


class ErrorResponse(BaseModel):
    detail: str


class DispatcherMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    triggers_total: int
    admitted_total: int
    idle_ticks_total: int
    errors_total: int
    recovered_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    dispatcher_enabled: bool
    dispatcher_ready: bool
    dispatcher_metrics: DispatcherMetrics
    running_task_types: list[TaskType] = Field(default_factory=list)


class CheckpointView(BaseModel):
    stage_name: str
    cursor: int
    total: int
    percent: int


class TaskResponse(BaseModel):
    task_type: TaskType
    description: str
    exists: bool = True
    id: int | None = None
    version: int | None = None
    active: bool = False
    running: bool = False
    checkpoint: CheckpointView | None = None
    checkpoint_error: str | None = None
    run_count: int = 0
    error_cause: str | None = None
    error_count: int = 0
    created: datetime | None = None
    modified: datetime | None = None


class TaskListResponse(BaseModel):
    items: list[TaskResponse]
