from __future__ import annotations

from examsync.api.handlers.deps import ApiDeps
from examsync.api.schemas import CheckpointView, TaskListResponse, TaskResponse
from examsync.domain.checkpoint import load_checkpoint
from examsync.domain.errors import CorruptCheckpointError
from examsync.domain.lifecycle import PIPELINES
from examsync.domain.models import TASK_TYPE_DESCRIPTIONS, TaskSnapshot, TaskType
from examsync.domain.use_cases.tasks import activate_task, deactivate_task, reset_task


def task_response(task: TaskSnapshot, *, running: bool) -> TaskResponse:
    checkpoint_view: CheckpointView | None = None
    checkpoint_error: str | None = None
    try:
        checkpoint = load_checkpoint(task, PIPELINES[task.task_type])
    except CorruptCheckpointError as exc:
        checkpoint_error = str(exc)
    else:
        if checkpoint is not None:
            checkpoint_view = CheckpointView(
                stage_name=checkpoint.stage_name,
                cursor=checkpoint.cursor,
                total=checkpoint.total,
                percent=checkpoint.percent,
            )

    return TaskResponse(
        task_type=task.task_type,
        description=TASK_TYPE_DESCRIPTIONS[task.task_type],
        id=task.id,
        version=task.version,
        active=task.active,
        running=running,
        checkpoint=checkpoint_view,
        checkpoint_error=checkpoint_error,
        run_count=task.run_count,
        error_cause=task.error_cause,
        error_count=task.error_count,
        created=task.created,
        modified=task.modified,
    )


async def list_tasks_handler(*, api_deps: ApiDeps) -> TaskListResponse:
    """Every known task type; rows not created yet are reported with ``exists=False``."""
    stored = {task.task_type: task for task in await api_deps.store.list_tasks()}
    items: list[TaskResponse] = []
    for task_type in TaskType:
        task = stored.get(task_type)
        if task is None:
            items.append(
                TaskResponse(
                    task_type=task_type,
                    description=TASK_TYPE_DESCRIPTIONS[task_type],
                    exists=False,
                )
            )
            continue
        items.append(task_response(task, running=api_deps.guard.is_running(task_type)))
    return TaskListResponse(items=items)


async def get_task_handler(*, task_type: TaskType, api_deps: ApiDeps) -> TaskResponse:
    task = await api_deps.store.get_or_create(task_type=task_type)
    return task_response(task, running=api_deps.guard.is_running(task_type))


async def activate_task_handler(*, task_type: TaskType, api_deps: ApiDeps) -> TaskResponse:
    task = await activate_task(api_deps.store, api_deps.bus, task_type=task_type)
    return task_response(task, running=api_deps.guard.is_running(task_type))


async def deactivate_task_handler(*, task_type: TaskType, api_deps: ApiDeps) -> TaskResponse:
    task = await deactivate_task(api_deps.store, task_type=task_type)
    return task_response(task, running=api_deps.guard.is_running(task_type))


async def reset_task_handler(*, task_type: TaskType, api_deps: ApiDeps) -> TaskResponse:
    task = await reset_task(api_deps.store, task_type=task_type)
    return task_response(task, running=api_deps.guard.is_running(task_type))
