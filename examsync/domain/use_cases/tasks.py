from __future__ import annotations

from dataclasses import replace
import logging

from examsync.domain.contracts import TaskStore, TriggerBus
from examsync.domain.dto import TriggerMessage
from examsync.domain.errors import DomainInvariantError
from examsync.domain.models import TaskSnapshot, TaskType

logger = logging.getLogger("runtime")


async def activate_task(store: TaskStore, bus: TriggerBus, *, task_type: TaskType) -> TaskSnapshot:
    """Mark the task active and publish a trigger.

    The checkpoint is kept, so an activation after a failure or a stop
    resumes where the previous run left off.
    """
    task = await store.get_or_create(task_type=task_type)
    if not task.active:
        task = await store.update(task=task, mutate=lambda current: replace(current, active=True))
    await bus.publish(payload=TriggerMessage.from_task(task).to_json())
    logger.info("task activated", extra={"task_type": task_type.value, "version": task.version})
    return task


async def deactivate_task(store: TaskStore, *, task_type: TaskType) -> TaskSnapshot:
    task = await store.get_or_create(task_type=task_type)
    if not task.active:
        return task
    task = await store.update(task=task, mutate=lambda current: replace(current, active=False))
    logger.info("task deactivated", extra={"task_type": task_type.value, "version": task.version})
    return task


async def reset_task(store: TaskStore, *, task_type: TaskType) -> TaskSnapshot:
    """Drop the checkpoint and error annotations so the next activation starts fresh."""
    task = await store.get_or_create(task_type=task_type)
    if task.active:
        raise DomainInvariantError(f"task {task_type} is active; deactivate it before reset")
    task = await store.update(
        task=task,
        mutate=lambda current: replace(current, context=None, error_cause=None, error_count=0),
    )
    logger.info("task checkpoint reset", extra={"task_type": task_type.value, "version": task.version})
    return task
