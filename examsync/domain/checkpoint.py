"""Checkpoint protocol stored in ``schedule_task.context``.

A checkpoint records which stage of a pipeline is active, the last processed
source position (``cursor``) and the stage bound computed at stage entry
(``total``). An empty context means the pipeline has not started yet; any
other payload must validate against the pipeline it belongs to.
"""

from __future__ import annotations

from dataclasses import replace
import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from examsync.domain.contracts import TaskStore
from examsync.domain.errors import CorruptCheckpointError
from examsync.domain.lifecycle import DONE_STAGE, PipelineSpec
from examsync.domain.models import TaskSnapshot


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    stage_name: str = Field(min_length=1)
    cursor: int = Field(ge=0)
    total: int

    @property
    def is_done(self) -> bool:
        return self.stage_name == DONE_STAGE

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, self.cursor * 100 // self.total)

    def advance(self, row_id: int) -> Checkpoint:
        return self.model_copy(update={"cursor": max(self.cursor, row_id)})

    def increase(self, delta: int = 1) -> Checkpoint:
        return self.model_copy(update={"cursor": self.cursor + max(delta, 0)})

    def complete(self) -> Checkpoint:
        return self.model_copy(update={"cursor": max(self.cursor, self.total)})

    def to_context(self) -> dict[str, object]:
        return self.model_dump()


def initial_checkpoint(*, stage_name: str, total: int) -> Checkpoint:
    return Checkpoint(stage_name=stage_name, cursor=0, total=total)


def done_checkpoint(last: Checkpoint) -> Checkpoint:
    return Checkpoint(stage_name=DONE_STAGE, cursor=last.cursor, total=last.total)


def crossed_percent(old: Checkpoint, new: Checkpoint) -> bool:
    return old.percent != new.percent


def load_checkpoint(task: TaskSnapshot, pipeline: PipelineSpec) -> Checkpoint | None:
    context = task.context
    if context is None or context == {}:
        return None

    try:
        if isinstance(context, str):
            checkpoint = Checkpoint.model_validate_json(context)
        else:
            checkpoint = Checkpoint.model_validate(context)
    except ValidationError as exc:
        raise CorruptCheckpointError(
            f"checkpoint of {task.task_type} does not parse: {_short_payload(context)}"
        ) from exc

    if checkpoint.stage_name != DONE_STAGE and checkpoint.stage_name not in pipeline.stage_names:
        raise CorruptCheckpointError(
            f"checkpoint of {task.task_type} names unknown stage '{checkpoint.stage_name}'"
        )
    return checkpoint


async def save_checkpoint(
    store: TaskStore,
    *,
    task: TaskSnapshot,
    checkpoint: Checkpoint,
    active: bool | None = None,
) -> TaskSnapshot:
    context = checkpoint.to_context()

    def _mutate(current: TaskSnapshot) -> TaskSnapshot:
        if active is None:
            return replace(current, context=context)
        return replace(current, context=context, active=active)

    return await store.update(task=task, mutate=_mutate)


def _short_payload(context: object, limit: int = 200) -> str:
    rendered = context if isinstance(context, str) else json.dumps(context, default=str)
    if len(rendered) > limit:
        return rendered[:limit] + "..."
    return rendered
