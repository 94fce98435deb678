from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from examsync.domain.errors import DomainInvariantError
from examsync.domain.models import TaskType

DONE_STAGE = "done"


class CursorBasis(StrEnum):
    # cursor = last migrated source id, total = max(id)
    ID = "id"
    # cursor = processed row count, total = count(*)
    COUNT = "count"


@dataclass(frozen=True)
class StageSpec:
    name: str
    entity: str
    cursor_basis: CursorBasis = CursorBasis.ID


@dataclass(frozen=True)
class PipelineSpec:
    task_type: TaskType
    stages: tuple[StageSpec, ...]

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    @property
    def first_stage(self) -> StageSpec:
        return self.stages[0]

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise DomainInvariantError(f"stage '{name}' is not part of the {self.task_type} pipeline")

    def next_stage(self, name: str) -> StageSpec | None:
        names = self.stage_names
        index = names.index(self.stage(name).name)
        if index + 1 < len(names):
            return self.stages[index + 1]
        return None


SYNC_LABEL = StageSpec(name="sync_label", entity="label", cursor_basis=CursorBasis.COUNT)
SYNC_CATEGORY = StageSpec(name="sync_category", entity="exam_category", cursor_basis=CursorBasis.ID)
SYNC_PAPER = StageSpec(name="sync_paper", entity="paper", cursor_basis=CursorBasis.ID)


PIPELINES: dict[TaskType, PipelineSpec] = {
    TaskType.FENBI_SYNC: PipelineSpec(
        task_type=TaskType.FENBI_SYNC,
        stages=(SYNC_LABEL, SYNC_CATEGORY, SYNC_PAPER),
    ),
    TaskType.OFFCN_SYNC: PipelineSpec(
        task_type=TaskType.OFFCN_SYNC,
        stages=(SYNC_LABEL, SYNC_PAPER),
    ),
    TaskType.CHINAGWY_SYNC: PipelineSpec(
        task_type=TaskType.CHINAGWY_SYNC,
        stages=(SYNC_PAPER,),
    ),
    TaskType.HUATU_SYNC: PipelineSpec(
        task_type=TaskType.HUATU_SYNC,
        stages=(SYNC_LABEL, SYNC_PAPER),
    ),
}


def allowed_transitions(pipeline: PipelineSpec) -> dict[str, set[str]]:
    """Forward-only stage graph: each stage may only move to its successor."""
    names = list(pipeline.stage_names) + [DONE_STAGE]
    transitions: dict[str, set[str]] = {name: {following} for name, following in zip(names, names[1:])}
    transitions[DONE_STAGE] = set()
    return transitions


ALLOWED_TRANSITIONS: dict[TaskType, dict[str, set[str]]] = {
    task_type: allowed_transitions(pipeline) for task_type, pipeline in PIPELINES.items()
}


def ensure_transition(pipeline: PipelineSpec, *, from_stage: str, to_stage: str) -> None:
    allowed = allowed_transitions(pipeline)
    if to_stage not in allowed.get(from_stage, set()):
        raise DomainInvariantError(f"invalid stage transition: {from_stage} -> {to_stage}")
