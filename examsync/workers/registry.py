from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from examsync.domain.contracts import SyncAdapter
from examsync.domain.errors import UnknownTaskTypeError
from examsync.domain.lifecycle import PIPELINES, PipelineSpec
from examsync.domain.models import TaskType

AdapterFactory = Callable[[], SyncAdapter]


@dataclass(frozen=True)
class StageRunnerBinding:
    pipeline: PipelineSpec
    adapter: SyncAdapter


@dataclass
class AdapterRegistry:
    """Maps a task type to the adapter that migrates its source."""

    factories: dict[TaskType, AdapterFactory] = field(default_factory=dict)
    pipelines: dict[TaskType, PipelineSpec] = field(default_factory=lambda: dict(PIPELINES))

    def register(
        self,
        task_type: TaskType,
        factory: AdapterFactory,
        *,
        pipeline: PipelineSpec | None = None,
    ) -> None:
        self.factories[task_type] = factory
        if pipeline is not None:
            self.pipelines[task_type] = pipeline

    def registered(self) -> tuple[TaskType, ...]:
        return tuple(task_type for task_type in TaskType if task_type in self.factories)

    def build(self, task_type: TaskType) -> StageRunnerBinding:
        factory = self.factories.get(task_type)
        pipeline = self.pipelines.get(task_type)
        if factory is None or pipeline is None:
            raise UnknownTaskTypeError(f"No sync adapter registered for task type '{task_type}'")
        return StageRunnerBinding(pipeline=pipeline, adapter=factory())
