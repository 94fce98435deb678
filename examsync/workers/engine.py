from __future__ import annotations

from dataclasses import dataclass, replace
import logging

from examsync.domain.checkpoint import (
    Checkpoint,
    crossed_percent,
    done_checkpoint,
    initial_checkpoint,
    load_checkpoint,
    save_checkpoint,
)
from examsync.domain.contracts import SyncAdapter, TaskStore
from examsync.domain.errors import DomainInvariantError, OptimisticLockError
from examsync.domain.lifecycle import DONE_STAGE, CursorBasis, PipelineSpec, StageSpec, ensure_transition
from examsync.domain.models import RunOutcome, TaskSnapshot

DEFAULT_WINDOW = 100
logger = logging.getLogger("sync")


@dataclass
class SchedulerEngine:
    """Drives one task through its pipeline stages, persisting every step.

    Stages run strictly in pipeline order. Each migrated row advances the
    cursor and is followed by a checkpoint write, so a crash replays at most
    the row that was in flight. A stage ends when extraction yields no more
    rows below its total; the next stage then gets a freshly computed total.
    """

    store: TaskStore
    adapter: SyncAdapter
    pipeline: PipelineSpec
    window: int = DEFAULT_WINDOW
    run_id: str = ""

    async def run(self, task: TaskSnapshot) -> RunOutcome:
        if self.window <= 0:
            raise DomainInvariantError("extraction window must be positive")
        if not task.active:
            self._log("task inactive, activation skipped", task=task)
            return RunOutcome(task_type=task.task_type, status="skipped", detail="task is not active", task=task)

        checkpoint = load_checkpoint(task, self.pipeline)
        try:
            task = await self.store.update(task=task, mutate=_bump_run_count)

            if checkpoint is not None and checkpoint.is_done:
                task = await self.store.update(task=task, mutate=_deactivate)
                self._log("pipeline already done, task deactivated", task=task, checkpoint=checkpoint)
                return RunOutcome(
                    task_type=task.task_type,
                    status="completed",
                    detail="pipeline already done",
                    task=task,
                )

            if checkpoint is None:
                checkpoint = await self._enter_stage(self.pipeline.first_stage)
                task = await save_checkpoint(self.store, task=task, checkpoint=checkpoint)
                self._log("pipeline started", task=task, checkpoint=checkpoint)
            else:
                self._log("pipeline resumed", task=task, checkpoint=checkpoint)

            while True:
                stage = self.pipeline.stage(checkpoint.stage_name)
                task, checkpoint = await self._run_stage(task, stage, checkpoint)

                following = self.pipeline.next_stage(stage.name)
                if following is None:
                    break
                ensure_transition(self.pipeline, from_stage=stage.name, to_stage=following.name)
                checkpoint = await self._enter_stage(following)
                task = await save_checkpoint(self.store, task=task, checkpoint=checkpoint)
                self._log("stage transition", task=task, checkpoint=checkpoint)

            ensure_transition(self.pipeline, from_stage=checkpoint.stage_name, to_stage=DONE_STAGE)
            final = done_checkpoint(checkpoint)
            task = await save_checkpoint(self.store, task=task, checkpoint=final, active=False)
            self._log("pipeline completed", task=task, checkpoint=final)
            return RunOutcome(task_type=task.task_type, status="completed", detail="pipeline completed", task=task)
        except OptimisticLockError:
            current = await self.store.get(task_type=task.task_type)
            if current is not None and not current.active:
                self._log("task deactivated externally, run stopped", task=current)
                return RunOutcome(
                    task_type=current.task_type,
                    status="cancelled",
                    detail="task was deactivated while running",
                    task=current,
                )
            raise

    async def _enter_stage(self, stage: StageSpec) -> Checkpoint:
        total = await self.adapter.compute_total(stage=stage)
        return initial_checkpoint(stage_name=stage.name, total=total)

    async def _run_stage(
        self,
        task: TaskSnapshot,
        stage: StageSpec,
        checkpoint: Checkpoint,
    ) -> tuple[TaskSnapshot, Checkpoint]:
        if checkpoint.total <= 0:
            self._log("stage skipped, nothing to sync", task=task, checkpoint=checkpoint)
            return task, checkpoint

        by_id = stage.cursor_basis == CursorBasis.ID
        previous_page: tuple[int, ...] = ()
        while not (by_id and checkpoint.cursor >= checkpoint.total):
            rows = await self.adapter.extract(
                stage=stage,
                after=checkpoint.cursor if by_id else 0,
                window=self.window,
                upper_bound=checkpoint.total if by_id else None,
            )
            if not rows:
                break

            page = tuple(row.id for row in rows)
            if not by_id and page == previous_page:
                raise DomainInvariantError(f"{stage.name} page was returned twice; completion markers are not persisted")
            previous_page = page

            for row in rows:
                if by_id and row.id <= checkpoint.cursor:
                    raise DomainInvariantError(
                        f"{stage.name} extracted row#{row.id} at or below cursor {checkpoint.cursor}"
                    )
                await self.adapter.transform_and_load(stage=stage, row=row)
                advanced = checkpoint.advance(row.id) if by_id else checkpoint.increase(1)
                task = await save_checkpoint(self.store, task=task, checkpoint=advanced)
                if crossed_percent(checkpoint, advanced):
                    self._log("sync progress", task=task, checkpoint=advanced)
                checkpoint = advanced

        # Linkback-complete counts as cursor-complete for termination.
        completed = checkpoint.complete()
        if completed != checkpoint:
            task = await save_checkpoint(self.store, task=task, checkpoint=completed)
            checkpoint = completed
        self._log("stage finished", task=task, checkpoint=checkpoint)
        return task, checkpoint

    def _log(
        self,
        message: str,
        *,
        task: TaskSnapshot,
        checkpoint: Checkpoint | None = None,
    ) -> None:
        extra: dict[str, object] = {"run_id": self.run_id, "task_type": task.task_type.value, "version": task.version}
        if checkpoint is not None:
            extra.update(
                {
                    "stage": checkpoint.stage_name,
                    "cursor": checkpoint.cursor,
                    "total": checkpoint.total,
                    "percent": checkpoint.percent,
                }
            )
        logger.info(message, extra=extra)


def _bump_run_count(current: TaskSnapshot) -> TaskSnapshot:
    return replace(current, run_count=current.run_count + 1)


def _deactivate(current: TaskSnapshot) -> TaskSnapshot:
    return replace(current, active=False)
