import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace

import pytest

from examsync.adapters.memory import InMemorySyncAdapter
from examsync.domain.errors import CorruptCheckpointError, DatastoreError, DomainInvariantError
from examsync.domain.lifecycle import PIPELINES, SYNC_LABEL, PipelineSpec, StageSpec
from examsync.domain.models import CanonicalId, SourceRow, TaskType
from examsync.domain.use_cases.tasks import deactivate_task
from examsync.repositories.stub import InMemoryTaskStore
from examsync.workers.engine import SchedulerEngine
from tests.unit.sync_seed import build_memory_adapter, seed_active_task

PAPER_ONLY = PIPELINES[TaskType.CHINAGWY_SYNC]
FENBI = PIPELINES[TaskType.FENBI_SYNC]


def _engine(
    store: InMemoryTaskStore,
    adapter: InMemorySyncAdapter,
    *,
    pipeline: PipelineSpec = PAPER_ONLY,
    window: int = 100,
) -> SchedulerEngine:
    return SchedulerEngine(store=store, adapter=adapter, pipeline=pipeline, window=window, run_id="run-test")


@pytest.mark.unit
def test_fresh_run_migrates_every_row_in_windows() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 251)})
        task = await seed_active_task(store)

        outcome = await _engine(store, adapter).run(task)

        assert outcome.status == "completed"
        assert adapter.canonical.count("paper") == 250
        assert adapter.source.unlinked("paper") == []
        assert [after for _, after, _ in adapter.extracts] == [0, 100, 200]
        stored = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert stored is not None
        assert stored.active is False
        assert stored.context == {"stage_name": "done", "cursor": 250, "total": 250}
        assert stored.run_count == 1

    asyncio.run(_run())


@pytest.mark.unit
def test_crash_mid_stage_resumes_from_persisted_cursor() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 251)})
        adapter.fail_on[("paper", 138)] = [DatastoreError("connection reset")]
        task = await seed_active_task(store)

        with pytest.raises(DatastoreError):
            await _engine(store, adapter).run(task)

        interrupted = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert interrupted is not None
        assert interrupted.context == {"stage_name": "sync_paper", "cursor": 137, "total": 250}
        assert adapter.canonical.count("paper") == 137

        outcome = await _engine(store, adapter).run(interrupted)

        assert outcome.status == "completed"
        assert adapter.extracts[2][1] == 137
        assert adapter.canonical.count("paper") == 250
        assert len(adapter.loads) == 250
        assert len(set(adapter.loads)) == 250
        finished = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert finished is not None
        assert finished.context == {"stage_name": "done", "cursor": 250, "total": 250}
        assert finished.run_count == 2

    asyncio.run(_run())


@pytest.mark.unit
def test_rerun_from_scratch_leaves_canonical_state_unchanged() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 31)})
        task = await seed_active_task(store)
        await _engine(store, adapter, window=7).run(task)
        canonical_before = {entity: dict(rows) for entity, rows in adapter.canonical.rows.items()}

        finished = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert finished is not None
        restarted = await store.update(task=finished, mutate=lambda current: replace(current, active=True, context=None))
        outcome = await _engine(store, adapter, window=7).run(restarted)

        assert outcome.status == "completed"
        assert adapter.canonical.rows == canonical_before
        assert len(adapter.loads) == 30

    asyncio.run(_run())


@pytest.mark.unit
def test_reactivating_done_pipeline_only_deactivates() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 6)})
        task = await seed_active_task(store)
        await _engine(store, adapter).run(task)

        finished = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert finished is not None
        reactivated = await store.update(task=finished, mutate=lambda current: replace(current, active=True))
        outcome = await _engine(store, adapter).run(reactivated)

        assert outcome.status == "completed"
        assert outcome.detail == "pipeline already done"
        assert outcome.task is not None
        assert outcome.task.active is False
        assert outcome.task.context == finished.context
        assert len(adapter.loads) == 5

    asyncio.run(_run())


@pytest.mark.unit
def test_lost_linkback_is_replayed_onto_the_same_canonical_row() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 11)})
        adapter.fail_linkback_on.add(("paper", 5))
        task = await seed_active_task(store)

        with pytest.raises(DatastoreError):
            await _engine(store, adapter).run(task)

        first_id = adapter.canonical.keys["paper"][("test", "paper", 5)]
        assert adapter.source.linkback("paper", 5) is None
        interrupted = await store.get(task_type=TaskType.CHINAGWY_SYNC)
        assert interrupted is not None
        assert interrupted.context is not None
        assert interrupted.context["cursor"] == 4

        await _engine(store, adapter).run(interrupted)

        assert adapter.canonical.count("paper") == 10
        assert adapter.source.linkback("paper", 5) == first_id

    asyncio.run(_run())


@pytest.mark.unit
def test_cursor_is_monotonic_and_stages_move_forward() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"label": range(1, 6), "exam_category": range(1, 8), "paper": range(1, 13)})
        task = await seed_active_task(store, task_type=TaskType.FENBI_SYNC)

        outcome = await _engine(store, adapter, pipeline=FENBI, window=3).run(task)

        assert outcome.status == "completed"
        checkpoints = [write.context for write in store.writes if write.context]
        stages: list[str] = []
        last_cursor: dict[str, int] = {}
        for context in checkpoints:
            stage = str(context["stage_name"])
            cursor = int(context["cursor"])  # type: ignore[call-overload]
            if not stages or stages[-1] != stage:
                stages.append(stage)
            assert cursor >= last_cursor.get(stage, 0)
            last_cursor[stage] = cursor
        assert stages == ["sync_label", "sync_category", "sync_paper", "done"]
        assert last_cursor["sync_label"] == 5
        assert last_cursor["sync_category"] == 7
        assert last_cursor["sync_paper"] == 12

    asyncio.run(_run())


@pytest.mark.unit
def test_stage_without_rows_is_skipped() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"exam_category": range(1, 3), "paper": range(1, 4)})
        task = await seed_active_task(store, task_type=TaskType.FENBI_SYNC)

        outcome = await _engine(store, adapter, pipeline=FENBI).run(task)

        assert outcome.status == "completed"
        assert {"stage_name": "sync_label", "cursor": 0, "total": 0} in [write.context for write in store.writes]
        assert all(entity != "label" for entity, _, _ in adapter.extracts)
        assert adapter.canonical.count("exam_category") == 2
        assert adapter.canonical.count("paper") == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_linked_tail_rows_complete_the_stage() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 11)})
        for row_id in (8, 9, 10):
            adapter.source.entities["paper"][row_id].target_id = 900 + row_id
        task = await seed_active_task(store)

        outcome = await _engine(store, adapter).run(task)

        assert outcome.status == "completed"
        assert len(adapter.loads) == 7
        assert outcome.task is not None
        assert outcome.task.context == {"stage_name": "done", "cursor": 10, "total": 10}

    asyncio.run(_run())


@pytest.mark.unit
def test_count_basis_stage_counts_processed_rows() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"label": range(1, 6)})
        adapter.source.entities["label"][2].target_id = 77
        pipeline = PipelineSpec(task_type=TaskType.HUATU_SYNC, stages=(SYNC_LABEL,))
        task = await seed_active_task(store, task_type=TaskType.HUATU_SYNC)

        outcome = await _engine(store, adapter, pipeline=pipeline, window=2).run(task)

        assert outcome.status == "completed"
        label_checkpoints = [write.context for write in store.writes if write.context and write.context["stage_name"] == "sync_label"]
        cursors = [context["cursor"] for context in label_checkpoints]
        assert cursors == [0, 1, 2, 3, 4, 5]
        assert all(after == 0 for _, after, _ in adapter.extracts)

    asyncio.run(_run())


@dataclass
class _ForgetfulAdapter(InMemorySyncAdapter):
    async def transform_and_load(self, *, stage: StageSpec, row: SourceRow) -> CanonicalId:
        return self.canonical.upsert(stage.entity, key=(row.id,), fields={})


@pytest.mark.unit
def test_count_basis_without_linkback_fails_instead_of_looping() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        seeded = build_memory_adapter({"label": range(1, 6)})
        adapter = _ForgetfulAdapter(source=seeded.source, canonical=seeded.canonical)
        pipeline = PipelineSpec(task_type=TaskType.HUATU_SYNC, stages=(SYNC_LABEL,))
        task = await seed_active_task(store, task_type=TaskType.HUATU_SYNC)

        with pytest.raises(DomainInvariantError, match="returned twice"):
            await _engine(store, adapter, pipeline=pipeline, window=2).run(task)

    asyncio.run(_run())


@dataclass
class _StuckAdapter(InMemorySyncAdapter):
    async def extract(
        self,
        *,
        stage: StageSpec,
        after: int,
        window: int,
        upper_bound: int | None,
    ) -> Sequence[SourceRow]:
        return [SourceRow(id=1)]


@pytest.mark.unit
def test_row_at_or_below_cursor_is_rejected() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        seeded = build_memory_adapter({"paper": range(1, 4)})
        adapter = _StuckAdapter(source=seeded.source, canonical=seeded.canonical)
        task = await seed_active_task(store)

        with pytest.raises(DomainInvariantError, match="at or below cursor"):
            await _engine(store, adapter).run(task)

    asyncio.run(_run())


@pytest.mark.unit
@pytest.mark.parametrize(
    "context",
    [
        {"stage_name": "sync_bogus", "cursor": 0, "total": 3},
        {"stage_name": "sync_paper", "cursor": -1, "total": 3},
        {"stage_name": "sync_paper", "cursor": "abc", "total": 3},
        {"stage_name": "sync_paper", "cursor": 0, "total": 3, "extra": True},
    ],
)
def test_corrupt_checkpoint_is_fatal(context: dict[str, object]) -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 4)})
        task = await seed_active_task(store, context=context)

        with pytest.raises(CorruptCheckpointError):
            await _engine(store, adapter).run(task)

        assert adapter.loads == []

    asyncio.run(_run())


@dataclass
class _DeactivatingAdapter(InMemorySyncAdapter):
    store: InMemoryTaskStore | None = None
    deactivate_at: int = 3

    async def transform_and_load(self, *, stage: StageSpec, row: SourceRow) -> CanonicalId:
        canonical_id = await super().transform_and_load(stage=stage, row=row)
        if row.id == self.deactivate_at and self.store is not None:
            await deactivate_task(self.store, task_type=TaskType.CHINAGWY_SYNC)
        return canonical_id


@pytest.mark.unit
def test_external_deactivation_cancels_the_run() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        seeded = build_memory_adapter({"paper": range(1, 11)})
        adapter = _DeactivatingAdapter(source=seeded.source, canonical=seeded.canonical, store=store)
        task = await seed_active_task(store)

        outcome = await _engine(store, adapter).run(task)

        assert outcome.status == "cancelled"
        assert outcome.task is not None
        assert outcome.task.active is False
        assert outcome.task.context is not None
        assert outcome.task.context["cursor"] == 2
        assert adapter.canonical.count("paper") == 3

    asyncio.run(_run())


@pytest.mark.unit
def test_inactive_task_is_skipped_without_writes() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 4)})
        task = await store.get_or_create(task_type=TaskType.CHINAGWY_SYNC)

        outcome = await _engine(store, adapter).run(task)

        assert outcome.status == "skipped"
        assert store.writes == []
        assert adapter.extracts == []

    asyncio.run(_run())


@pytest.mark.unit
def test_non_positive_window_is_rejected() -> None:
    async def _run() -> None:
        store = InMemoryTaskStore()
        adapter = build_memory_adapter({"paper": range(1, 4)})
        task = await seed_active_task(store)

        with pytest.raises(DomainInvariantError, match="window"):
            await _engine(store, adapter, window=0).run(task)

    asyncio.run(_run())
