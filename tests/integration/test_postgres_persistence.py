import asyncio
from dataclasses import replace

import pytest

from examsync.adapters.legacy import PostgresLegacyAdapter
from examsync.adapters.mapping import SOURCE_MAPPINGS
from examsync.clients.stub import StubEmbeddingClient
from examsync.domain.dto import TriggerMessage
from examsync.domain.errors import OptimisticLockError
from examsync.domain.lifecycle import PIPELINES
from examsync.domain.models import TaskType
from examsync.repositories.postgres import AsyncpgPoolManager, PostgresTaskStore, PostgresTriggerBus
from examsync.workers.engine import SchedulerEngine
from tests.integration.postgres_test_utils import (
    apply_down,
    apply_legacy_schema,
    apply_up,
    legacy_dsn,
    require_postgres,
    reset_public_schema,
)


@pytest.mark.integration
def test_migration_up_down_up_contract() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await reset_public_schema(dsn=dsn)
        await apply_up(dsn=dsn)
        manager = AsyncpgPoolManager(dsn=dsn)
        await manager.startup()
        try:
            store = PostgresTaskStore(pool_manager=manager)
            assert await store.get(task_type=TaskType.FENBI_SYNC) is None
        finally:
            await manager.shutdown()

        await apply_down(dsn=dsn)
        await apply_up(dsn=dsn)

    asyncio.run(_run())


@pytest.mark.integration
def test_optimistic_update_rejects_stale_version() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await reset_public_schema(dsn=dsn)
        await apply_up(dsn=dsn)
        manager = AsyncpgPoolManager(dsn=dsn)
        await manager.startup()
        store = PostgresTaskStore(pool_manager=manager)
        try:
            created, duplicate = await asyncio.gather(
                store.get_or_create(task_type=TaskType.OFFCN_SYNC),
                store.get_or_create(task_type=TaskType.OFFCN_SYNC),
            )
            assert created.id == duplicate.id

            context = {"stage_name": "sync_label", "cursor": 4, "total": 9}
            updated = await store.update(task=created, mutate=lambda current: replace(current, active=True, context=context))
            assert updated.version == created.version + 1
            assert updated.context == context

            with pytest.raises(OptimisticLockError):
                await store.update(task=created, mutate=lambda current: replace(current, active=False))

            stored = await store.get(task_type=TaskType.OFFCN_SYNC)
            assert stored is not None
            assert stored.active is True
            assert [task.task_type for task in await store.list_active()] == [TaskType.OFFCN_SYNC]
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_trigger_bus_delivers_notifications() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await reset_public_schema(dsn=dsn)
        await apply_up(dsn=dsn)
        manager = AsyncpgPoolManager(dsn=dsn)
        await manager.startup()
        bus = PostgresTriggerBus(pool_manager=manager)
        await bus.startup()
        try:
            store = PostgresTaskStore(pool_manager=manager)
            task = await store.get_or_create(task_type=TaskType.HUATU_SYNC)
            await bus.publish(payload=TriggerMessage.from_task(task).to_json())

            payload = await bus.next_message(timeout_seconds=5)

            assert payload is not None
            assert TriggerMessage.parse(payload).task_type == TaskType.HUATU_SYNC
            assert await bus.next_message(timeout_seconds=0.05) is None
        finally:
            await bus.shutdown()
            await manager.shutdown()

    asyncio.run(_run())


async def _seed_fenbi_source(*, dsn: str) -> None:
    manager = AsyncpgPoolManager(dsn=legacy_dsn(dsn))
    await manager.startup()
    try:
        async with manager.acquire_pool().acquire() as conn:
            await conn.executemany(
                "INSERT INTO label (id, from_ty, extra) VALUES ($1, 'fenbi', $2)",
                [
                    (1, {"name": "行测"}),
                    (2, {"name": "言语理解", "parent": {"name": "行测"}}),
                    (3, {"name": "数量关系", "parent": {"name": "行测"}}),
                ],
            )
            await conn.executemany(
                "INSERT INTO exam_category (id, from_ty, extra) VALUES ($1, 'fenbi', $2)",
                [
                    (10, {"name": "公务员", "prefix": "gwy"}),
                    (11, {"name": "国考", "prefix": "gwy.gk", "parent": {"prefix": "gwy"}}),
                ],
            )
            await conn.executemany(
                "INSERT INTO paper (id, from_ty, label_id, extra) VALUES ($1, 'fenbi', $2, $3)",
                [
                    (100, 2, {"name": "2021 国考真题", "date": "2021-11-28"}),
                    (101, 3, {"name": "2022 模拟卷"}),
                ],
            )
            await conn.executemany(
                "INSERT INTO question (id, from_ty, extra) VALUES ($1, 'fenbi', $2)",
                [(1000 + index, {"content": f"题目 {index}"}) for index in range(4)],
            )
            await conn.executemany(
                "INSERT INTO paper_question (from_ty, paper_id, question_id, sort) VALUES ('fenbi', $1, $2, $3)",
                [(100, 1000, 1), (100, 1001, 2), (101, 1002, 1), (101, 1003, 2)],
            )
            await conn.execute("INSERT INTO material (id, from_ty, extra) VALUES (2000, 'fenbi', $1)", {"content": "资料"})
            await conn.execute(
                "INSERT INTO paper_material (from_ty, paper_id, material_id, sort) VALUES ('fenbi', 100, 2000, 1)"
            )
    finally:
        await manager.shutdown()


@pytest.mark.integration
def test_legacy_pipeline_is_idempotent_end_to_end() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await reset_public_schema(dsn=dsn)
        await apply_up(dsn=dsn)
        await apply_legacy_schema(dsn=dsn)
        await _seed_fenbi_source(dsn=dsn)

        target = AsyncpgPoolManager(dsn=dsn)
        source = AsyncpgPoolManager(dsn=legacy_dsn(dsn))
        await target.startup()
        await source.startup()
        try:
            store = PostgresTaskStore(pool_manager=target)
            adapter = PostgresLegacyAdapter(
                source_pool=source,
                target_pool=target,
                mapping=SOURCE_MAPPINGS[TaskType.FENBI_SYNC],
                embedding=StubEmbeddingClient(),
            )
            engine = SchedulerEngine(
                store=store,
                adapter=adapter,
                pipeline=PIPELINES[TaskType.FENBI_SYNC],
                window=1,
            )
            task = await store.get_or_create(task_type=TaskType.FENBI_SYNC)
            task = await store.update(task=task, mutate=lambda current: replace(current, active=True))

            first = await engine.run(task)
            counts_after_first = await _canonical_counts(target)

            finished = await store.get(task_type=TaskType.FENBI_SYNC)
            assert finished is not None
            restarted = await store.update(
                task=finished,
                mutate=lambda current: replace(current, active=True, context=None),
            )
            second = await engine.run(restarted)

            assert first.status == "completed"
            assert second.status == "completed"
            assert counts_after_first == {
                "label": 3,
                "exam_category": 2,
                "paper": 2,
                "question": 4,
                "material": 1,
                "paper_question": 4,
                "paper_material": 1,
            }
            assert await _canonical_counts(target) == counts_after_first

            async with source.acquire_pool().acquire() as conn:
                unlinked = await conn.fetchval(
                    "SELECT count(*) FROM paper WHERE target_id IS NULL"
                ) + await conn.fetchval("SELECT count(*) FROM question WHERE target_id IS NULL")
            assert unlinked == 0

            async with target.acquire_pool().acquire() as conn:
                year = await conn.fetchval("SELECT year FROM paper WHERE source_id = 100")
                sorts = await conn.fetch("SELECT sort FROM paper_question ORDER BY paper_id, sort")
                embedding = await conn.fetchval("SELECT embedding FROM question LIMIT 1")
            assert year == 2021
            assert [row["sort"] for row in sorts] == [1, 2, 1, 2]
            assert len(embedding) == 8
            stored = await store.get(task_type=TaskType.FENBI_SYNC)
            assert stored is not None
            assert stored.context is not None
            assert stored.context["stage_name"] == "done"
        finally:
            await source.shutdown()
            await target.shutdown()

    asyncio.run(_run())


async def _canonical_counts(manager: AsyncpgPoolManager) -> dict[str, int]:
    counts: dict[str, int] = {}
    async with manager.acquire_pool().acquire() as conn:
        for table in ("label", "exam_category", "paper", "question", "material", "paper_question", "paper_material"):
            counts[table] = await conn.fetchval(f"SELECT count(*) FROM {table}")
    return counts
