from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import importlib
import json
import logging
from typing import Any

from examsync.domain.contracts import TRIGGER_CHANNEL, TaskMutation
from examsync.domain.errors import DomainInvariantError, OptimisticLockError
from examsync.domain.models import TaskSnapshot, TaskType
from examsync.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_GET_TASK = load_sql("get_task.sql")
SQL_INSERT_TASK = load_sql("insert_task.sql")
SQL_LIST_TASKS = load_sql("list_tasks.sql")
SQL_LIST_ACTIVE_TASKS = load_sql("list_active_tasks.sql")
SQL_UPDATE_TASK = load_sql("update_task.sql")
SQL_NOTIFY_TRIGGER = load_sql("notify_trigger.sql")

logger = logging.getLogger("runtime")


async def _init_connection(conn: Any) -> None:
    await conn.set_type_codec(
        "json",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    def acquire_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool


@dataclass
class PostgresTaskStore:
    pool_manager: AsyncpgPoolManager

    async def get(self, *, task_type: TaskType) -> TaskSnapshot | None:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_TASK, task_type.value)
        if row is None:
            return None
        return _task_from_row(row)

    async def get_or_create(self, *, task_type: TaskType) -> TaskSnapshot:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_INSERT_TASK, task_type.value)
                if row is None:
                    # Another writer inserted the row first.
                    row = await conn.fetchrow(SQL_GET_TASK, task_type.value)
                if row is None:
                    raise DomainInvariantError(f"schedule_task {task_type} insert conflict without row")
        return _task_from_row(row)

    async def list_tasks(self) -> list[TaskSnapshot]:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_TASKS)
        return [_task_from_row(row) for row in rows]

    async def list_active(self) -> list[TaskSnapshot]:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_ACTIVE_TASKS)
        return [_task_from_row(row) for row in rows]

    async def update(self, *, task: TaskSnapshot, mutate: TaskMutation) -> TaskSnapshot:
        mutated = mutate(task)
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_UPDATE_TASK,
                task.id,
                task.version,
                mutated.active,
                mutated.context,
                mutated.run_count,
                mutated.error_cause,
                mutated.error_count,
            )
        if row is None:
            raise OptimisticLockError(task_type=task.task_type, version=task.version)
        return _task_from_row(row)


@dataclass
class PostgresTriggerBus:
    """Trigger bus over Postgres LISTEN/NOTIFY on a single channel."""

    pool_manager: AsyncpgPoolManager
    channel: str = TRIGGER_CHANNEL
    listen: bool = True
    listener_conn: Any | None = None
    _queue: asyncio.Queue[str] = field(default_factory=asyncio.Queue)

    async def startup(self) -> None:
        if not self.listen:
            return
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres trigger bus")
        self.listener_conn = await asyncpg_module.connect(dsn=self.pool_manager.dsn)
        await self.listener_conn.add_listener(self.channel, self._on_notification)
        logger.info("trigger bus listening", extra={"channel": self.channel})

    async def shutdown(self) -> None:
        if self.listener_conn is None:
            return
        await self.listener_conn.remove_listener(self.channel, self._on_notification)
        await self.listener_conn.close()
        self.listener_conn = None

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        del connection, pid, channel
        self._queue.put_nowait(payload)

    async def publish(self, *, payload: str) -> None:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            await conn.execute(SQL_NOTIFY_TRIGGER, self.channel, payload)

    async def next_message(self, *, timeout_seconds: float) -> str | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None


def _task_from_row(row: Any) -> TaskSnapshot:
    return TaskSnapshot(
        id=row["id"],
        version=row["version"],
        task_type=TaskType(row["task_type"]),
        active=row["active"],
        context=_json_object(row["context"]),
        run_count=row["run_count"],
        error_cause=row["error_cause"],
        error_count=row["error_count"],
        created=row["created"],
        modified=row["modified"],
    )


def _json_object(value: object) -> dict[str, object] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        # Surface as-is so checkpoint validation reports it as corrupt.
        return {"__raw__": value}
    return {str(key): val for key, val in value.items()}
