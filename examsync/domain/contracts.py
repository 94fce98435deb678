from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from examsync.domain.lifecycle import StageSpec
from examsync.domain.models import CanonicalId, SourceRow, TaskSnapshot, TaskType

TaskMutation = Callable[[TaskSnapshot], TaskSnapshot]

OPTIMISTIC_UPDATE_SQL_CONTRACT = "UPDATE ... SET version = version + 1 WHERE id = $1 AND version = $2"
TRIGGER_CHANNEL = "task"


@runtime_checkable
class TaskStore(Protocol):
    """Persisted task rows, one per task type.

    Every write is an optimistic update: it is applied only when the stored
    version still equals the version the caller read, and it bumps the
    version by one. A lost race raises ``OptimisticLockError``; the store
    never retries on its own.
    """

    async def get(self, *, task_type: TaskType) -> TaskSnapshot | None: ...

    async def get_or_create(self, *, task_type: TaskType) -> TaskSnapshot: ...

    async def list_tasks(self) -> list[TaskSnapshot]: ...

    async def list_active(self) -> list[TaskSnapshot]: ...

    async def update(self, *, task: TaskSnapshot, mutate: TaskMutation) -> TaskSnapshot: ...


@runtime_checkable
class SyncAdapter(Protocol):
    """Per-source extraction and idempotent load.

    ``extract`` returns one page ordered by increasing source id, restricted
    to rows whose completion marker (``target_id``) is still null. Pages are
    independent: the engine paginates by calling again with the last id.

    ``transform_and_load`` upserts into the canonical tables on a natural
    conflict key and then writes the linkback onto the source row. Calling it
    twice for the same row yields the same canonical id.
    """

    async def compute_total(self, *, stage: StageSpec) -> int: ...

    async def extract(
        self,
        *,
        stage: StageSpec,
        after: int,
        window: int,
        upper_bound: int | None,
    ) -> Sequence[SourceRow]: ...

    async def transform_and_load(self, *, stage: StageSpec, row: SourceRow) -> CanonicalId: ...


@runtime_checkable
class TriggerBus(Protocol):
    """Message bus carrying task rows whose ``active`` flag became true."""

    async def publish(self, *, payload: str) -> None: ...

    async def next_message(self, *, timeout_seconds: float) -> str | None: ...


@runtime_checkable
class EmbeddingClient(Protocol):
    def embed(self, text: str) -> list[float]: ...

    def batch_embed(self, texts: Sequence[str]) -> list[list[float]]: ...

