from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from examsync.adapters.legacy import PostgresLegacyAdapter
from examsync.adapters.mapping import SOURCE_MAPPINGS
from examsync.adapters.memory import InMemoryCanonicalStore, InMemoryLegacySource, InMemorySyncAdapter
from examsync.api.handlers.deps import ApiDeps
from examsync.clients.embedding import HttpEmbeddingClient, embedding_client_from_env
from examsync.clients.stub import InMemoryTriggerBus
from examsync.domain.contracts import TaskStore, TriggerBus
from examsync.domain.models import TaskType
from examsync.repositories.postgres import AsyncpgPoolManager, PostgresTaskStore, PostgresTriggerBus
from examsync.repositories.stub import InMemoryTaskStore
from examsync.roles import RuntimeRole
from examsync.workers.dispatch import TaskDispatcher
from examsync.workers.failure import FailureHandler
from examsync.workers.guard import ConcurrencyGuard
from examsync.workers.registry import AdapterRegistry
from examsync.workers.runner import SyncRuntimeSettings, sync_runtime_settings_from_env

Hook = Callable[[], Awaitable[None]]


@dataclass
class RuntimeContainer:
    store: TaskStore
    bus: TriggerBus
    guard: ConcurrencyGuard
    registry: AdapterRegistry
    api_deps: ApiDeps
    dispatcher: TaskDispatcher | None
    runtime_settings: SyncRuntimeSettings
    mode: str
    on_startup: Hook | None
    on_shutdown: Hook | None
    memory_source: InMemoryLegacySource | None = None
    memory_canonical: InMemoryCanonicalStore | None = None


def _chain(hooks: list[Hook]) -> Hook | None:
    if not hooks:
        return None

    async def _run_all() -> None:
        for hook in hooks:
            await hook()

    return _run_all


def build_memory_registry(
    *,
    source: InMemoryLegacySource,
    canonical: InMemoryCanonicalStore,
) -> AdapterRegistry:
    registry = AdapterRegistry()
    for task_type in TaskType:
        adapter = InMemorySyncAdapter(
            source=source,
            canonical=canonical,
            source_type=SOURCE_MAPPINGS[task_type].source_type,
        )
        registry.register(task_type, lambda adapter=adapter: adapter)
    return registry


def build_legacy_registry(
    *,
    source_pool: AsyncpgPoolManager,
    target_pool: AsyncpgPoolManager,
    embedding: HttpEmbeddingClient | None,
) -> AdapterRegistry:
    registry = AdapterRegistry()
    for task_type in TaskType:
        mapping = SOURCE_MAPPINGS[task_type]
        registry.register(
            task_type,
            lambda mapping=mapping: PostgresLegacyAdapter(
                source_pool=source_pool,
                target_pool=target_pool,
                mapping=mapping,
                embedding=embedding,
            ),
        )
    return registry


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: SyncRuntimeSettings | None = None,
) -> RuntimeContainer:
    runtime_settings = settings or sync_runtime_settings_from_env()
    database_url = os.getenv("DATABASE_URL")
    source_database_url = os.getenv("SOURCE_DATABASE_URL")
    startup: list[Hook] = []
    shutdown: list[Hook] = []
    memory_source: InMemoryLegacySource | None = None
    memory_canonical: InMemoryCanonicalStore | None = None

    store: TaskStore
    bus: TriggerBus
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        store = PostgresTaskStore(pool_manager=pool_manager)
        trigger_bus = PostgresTriggerBus(pool_manager=pool_manager, listen=role.runs_dispatcher)
        bus = trigger_bus
        startup.extend([pool_manager.startup, trigger_bus.startup])
        shutdown.extend([trigger_bus.shutdown, pool_manager.shutdown])
        mode = "postgres"
    else:
        pool_manager = None
        store = InMemoryTaskStore()
        bus = InMemoryTriggerBus()
        mode = "memory"

    if pool_manager is not None and source_database_url:
        source_pool = AsyncpgPoolManager(dsn=source_database_url)
        embedding = embedding_client_from_env()
        registry = build_legacy_registry(source_pool=source_pool, target_pool=pool_manager, embedding=embedding)
        startup.append(source_pool.startup)
        shutdown.insert(0, source_pool.shutdown)
        if embedding is not None:

            async def _close_embedding() -> None:
                embedding.close()

            shutdown.append(_close_embedding)
    else:
        memory_source = InMemoryLegacySource()
        memory_canonical = InMemoryCanonicalStore()
        registry = build_memory_registry(source=memory_source, canonical=memory_canonical)

    guard = ConcurrencyGuard()
    dispatcher: TaskDispatcher | None = None
    if role.runs_dispatcher:
        dispatcher = TaskDispatcher(
            store=store,
            guard=guard,
            registry=registry,
            failure_handler=FailureHandler(store=store),
            window=runtime_settings.window_size,
        )

    return RuntimeContainer(
        store=store,
        bus=bus,
        guard=guard,
        registry=registry,
        api_deps=ApiDeps(store=store, bus=bus, guard=guard),
        dispatcher=dispatcher,
        runtime_settings=runtime_settings,
        mode=mode,
        on_startup=_chain(startup),
        on_shutdown=_chain(shutdown),
        memory_source=memory_source,
        memory_canonical=memory_canonical,
    )
