from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException

from examsync.api.handlers.deps import ApiDeps
from examsync.api.handlers.tasks import (
    activate_task_handler,
    deactivate_task_handler,
    get_task_handler,
    list_tasks_handler,
    reset_task_handler,
)
from examsync.api.schemas import (
    DispatcherMetrics,
    ErrorResponse,
    HealthResponse,
    ReadyResponse,
    TaskListResponse,
    TaskResponse,
)
from examsync.domain.contracts import TriggerBus
from examsync.domain.errors import DomainInvariantError, OptimisticLockError, UnknownTaskTypeError
from examsync.domain.models import TaskType, parse_task_type
from examsync.workers.dispatch import TaskDispatcher
from examsync.workers.runner import (
    SyncRuntimeSettings,
    SyncRuntimeState,
    run_dispatcher_until_stopped,
    sync_runtime_settings_from_env,
)

TASK_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def build_app(
    role: str,
    run_id: str,
    dispatcher: TaskDispatcher | None = None,
    trigger_bus: TriggerBus | None = None,
    runtime_settings: SyncRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
    mode: str = "memory",
) -> FastAPI:
    logger = logging.getLogger("runtime")
    dispatcher_state: SyncRuntimeState | None = None
    dispatcher_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal dispatcher_task, dispatcher_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if dispatcher is not None and trigger_bus is not None:
            settings = runtime_settings or sync_runtime_settings_from_env()
            dispatcher_state = SyncRuntimeState()
            stop_event = asyncio.Event()
            dispatcher_task = asyncio.create_task(
                run_dispatcher_until_stopped(
                    dispatcher=dispatcher,
                    bus=trigger_bus,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=dispatcher_state,
                )
            )

        yield

        if stop_event is not None and dispatcher_task is not None:
            stop_event.set()
            await dispatcher_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="examsync", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def _task_type(value: str) -> TaskType:
        try:
            return parse_task_type(value)
        except UnknownTaskTypeError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        dispatcher_enabled = dispatcher is not None
        dispatcher_ready = True
        state = dispatcher_state or SyncRuntimeState()
        if dispatcher_enabled:
            dispatcher_ready = (
                dispatcher_state is not None
                and dispatcher_state.started
                and dispatcher_task is not None
                and not dispatcher_task.done()
            )

        running = [item.task_type for item in api_deps.guard.running()] if api_deps is not None else []
        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            dispatcher_enabled=dispatcher_enabled,
            dispatcher_ready=dispatcher_ready,
            dispatcher_metrics=DispatcherMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                triggers_total=state.triggers_total,
                admitted_total=state.admitted_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                recovered_total=state.recovered_total,
            ),
            running_task_types=running,
        )

    @app.get("/tasks", response_model=TaskListResponse, responses={503: {"model": ErrorResponse}}, tags=["Tasks"])
    async def list_tasks() -> TaskListResponse:
        return await list_tasks_handler(api_deps=_require_deps())

    @app.get("/tasks/{task_type}", response_model=TaskResponse, responses=TASK_ERROR_RESPONSES, tags=["Tasks"])
    async def get_task(task_type: str) -> TaskResponse:
        return await get_task_handler(task_type=_task_type(task_type), api_deps=_require_deps())

    @app.post(
        "/tasks/{task_type}/activate",
        response_model=TaskResponse,
        responses=TASK_ERROR_RESPONSES,
        tags=["Tasks"],
    )
    async def activate(task_type: str) -> TaskResponse:
        deps = _require_deps()
        try:
            return await activate_task_handler(task_type=_task_type(task_type), api_deps=deps)
        except OptimisticLockError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post(
        "/tasks/{task_type}/deactivate",
        response_model=TaskResponse,
        responses=TASK_ERROR_RESPONSES,
        tags=["Tasks"],
    )
    async def deactivate(task_type: str) -> TaskResponse:
        deps = _require_deps()
        try:
            return await deactivate_task_handler(task_type=_task_type(task_type), api_deps=deps)
        except OptimisticLockError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post(
        "/tasks/{task_type}/reset",
        response_model=TaskResponse,
        responses=TASK_ERROR_RESPONSES,
        tags=["Tasks"],
    )
    async def reset(task_type: str) -> TaskResponse:
        deps = _require_deps()
        try:
            return await reset_task_handler(task_type=_task_type(task_type), api_deps=deps)
        except (DomainInvariantError, OptimisticLockError) as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    return app
