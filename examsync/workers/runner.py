from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from examsync.domain.contracts import TriggerBus
from examsync.workers.dispatch import TaskDispatcher


@dataclass(frozen=True)
class SyncRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    window_size: int = 100
    recover_on_start: bool = True


@dataclass
class SyncRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    triggers_total: int = 0
    admitted_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    recovered_total: int = 0


def sync_runtime_settings_from_env() -> SyncRuntimeSettings:
    return SyncRuntimeSettings(
        poll_interval_ms=_env_int("SYNC_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=_env_int("SYNC_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=_env_int("SYNC_ERROR_BACKOFF_MS", 2000),
        window_size=_env_int("SYNC_WINDOW_SIZE", 100),
        recover_on_start=_env_bool("SYNC_RECOVER_ON_START", True),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


async def run_dispatcher_until_stopped(
    *,
    dispatcher: TaskDispatcher,
    bus: TriggerBus,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: SyncRuntimeSettings,
    logger: logging.Logger,
    state: SyncRuntimeState | None = None,
) -> None:
    if state is not None:
        state.started = True

    logger.info(
        "sync dispatcher started",
        extra={"role": role, "service": role, "run_id": run_id},
    )

    if settings.recover_on_start:
        try:
            recovered = await dispatcher.recover_active()
            if state is not None:
                state.recovered_total += recovered
        except Exception:
            if state is not None:
                state.errors_total += 1
            logger.exception(
                "active task recovery failed",
                extra={"role": role, "service": role, "run_id": run_id},
            )

    while not stop_event.is_set():
        delay_ms = 0
        try:
            payload = await bus.next_message(timeout_seconds=settings.idle_backoff_ms / 1000)
            if state is not None:
                state.ticks_total += 1
            if payload is None:
                if state is not None:
                    state.idle_ticks_total += 1
                continue

            admitted = dispatcher.handle_payload(payload) is not None
            if state is not None:
                state.triggers_total += 1
                if admitted:
                    state.admitted_total += 1
            delay_ms = settings.poll_interval_ms
            logger.info(
                "dispatcher tick",
                extra={
                    "role": role,
                    "service": role,
                    "run_id": run_id,
                    "admitted": str(admitted).lower(),
                },
            )
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "dispatcher tick error",
                extra={"role": role, "service": role, "run_id": run_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    await dispatcher.shutdown()
    logger.info(
        "sync dispatcher stopped",
        extra={"role": role, "service": role, "run_id": run_id},
    )
    if state is not None:
        state.stopped = True
