from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from pydantic import ValidationError

from examsync.domain.contracts import TaskStore
from examsync.domain.dto import TriggerMessage
from examsync.domain.ids import new_run_id
from examsync.domain.models import RunOutcome, TaskType
from examsync.workers.engine import DEFAULT_WINDOW, SchedulerEngine
from examsync.workers.failure import FailureHandler
from examsync.workers.guard import ConcurrencyGuard
from examsync.workers.registry import AdapterRegistry

logger = logging.getLogger("sync")


@dataclass
class TaskDispatcher:
    """Admits trigger messages through the guard and runs them in the background.

    Different task types run concurrently; a second trigger for a task type
    that already has a runner is dropped without touching the task row.
    """

    store: TaskStore
    guard: ConcurrencyGuard
    registry: AdapterRegistry
    failure_handler: FailureHandler
    window: int = DEFAULT_WINDOW
    in_flight: dict[TaskType, asyncio.Task[RunOutcome]] = field(default_factory=dict)
    outcomes: list[RunOutcome] = field(default_factory=list)

    def dispatch(self, message: TriggerMessage) -> asyncio.Task[RunOutcome] | None:
        task_type = message.task_type
        if not message.active:
            logger.info("trigger ignored, task is inactive", extra={"task_type": task_type.value})
            return None

        run_id = new_run_id()
        if not self.guard.register_if_not_running(task_type, run_id=run_id):
            logger.info("trigger dropped, runner already active", extra={"task_type": task_type.value})
            return None

        runner = asyncio.create_task(self._run(task_type, run_id), name=f"sync-{task_type.value}")
        self.in_flight[task_type] = runner
        logger.info("trigger admitted", extra={"task_type": task_type.value, "run_id": run_id})
        return runner

    def handle_payload(self, payload: str) -> asyncio.Task[RunOutcome] | None:
        try:
            message = TriggerMessage.parse(payload)
        except ValidationError:
            logger.warning("invalid trigger payload dropped", extra={"payload_size": len(payload)})
            return None
        return self.dispatch(message)

    async def recover_active(self) -> int:
        """Re-dispatch rows left active, e.g. by a process that stopped mid-run."""
        recovered = 0
        for task in await self.store.list_active():
            if self.dispatch(TriggerMessage.from_task(task)) is not None:
                recovered += 1
        if recovered:
            logger.info("active tasks recovered", extra={"recovered": recovered})
        return recovered

    async def drain(self) -> list[RunOutcome]:
        runners = list(self.in_flight.values())
        if not runners:
            return []
        return list(await asyncio.gather(*runners))

    async def shutdown(self) -> None:
        # Cancelled runs keep active=true and resume from their checkpoint.
        runners = list(self.in_flight.values())
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)

    async def _run(self, task_type: TaskType, run_id: str) -> RunOutcome:
        try:
            outcome = await self.failure_handler.run(
                task_type=task_type,
                activation=lambda: self._activate(task_type, run_id),
                run_id=run_id,
            )
        finally:
            self.guard.release(task_type, run_id=run_id)
            self.in_flight.pop(task_type, None)
        self.outcomes.append(outcome)
        logger.info(
            "task run finished",
            extra={
                "task_type": task_type.value,
                "run_id": run_id,
                "status": outcome.status,
                "error_code": outcome.error_code,
            },
        )
        return outcome

    async def _activate(self, task_type: TaskType, run_id: str) -> RunOutcome:
        binding = self.registry.build(task_type)
        # Trigger payloads can be stale; the stored row is authoritative.
        task = await self.store.get(task_type=task_type)
        if task is None:
            return RunOutcome(task_type=task_type, status="skipped", detail="task row is missing")
        engine = SchedulerEngine(
            store=self.store,
            adapter=binding.adapter,
            pipeline=binding.pipeline,
            window=self.window,
            run_id=run_id,
        )
        return await engine.run(task)
