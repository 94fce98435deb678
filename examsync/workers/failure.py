from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
import logging

from examsync.domain.contracts import TaskStore
from examsync.domain.error_taxonomy import classify_error, describe_error, error_code_for
from examsync.domain.errors import OptimisticLockError
from examsync.domain.models import RunOutcome, TaskSnapshot, TaskType

Activation = Callable[[], Awaitable[RunOutcome]]
logger = logging.getLogger("sync")


@dataclass
class FailureHandler:
    """Single place that turns an unrecovered activation error into task state.

    The checkpoint stays as it was last persisted, so the next activation
    resumes from the same stage and cursor.
    """

    store: TaskStore

    async def run(self, *, task_type: TaskType, activation: Activation, run_id: str = "") -> RunOutcome:
        try:
            return await activation()
        except Exception as exc:
            error_code = error_code_for(exc)
            error_cause = describe_error(exc)
            logger.exception(
                "task run failed",
                extra={
                    "run_id": run_id,
                    "task_type": task_type.value,
                    "error_code": error_code,
                    "retry_classification": classify_error(error_code),
                },
            )
            annotated, detail = await self._record_failure(task_type=task_type, error_cause=error_cause, run_id=run_id)
            return RunOutcome(
                task_type=task_type,
                status="failed",
                detail=detail,
                error_code=error_code,
                task=annotated,
            )

    async def _record_failure(
        self,
        *,
        task_type: TaskType,
        error_cause: str,
        run_id: str,
    ) -> tuple[TaskSnapshot | None, str]:
        def _annotate(task: TaskSnapshot) -> TaskSnapshot:
            return replace(
                task,
                active=False,
                error_cause=error_cause,
                error_count=task.error_count + 1,
            )

        current: TaskSnapshot | None = None
        try:
            current = await self.store.get(task_type=task_type)
            if current is None:
                logger.error("failed task row is missing", extra={"run_id": run_id, "task_type": task_type.value})
                return None, error_cause
            annotated = await self.store.update(task=current, mutate=_annotate)
        except OptimisticLockError as exc:
            # Operator-visible: the row changed between our read and write.
            logger.error(
                "failure annotation lost a version race",
                extra={"run_id": run_id, "task_type": task_type.value, "error_code": "version_conflict"},
            )
            return current, f"{error_cause} (not recorded: {exc})"
        except Exception as exc:
            # Row stays active; recover_active picks it up on the next start.
            error_code = error_code_for(exc)
            logger.exception(
                "failure annotation could not be written",
                extra={
                    "run_id": run_id,
                    "task_type": task_type.value,
                    "error_code": error_code,
                    "retry_classification": classify_error(error_code),
                },
            )
            return current, f"{error_cause} (not recorded: {describe_error(exc)})"

        logger.info(
            "task deactivated after failure",
            extra={"run_id": run_id, "task_type": task_type.value, "error_count": annotated.error_count},
        )
        return annotated, error_cause
