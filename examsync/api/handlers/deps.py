from __future__ import annotations

from dataclasses import dataclass

from examsync.domain.contracts import TaskStore, TriggerBus
from examsync.workers.guard import ConcurrencyGuard


@dataclass(frozen=True)
class ApiDeps:
    store: TaskStore
    bus: TriggerBus
    guard: ConcurrencyGuard
