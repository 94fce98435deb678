from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class UnknownTaskTypeError(DomainValidationError):
    pass


class DatastoreError(DomainError):
    pass


class RowMappingError(DomainError):
    def __init__(self, message: str, *, row_id: int | None = None) -> None:
        super().__init__(message if row_id is None else f"row#{row_id}: {message}")
        self.row_id = row_id


class CorruptCheckpointError(DomainError):
    pass


class OptimisticLockError(DomainError):
    def __init__(self, *, task_type: str, version: int) -> None:
        super().__init__(f"schedule_task {task_type} was modified concurrently (read version {version})")
        self.task_type = task_type
        self.version = version
