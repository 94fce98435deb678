from __future__ import annotations

import importlib
from typing import Literal

from examsync.domain.errors import (
    CorruptCheckpointError,
    DatastoreError,
    DomainDependencyError,
    OptimisticLockError,
    RowMappingError,
)

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]

# Canonical error vocabulary for sync activations.
ErrorCode = Literal[
    "datastore_unavailable",
    "mapping_failed",
    "corrupt_checkpoint",
    "dependency_unavailable",
    "version_conflict",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted prefixes of error_cause.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "datastore_unavailable",
    "mapping_failed",
    "corrupt_checkpoint",
    "dependency_unavailable",
    "version_conflict",
    "internal_error",
)

# Errors where a plain re-activation is expected to make progress.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "datastore_unavailable",
        "dependency_unavailable",
        "version_conflict",
        "internal_error",
    }
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def error_code_for(exc: BaseException) -> ErrorCode:
    if isinstance(exc, CorruptCheckpointError):
        return "corrupt_checkpoint"
    if isinstance(exc, RowMappingError):
        return "mapping_failed"
    if isinstance(exc, OptimisticLockError):
        return "version_conflict"
    if isinstance(exc, DomainDependencyError):
        return "dependency_unavailable"
    if isinstance(exc, (DatastoreError, OSError)):
        return "datastore_unavailable"
    if asyncpg_module is not None and isinstance(
        exc, (asyncpg_module.PostgresConnectionError, asyncpg_module.InterfaceError)
    ):
        return "datastore_unavailable"
    return "internal_error"


def describe_error(exc: BaseException) -> str:
    """Render the persisted error_cause: ``<code>: <description>``."""
    description = str(exc) or exc.__class__.__name__
    return f"{error_code_for(exc)}: {description}"
