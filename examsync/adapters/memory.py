from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from examsync.domain.errors import DatastoreError
from examsync.domain.lifecycle import CursorBasis, StageSpec
from examsync.domain.models import CanonicalId, SourceRow

ConflictKey = tuple[object, ...]
RowMapper = Callable[[StageSpec, SourceRow], tuple[ConflictKey, dict[str, object]]]


@dataclass
class LegacyRecord:
    id: int
    payload: dict[str, object] = field(default_factory=dict)
    target_id: CanonicalId | None = None


@dataclass
class InMemoryLegacySource:
    """Legacy rows per entity, each carrying a ``target_id`` linkback column."""

    entities: dict[str, dict[int, LegacyRecord]] = field(default_factory=dict)

    def add(self, entity: str, row_id: int, payload: dict[str, object] | None = None) -> LegacyRecord:
        record = LegacyRecord(id=row_id, payload=dict(payload or {}))
        self.entities.setdefault(entity, {})[row_id] = record
        return record

    def seed(self, entity: str, row_ids: Sequence[int]) -> None:
        for row_id in row_ids:
            self.add(entity, row_id, {"name": f"{entity}-{row_id}"})

    def records(self, entity: str) -> list[LegacyRecord]:
        return [self.entities.get(entity, {})[row_id] for row_id in sorted(self.entities.get(entity, {}))]

    def linkback(self, entity: str, row_id: int) -> CanonicalId | None:
        return self.entities[entity][row_id].target_id

    def unlinked(self, entity: str) -> list[int]:
        return [record.id for record in self.records(entity) if record.target_id is None]


@dataclass
class InMemoryCanonicalStore:
    """Canonical tables keyed by natural conflict key; upserts reuse ids."""

    keys: dict[str, dict[ConflictKey, CanonicalId]] = field(default_factory=dict)
    rows: dict[str, dict[CanonicalId, dict[str, object]]] = field(default_factory=dict)
    next_id: CanonicalId = 1

    def upsert(self, entity: str, *, key: ConflictKey, fields: dict[str, object]) -> CanonicalId:
        table_keys = self.keys.setdefault(entity, {})
        canonical_id = table_keys.get(key)
        if canonical_id is None:
            canonical_id = self.next_id
            self.next_id += 1
            table_keys[key] = canonical_id
        self.rows.setdefault(entity, {})[canonical_id] = dict(fields)
        return canonical_id

    def count(self, entity: str) -> int:
        return len(self.rows.get(entity, {}))


def linkback_key_mapper(source_type: str) -> RowMapper:
    """Conflict key is the source identity itself; fields are copied as is."""

    def _map(stage: StageSpec, row: SourceRow) -> tuple[ConflictKey, dict[str, object]]:
        return (source_type, stage.entity, row.id), dict(row.payload)

    return _map


@dataclass
class InMemorySyncAdapter:
    """Sync adapter over in-memory source and canonical stores.

    ``fail_on`` maps ``(entity, row_id)`` to errors raised, one per attempt,
    before anything is written. ``fail_linkback_on`` raises after the
    canonical upsert but before the linkback, like a crash between the two
    writes.
    """

    source: InMemoryLegacySource
    canonical: InMemoryCanonicalStore
    source_type: str = "memory"
    mapper: RowMapper | None = None
    fail_on: dict[tuple[str, int], list[Exception]] = field(default_factory=dict)
    fail_linkback_on: set[tuple[str, int]] = field(default_factory=set)
    loads: list[tuple[str, int]] = field(default_factory=list)
    extracts: list[tuple[str, int, int | None]] = field(default_factory=list)

    async def compute_total(self, *, stage: StageSpec) -> int:
        ids = [record.id for record in self.source.records(stage.entity)]
        if stage.cursor_basis == CursorBasis.COUNT:
            return len(ids)
        return max(ids, default=0)

    async def extract(
        self,
        *,
        stage: StageSpec,
        after: int,
        window: int,
        upper_bound: int | None,
    ) -> Sequence[SourceRow]:
        self.extracts.append((stage.entity, after, upper_bound))
        page: list[SourceRow] = []
        for record in self.source.records(stage.entity):
            if record.target_id is not None or record.id <= after:
                continue
            if upper_bound is not None and record.id > upper_bound:
                break
            page.append(SourceRow(id=record.id, payload=dict(record.payload)))
            if len(page) >= window:
                break
        return page

    async def transform_and_load(self, *, stage: StageSpec, row: SourceRow) -> CanonicalId:
        marker = (stage.entity, row.id)
        pending = self.fail_on.get(marker)
        if pending:
            raise pending.pop(0)

        mapper = self.mapper or linkback_key_mapper(self.source_type)
        key, fields = mapper(stage, row)
        canonical_id = self.canonical.upsert(stage.entity, key=key, fields=fields)
        self.loads.append(marker)

        if marker in self.fail_linkback_on:
            self.fail_linkback_on.discard(marker)
            raise DatastoreError(f"linkback write for {stage.entity}#{row.id} was lost")
        self.source.entities[stage.entity][row.id].target_id = canonical_id
        return canonical_id
