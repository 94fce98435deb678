from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Any

from examsync.adapters.mapping import SourceMapping
from examsync.domain.contracts import EmbeddingClient
from examsync.domain.errors import DomainInvariantError
from examsync.domain.lifecycle import CursorBasis, StageSpec
from examsync.domain.models import CanonicalId, SourceRow
from examsync.repositories.postgres import AsyncpgPoolManager
from examsync.repositories.sql_loader import load_sql, render_sql

# Source tables share the layout (id, from_ty, extra, target_id); paper
# additionally references its label.
PAYLOAD_COLUMNS: dict[str, tuple[str, ...]] = {
    "label": ("id", "extra"),
    "exam_category": ("id", "extra"),
    "paper": ("id", "extra", "label_id"),
}

SQL_TOTAL_BY_ID = load_sql("legacy/total_by_id.sql")
SQL_TOTAL_BY_COUNT = load_sql("legacy/total_by_count.sql")
SQL_EXTRACT_PAGE = load_sql("legacy/extract_page.sql")
SQL_WRITE_LINKBACK = load_sql("legacy/write_linkback.sql")
SQL_LABEL_TARGET = load_sql("legacy/label_target.sql")
SQL_PAPER_QUESTIONS = load_sql("legacy/paper_questions.sql")
SQL_PAPER_MATERIALS = load_sql("legacy/paper_materials.sql")

SQL_UPSERT_LABEL = load_sql("canonical/upsert_label.sql")
SQL_UPSERT_CATEGORY = load_sql("canonical/upsert_category.sql")
SQL_ENSURE_CATEGORY = load_sql("canonical/ensure_category.sql")
SQL_UPSERT_PAPER = load_sql("canonical/upsert_paper.sql")
SQL_UPSERT_QUESTION = load_sql("canonical/upsert_question.sql")
SQL_UPSERT_MATERIAL = load_sql("canonical/upsert_material.sql")
SQL_LINK_PAPER_QUESTION = load_sql("canonical/link_paper_question.sql")
SQL_LINK_PAPER_MATERIAL = load_sql("canonical/link_paper_material.sql")

logger = logging.getLogger("sync")


def _table(entity: str) -> str:
    if entity not in PAYLOAD_COLUMNS and entity not in {"question", "material"}:
        raise DomainInvariantError(f"unknown legacy entity '{entity}'")
    return entity


@dataclass
class PostgresLegacyAdapter:
    """Migrates one legacy source (selected by ``from_ty``) into canonical tables.

    Canonical writes for one source row happen in a single target
    transaction. Linkbacks are written to the source afterwards; if that
    fails the row is extracted again and the upserts resolve to the same
    canonical ids.
    """

    source_pool: AsyncpgPoolManager
    target_pool: AsyncpgPoolManager
    mapping: SourceMapping
    embedding: EmbeddingClient | None = None

    @property
    def from_ty(self) -> str:
        return self.mapping.source_type

    async def compute_total(self, *, stage: StageSpec) -> int:
        template = SQL_TOTAL_BY_COUNT if stage.cursor_basis == CursorBasis.COUNT else SQL_TOTAL_BY_ID
        query = render_sql(template, table=_table(stage.entity))
        async with self.source_pool.acquire_pool().acquire() as conn:
            total = await conn.fetchval(query, self.from_ty)
        return int(total or 0)

    async def extract(
        self,
        *,
        stage: StageSpec,
        after: int,
        window: int,
        upper_bound: int | None,
    ) -> Sequence[SourceRow]:
        query = render_sql(
            SQL_EXTRACT_PAGE,
            table=_table(stage.entity),
            columns=list(PAYLOAD_COLUMNS[stage.entity]),
        )
        async with self.source_pool.acquire_pool().acquire() as conn:
            rows = await conn.fetch(query, self.from_ty, after, upper_bound, window)
        return [SourceRow(id=row["id"], payload={key: row[key] for key in row.keys() if key != "id"}) for row in rows]

    async def transform_and_load(self, *, stage: StageSpec, row: SourceRow) -> CanonicalId:
        if stage.entity == "label":
            canonical_id = await self._load_label(row)
        elif stage.entity == "exam_category":
            canonical_id = await self._load_category(row)
        elif stage.entity == "paper":
            return await self._load_paper(row)
        else:
            raise DomainInvariantError(f"no loader for entity '{stage.entity}'")

        await self._write_linkbacks([(stage.entity, row.id, canonical_id)])
        return canonical_id

    async def _load_label(self, row: SourceRow) -> CanonicalId:
        fields = self.mapping.label(row)
        async with self.target_pool.acquire_pool().acquire() as conn:
            async with conn.transaction():
                pid = 0
                if fields.parent_name:
                    pid = await conn.fetchval(SQL_UPSERT_LABEL, self.from_ty, 0, fields.parent_name)
                return await conn.fetchval(SQL_UPSERT_LABEL, self.from_ty, pid, fields.name)

    async def _load_category(self, row: SourceRow) -> CanonicalId:
        fields = self.mapping.category(row)
        async with self.target_pool.acquire_pool().acquire() as conn:
            async with conn.transaction():
                pid = 0
                if fields.parent_prefix:
                    pid = await conn.fetchval(SQL_ENSURE_CATEGORY, self.from_ty, fields.parent_prefix)
                return await conn.fetchval(
                    SQL_UPSERT_CATEGORY,
                    self.from_ty,
                    pid,
                    fields.name,
                    fields.prefix,
                )

    async def _load_paper(self, row: SourceRow) -> CanonicalId:
        fields = self.mapping.paper(row)
        async with self.source_pool.acquire_pool().acquire() as conn:
            label_id = None
            if fields.label_source_id is not None:
                label_id = await conn.fetchval(SQL_LABEL_TARGET, self.from_ty, fields.label_source_id)
            question_rows = await conn.fetch(SQL_PAPER_QUESTIONS, self.from_ty, row.id)
            material_rows = await conn.fetch(SQL_PAPER_MATERIALS, self.from_ty, row.id)

        questions = [(item, self.mapping.question(_source_row(item))) for item in question_rows]
        materials = [(item, self.mapping.material(_source_row(item))) for item in material_rows]
        vectors = await self._embed([question.content for _, question in questions])

        linkbacks: list[tuple[str, int, CanonicalId]] = []
        async with self.target_pool.acquire_pool().acquire() as conn:
            async with conn.transaction():
                paper_id = await conn.fetchval(
                    SQL_UPSERT_PAPER,
                    self.from_ty,
                    row.id,
                    label_id,
                    fields.title,
                    fields.year,
                    fields.extra,
                )
                for index, (item, question) in enumerate(questions):
                    question_id = await conn.fetchval(
                        SQL_UPSERT_QUESTION,
                        self.from_ty,
                        item["id"],
                        question.content,
                        question.extra,
                        vectors[index] if vectors else None,
                    )
                    await conn.execute(SQL_LINK_PAPER_QUESTION, paper_id, question_id, item["sort"])
                    linkbacks.append(("question", item["id"], question_id))
                for item, material in materials:
                    material_id = await conn.fetchval(
                        SQL_UPSERT_MATERIAL,
                        self.from_ty,
                        item["id"],
                        material.content,
                        material.extra,
                    )
                    await conn.execute(SQL_LINK_PAPER_MATERIAL, paper_id, material_id, item["sort"])
                    linkbacks.append(("material", item["id"], material_id))

        # Children first: the paper marker is what makes the row complete.
        linkbacks.append(("paper", row.id, paper_id))
        await self._write_linkbacks(linkbacks)
        logger.debug(
            "paper loaded",
            extra={
                "source_type": self.from_ty,
                "source_id": row.id,
                "target_id": paper_id,
                "questions": len(questions),
                "materials": len(materials),
            },
        )
        return paper_id

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        if self.embedding is None or not texts:
            return []
        return await asyncio.to_thread(self.embedding.batch_embed, texts)

    async def _write_linkbacks(self, linkbacks: list[tuple[str, int, CanonicalId]]) -> None:
        async with self.source_pool.acquire_pool().acquire() as conn:
            async with conn.transaction():
                for entity, source_id, target_id in linkbacks:
                    query = render_sql(SQL_WRITE_LINKBACK, table=_table(entity))
                    await conn.execute(query, self.from_ty, source_id, target_id)


def _source_row(record: Any) -> SourceRow:
    return SourceRow(id=record["id"], payload={"extra": record["extra"]})
