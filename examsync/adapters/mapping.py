"""Per-source field mapping from legacy ``extra`` payloads to canonical fields.

Each legacy source stores its scraped records as JSON in an ``extra``
column. The mappers here only pick the fields the canonical tables need;
an unexpected shape raises ``RowMappingError`` and aborts the stage.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import re

from examsync.domain.errors import RowMappingError
from examsync.domain.models import SourceRow, TaskType

YEAR_PATTERN = re.compile(r"(?:19|20)\d{2}")


@dataclass(frozen=True)
class LabelFields:
    name: str
    parent_name: str | None = None


@dataclass(frozen=True)
class CategoryFields:
    name: str
    prefix: str
    parent_prefix: str | None = None


@dataclass(frozen=True)
class PaperFields:
    title: str
    label_source_id: int | None
    year: int | None = None
    extra: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentFields:
    content: str
    extra: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceMapping:
    source_type: str
    label: Callable[[SourceRow], LabelFields]
    category: Callable[[SourceRow], CategoryFields]
    paper: Callable[[SourceRow], PaperFields]
    question: Callable[[SourceRow], ContentFields]
    material: Callable[[SourceRow], ContentFields]


def pick_year(text: str | None) -> int | None:
    if not text:
        return None
    match = YEAR_PATTERN.search(text)
    return int(match.group(0)) if match else None


def _extra(row: SourceRow) -> Mapping[str, object]:
    extra = row.payload.get("extra", row.payload)
    if not isinstance(extra, Mapping):
        raise RowMappingError("extra payload is not an object", row_id=row.id)
    return extra


def _path(row: SourceRow, *keys: str) -> object | None:
    value: object = _extra(row)
    for key in keys:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _text(row: SourceRow, *keys: str, required: bool = True) -> str | None:
    value = _path(row, *keys)
    if value is None or value == "":
        if required:
            raise RowMappingError(f"missing field {'.'.join(keys)}", row_id=row.id)
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        raise RowMappingError(f"field {'.'.join(keys)} is not text", row_id=row.id)
    return value.strip()


def _label_source_id(row: SourceRow) -> int | None:
    value = row.payload.get("label_id")
    if value is None:
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise RowMappingError("label_id is not an integer", row_id=row.id) from exc


def _unsupported(entity: str) -> Callable[[SourceRow], object]:
    def _raise(row: SourceRow) -> object:
        raise RowMappingError(f"{entity} is not provided by this source", row_id=row.id)

    return _raise


def _fenbi_label(row: SourceRow) -> LabelFields:
    return LabelFields(name=_text(row, "name") or "", parent_name=_text(row, "parent", "name", required=False))


def _fenbi_category(row: SourceRow) -> CategoryFields:
    return CategoryFields(
        name=_text(row, "name") or "",
        prefix=_text(row, "prefix") or "",
        parent_prefix=_text(row, "parent", "prefix", required=False),
    )


def _fenbi_paper(row: SourceRow) -> PaperFields:
    title = _text(row, "name") or ""
    date = _text(row, "date", required=False)
    return PaperFields(
        title=title,
        label_source_id=_label_source_id(row),
        year=pick_year(date) or pick_year(title),
        extra={"topic": _text(row, "topic", required=False), "type": _path(row, "type")},
    )


def _fenbi_content(row: SourceRow) -> ContentFields:
    return ContentFields(
        content=_text(row, "content") or "",
        extra={"accessories": _path(row, "accessories")},
    )


def _named_label(row: SourceRow) -> LabelFields:
    return LabelFields(name=_text(row, "name") or "", parent_name=_text(row, "parent_name", required=False))


def _titled_paper(row: SourceRow) -> PaperFields:
    title = _text(row, "title") or ""
    return PaperFields(title=title, label_source_id=_label_source_id(row), year=pick_year(title))


def _stem_question(row: SourceRow) -> ContentFields:
    return ContentFields(
        content=_text(row, "stem") or "",
        extra={"choices": _path(row, "choices"), "answer": _path(row, "answer")},
    )


def _plain_content(row: SourceRow) -> ContentFields:
    return ContentFields(content=_text(row, "content") or "")


SOURCE_MAPPINGS: dict[TaskType, SourceMapping] = {
    TaskType.FENBI_SYNC: SourceMapping(
        source_type="fenbi",
        label=_fenbi_label,
        category=_fenbi_category,
        paper=_fenbi_paper,
        question=_fenbi_content,
        material=_fenbi_content,
    ),
    TaskType.OFFCN_SYNC: SourceMapping(
        source_type="offcn",
        label=_named_label,
        category=_unsupported("exam_category"),  # type: ignore[arg-type]
        paper=_titled_paper,
        question=_plain_content,
        material=_plain_content,
    ),
    TaskType.CHINAGWY_SYNC: SourceMapping(
        source_type="chinagwy",
        label=_unsupported("label"),  # type: ignore[arg-type]
        category=_unsupported("exam_category"),  # type: ignore[arg-type]
        paper=_titled_paper,
        question=_stem_question,
        material=_plain_content,
    ),
    TaskType.HUATU_SYNC: SourceMapping(
        source_type="huatu",
        label=_named_label,
        category=_unsupported("exam_category"),  # type: ignore[arg-type]
        paper=_titled_paper,
        question=_plain_content,
        material=_plain_content,
    ),
}
