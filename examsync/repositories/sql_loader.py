from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import re

from examsync.domain.errors import DomainInvariantError

SQL_DIR = Path(__file__).with_name("sql")
_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


@lru_cache(maxsize=None)
def load_sql(name: str) -> str:
    """Read a query file relative to the ``sql`` directory, e.g. ``legacy/extract_page.sql``."""
    return (SQL_DIR / name).read_text(encoding="utf-8").strip()


def render_sql(template: str, **identifiers: str | list[str]) -> str:
    """Fill ``{placeholder}`` slots with table or column names.

    Only bare lowercase identifiers are accepted; values always travel as
    bind parameters, never through this function.
    """
    rendered: dict[str, str] = {}
    for slot, value in identifiers.items():
        names = [value] if isinstance(value, str) else list(value)
        if not names:
            raise DomainInvariantError(f"empty identifier list for '{slot}'")
        for name in names:
            if not _IDENTIFIER.match(name):
                raise DomainInvariantError(f"unsafe sql identifier {name!r} for '{slot}'")
        rendered[slot] = ", ".join(names)
    return template.format(**rendered)
