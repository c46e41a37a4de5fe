"""
Tag-set replacement for a story.

A write always replaces the whole set: delete every tag row of the story, then
insert one row per target tag. Two modes:

- default: statements run one after another on an autocommit connection. Every
  statement is issued even after an earlier one failed, and only the first error
  is reported. A failure part-way leaves a partially applied set (old tags gone,
  some new tags in). Callers rely on this, so it stays the default.
- atomic (STORE_TAGS_ATOMIC=1): the same statements inside one transaction; the
  first error rolls the whole change back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import psycopg

from archive.errors import InvalidTagSet, StorageFailure
from archive.store.results import first_error, run_statement

logger = logging.getLogger(__name__)

DELETE_TAGS_SQL = "DELETE FROM tags WHERE number = %s"
INSERT_TAG_SQL = "INSERT INTO tags (tag, number) VALUES (%s, %s)"
SELECT_TAGS_SQL = "SELECT tag FROM tags WHERE number = %s ORDER BY tag"


@dataclass(frozen=True)
class TagReplaceResult:
    number: int
    tags: Tuple[str, ...]


def parse_tags(payload: Any) -> List[str]:
    """Validate a tag payload: a JSON array of strings. Duplicates collapse, order kept."""
    if not isinstance(payload, list):
        raise InvalidTagSet("tags must be a list of strings")
    out: List[str] = []
    for t in payload:
        if not isinstance(t, str):
            raise InvalidTagSet("tags must be a list of strings")
        if t not in out:
            out.append(t)
    return out


def _statements(number: int, tags: Sequence[str]) -> List[Tuple[str, tuple]]:
    stmts: List[Tuple[str, tuple]] = [(DELETE_TAGS_SQL, (number,))]
    stmts.extend((INSERT_TAG_SQL, (tag, number)) for tag in tags)
    return stmts


def replace_tags(conn, number: int, tags: Sequence[str], *, atomic: bool = False) -> TagReplaceResult:
    stmts = _statements(number, tags)

    if atomic:
        try:
            with conn.transaction():
                for sql, params in stmts:
                    conn.execute(sql, params)
        except psycopg.Error as e:
            raise StorageFailure(f"Tag replacement rolled back for number={number}: {e}", cause=e) from e
    else:
        results = [run_statement(conn, sql, params) for sql, params in stmts]
        failed = first_error(results)
        if failed is not None:
            applied = sum(1 for r in results if r.ok)
            raise StorageFailure(
                f"Tag replacement partially applied for number={number} ({applied}/{len(results)} statements ok): "
                f"{failed.error}",
                cause=failed.error,
            )

    logger.info("Tags for story %d set to %d tag(s)", number, len(tags))
    return TagReplaceResult(number=number, tags=tuple(tags))


def list_tags(conn, number: int) -> List[str]:
    try:
        rows = conn.execute(SELECT_TAGS_SQL, (number,)).fetchall()
    except psycopg.Error as e:
        raise StorageFailure(f"Tag read failed: {e}", cause=e) from e
    return [str(r["tag"]) for r in rows]
