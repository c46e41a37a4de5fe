from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import psycopg
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from archive.errors import InvalidRecord, StorageFailure

logger = logging.getLogger(__name__)

STORY_COLUMNS = "number, year, day, title, prompt, content"

UPDATE_STORY_SQL = "UPDATE stories SET year = %s, day = %s, title = %s, prompt = %s, content = %s WHERE number = %s"
INSERT_STORY_SQL = f"INSERT INTO stories ({STORY_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s)"
SELECT_STORY_SQL = f"SELECT {STORY_COLUMNS} FROM stories WHERE number = %s"
SELECT_LAST_STORY_SQL = f"SELECT {STORY_COLUMNS} FROM stories ORDER BY number DESC LIMIT 1"


class StoryRecord(BaseModel):
    """A fully specified story; every field is required on write."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    number: StrictInt = Field(gt=0)
    year: StrictInt
    day: StrictInt = Field(ge=1, le=366)
    title: StrictStr = Field(min_length=1)
    prompt: StrictStr = Field(min_length=1)
    content: StrictStr = Field(min_length=1)


@dataclass(frozen=True)
class UpsertResult:
    created: bool
    number: int

    @property
    def message(self) -> str:
        return "new story created" if self.created else "story updated"


def parse_story(payload: Any) -> StoryRecord:
    if not isinstance(payload, dict) or not payload:
        raise InvalidRecord("no story provided")
    try:
        return StoryRecord.model_validate(payload)
    except ValidationError as e:
        bad = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        msg = f"incomplete story provided: {', '.join(bad)}" if bad else "incomplete story provided"
        raise InvalidRecord(msg, cause=e) from e


# Per-number locks: update-then-insert is two statements, so two upserts of the
# same number must not interleave (single-process deployment). An entry lives
# only while some upsert holds or waits on it.
class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_key_locks: Dict[int, _KeyLock] = {}
_key_locks_guard = threading.Lock()


@contextmanager
def _locked(number: int) -> Iterator[None]:
    with _key_locks_guard:
        entry = _key_locks.get(number)
        if entry is None:
            entry = _key_locks[number] = _KeyLock()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _key_locks_guard:
            entry.users -= 1
            if entry.users == 0:
                del _key_locks[number]


def upsert_story(conn, record: StoryRecord) -> UpsertResult:
    """
    Update the story row for `record.number`, inserting it when no row matched.

    A failing UPDATE is surfaced as-is and never falls through to INSERT (that could
    hide a real error behind a duplicate key). A failing INSERT is surfaced, not retried.
    """
    fields = (record.year, record.day, record.title, record.prompt, record.content)
    with _locked(record.number):
        try:
            cur = conn.execute(UPDATE_STORY_SQL, (*fields, record.number))
        except psycopg.Error as e:
            raise StorageFailure(f"Story update failed for number={record.number}: {e}", cause=e) from e
        if cur.rowcount > 0:
            logger.info("Story %d updated", record.number)
            return UpsertResult(created=False, number=record.number)

        try:
            conn.execute(INSERT_STORY_SQL, (record.number, *fields))
        except psycopg.Error as e:
            raise StorageFailure(f"Story insert failed for number={record.number}: {e}", cause=e) from e
        logger.info("Story %d created", record.number)
        return UpsertResult(created=True, number=record.number)


def _fetch_one(conn, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
    try:
        row = conn.execute(sql, params).fetchone()
    except psycopg.Error as e:
        raise StorageFailure(f"Story read failed: {e}", cause=e) from e
    return dict(row) if row else None


def get_story(conn, number: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(conn, SELECT_STORY_SQL, (number,))


def get_last_story(conn) -> Optional[Dict[str, Any]]:
    """The story with the highest number."""
    return _fetch_one(conn, SELECT_LAST_STORY_SQL, ())
