from __future__ import annotations

from typing import Any

import psycopg
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

from archive.errors import InvalidRecord, StorageFailure

INSERT_FAVOURITE_SQL = "INSERT INTO favourites (email, number) VALUES (%s, %s) ON CONFLICT DO NOTHING"
DELETE_FAVOURITE_SQL = "DELETE FROM favourites WHERE email = %s AND number = %s"
SELECT_FAVOURITES_SQL = "SELECT number FROM favourites WHERE email = %s ORDER BY number"


class FavouriteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    number: StrictInt = Field(gt=0)
    set_: StrictBool = Field(alias="set")


def parse_favourite(payload: Any) -> FavouriteRequest:
    try:
        return FavouriteRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRecord("favourite needs a story number and a boolean set", cause=e) from e


def set_favourite(conn, email: str, number: int, flag: bool) -> None:
    """Mark (flag=True) or unmark a story as favourite for one user. Both are idempotent."""
    sql = INSERT_FAVOURITE_SQL if flag else DELETE_FAVOURITE_SQL
    try:
        conn.execute(sql, (email, number))
    except psycopg.Error as e:
        raise StorageFailure(f"Favourite update failed for number={number}: {e}", cause=e) from e


def list_favourites(conn, email: str) -> list[int]:
    try:
        rows = conn.execute(SELECT_FAVOURITES_SQL, (email,)).fetchall()
    except psycopg.Error as e:
        raise StorageFailure(f"Favourite read failed: {e}", cause=e) from e
    return [int(r["number"]) for r in rows]
