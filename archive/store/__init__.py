"""Story storage: stories, tag sets and favourites in Postgres.

Functions here take an open psycopg connection and raise archive.errors on failure;
connection lifecycle belongs to the caller (one connection per request).
"""

from __future__ import annotations
