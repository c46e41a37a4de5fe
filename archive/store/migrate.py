"""
Schema setup for the story archive.

Every `migrations/NNNN_name.sql` file is one schema step. Steps run in file-name
order, each inside its own transaction, and are recorded in `schema_migrations`
together with the sha256 of the file. A recorded step whose file has since been
edited stops the upgrade (SchemaDrift) rather than being skipped.

A Postgres advisory lock keeps two processes from upgrading at the same time.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row

from archive.store.config import StoreConfig, build_postgres_dsn, load_store_config

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "migrations"

SCHEMA_LOCK_KEY = 731904455211  # bigint

CREATE_LEDGER_SQL = (
    "CREATE TABLE IF NOT EXISTS schema_migrations ("
    "version text PRIMARY KEY, checksum text NOT NULL, applied_at timestamptz NOT NULL DEFAULT now())"
)
SELECT_LEDGER_SQL = "SELECT version, checksum FROM schema_migrations"
RECORD_STEP_SQL = "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s)"


class SchemaDrift(RuntimeError):
    """A recorded schema step no longer matches its file."""


@dataclass(frozen=True)
class SchemaStep:
    version: str
    name: str
    checksum: str
    sql: str

    @classmethod
    def from_file(cls, path: Path) -> "SchemaStep":
        raw = path.read_bytes()
        version, _, name = path.stem.partition("_")
        return cls(
            version=version,
            name=name or path.stem,
            checksum=hashlib.sha256(raw).hexdigest(),
            sql=raw.decode("utf-8"),
        )


def schema_steps(directory: Path = SCHEMA_DIR) -> List[SchemaStep]:
    return [SchemaStep.from_file(p) for p in sorted(directory.glob("*.sql")) if p.is_file()]


def pending_steps(steps: Sequence[SchemaStep], recorded: Dict[str, str]) -> List[SchemaStep]:
    """Steps not yet recorded, in order. Raises SchemaDrift for a recorded step whose file changed."""
    pending: List[SchemaStep] = []
    for step in steps:
        seen = recorded.get(step.version)
        if seen is None:
            pending.append(step)
        elif seen != step.checksum:
            raise SchemaDrift(
                f"Schema step {step.version} ({step.name}) changed after it was applied: "
                f"recorded={seen[:12]} file={step.checksum[:12]}"
            )
    return pending


@contextmanager
def _schema_lock(conn) -> Iterator[None]:
    conn.execute("SELECT pg_advisory_lock(%s)", (SCHEMA_LOCK_KEY,))
    try:
        yield
    finally:
        conn.execute("SELECT pg_advisory_unlock(%s)", (SCHEMA_LOCK_KEY,))


def upgrade(conn, steps: Optional[Sequence[SchemaStep]] = None) -> List[str]:
    """Bring the schema up to date on an autocommit dict-row connection. Returns the versions applied."""
    steps = list(steps) if steps is not None else schema_steps()
    applied: List[str] = []
    with _schema_lock(conn):
        conn.execute(CREATE_LEDGER_SQL)
        recorded = {str(r["version"]): str(r["checksum"]) for r in conn.execute(SELECT_LEDGER_SQL).fetchall()}
        for step in pending_steps(steps, recorded):
            with conn.transaction():
                conn.execute(step.sql)
                conn.execute(RECORD_STEP_SQL, (step.version, step.checksum))
            logger.info("Applied schema step %s (%s)", step.version, step.name)
            applied.append(step.version)
    return applied


def _connect(dsn: str):
    return psycopg.connect(dsn, autocommit=True, row_factory=dict_row)


def upgrade_database(dsn: str) -> List[str]:
    with _connect(dsn) as conn:
        return upgrade(conn)


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Upgrade the schema at startup when DB_AUTO_MIGRATE=1 and Postgres is configured.

    Never raises: a failed upgrade is logged and reported in the message.
    Returns: (did_attempt, message)
    """
    cfg = cfg or load_store_config()
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        versions = upgrade_database(dsn)
    except Exception as e:
        logger.exception("Schema upgrade failed")
        return True, f"Schema upgrade failed: {e}"
    if versions:
        return True, f"Applied {len(versions)} schema step(s): {', '.join(versions)}"
    return True, "Schema is up to date"


def main() -> int:
    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    try:
        versions = upgrade_database(dsn)
    except SchemaDrift as e:
        print(str(e))
        return 1
    print(f"Applied schema step(s): {', '.join(versions)}" if versions else "Schema is up to date.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
