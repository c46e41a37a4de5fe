from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

import psycopg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatementResult:
    """Outcome of one storage statement: either ok, or the driver error it raised."""

    sql: str
    params: Sequence[Any] = ()
    rowcount: int = 0
    error: Optional[psycopg.Error] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_statement(conn, sql: str, params: Sequence[Any] = ()) -> StatementResult:
    """Execute one statement, capturing a driver error instead of raising it."""
    try:
        cur = conn.execute(sql, params)
    except psycopg.Error as e:
        return StatementResult(sql=sql, params=tuple(params), error=e)
    return StatementResult(sql=sql, params=tuple(params), rowcount=cur.rowcount)


def first_error(results: Iterable[StatementResult]) -> Optional[StatementResult]:
    """
    First failed result in program order, or None when all succeeded.

    Later failures are logged but never reported: the caller only ever surfaces the first one.
    """
    first: Optional[StatementResult] = None
    for r in results:
        if r.ok:
            continue
        if first is None:
            first = r
        else:
            logger.warning("Suppressed later storage error (%s): %s", r.sql, str(r.error))
    return first
