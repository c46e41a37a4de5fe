"""
Pytest config.

Pins the repo root on sys.path so `import archive` works from any pytest entrypoint,
sets a complete test environment, stubs OIDC discovery (the server refuses to start
without it) and provides an in-memory stand-in for the psycopg connection surface the
store modules use.
"""

from __future__ import annotations

import copy
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import psycopg
import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

ADMIN_EMAIL = "writer@example.org"

DISCOVERY = {
    "issuer": "https://id.example.test",
    "authorization_endpoint": "https://id.example.test/authorize",
    "token_endpoint": "https://id.example.test/token",
    "userinfo_endpoint": "https://id.example.test/userinfo",
    "jwks_uri": "https://id.example.test/jwks",
}


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    from archive.auth.config import load_auth_config
    from archive.store.config import load_store_config

    monkeypatch.setenv("AUTH_SESSION_SECRET", "test-secret-key-for-testing-purposes-only")
    monkeypatch.setenv("AUTH_PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setenv("AUTH_COOKIE_SECURE", "0")
    monkeypatch.setenv("AUTH_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("AUTH_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("OIDC_DISCOVERY_URL", "https://id.example.test/.well-known/openid-configuration")
    monkeypatch.setenv("OIDC_CLIENT_ID", "story-archive")
    monkeypatch.setenv("OIDC_CLIENT_SECRET", "client-secret")
    for name in (
        "AUTH_ALLOWED_REDIRECT_ORIGINS",
        "POSTGRES_DSN",
        "POSTGRES_HOST",
        "POSTGRES_DB",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "DB_AUTO_MIGRATE",
        "STORE_TAGS_ATOMIC",
    ):
        monkeypatch.delenv(name, raising=False)
    load_auth_config.cache_clear()
    load_store_config.cache_clear()

    def _fake_discovery(url: str, *, timeout: float) -> Dict[str, Any]:
        return dict(DISCOVERY)

    monkeypatch.setattr("archive.auth.oidc.fetch_discovery", _fake_discovery)
    yield
    load_auth_config.cache_clear()
    load_store_config.cache_clear()


class FakeCursor:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, rowcount: int = 0) -> None:
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):  # type: ignore[no-untyped-def]
        return self._rows[0] if self._rows else None

    def fetchall(self):  # type: ignore[no-untyped-def]
        return list(self._rows)


class FakeDb:
    """
    Dict-backed stand-in for an autocommit psycopg connection.

    Understands exactly the statements issued by archive.store. `fail_on` makes a matching
    statement raise before it touches any data.
    """

    def __init__(self) -> None:
        self.stories: Dict[int, Dict[str, Any]] = {}
        self.tags: List[Tuple[int, str]] = []
        self.favourites: Set[Tuple[str, int]] = set()
        self.executed: List[Tuple[str, tuple]] = []
        self.transactions = 0
        self.closed = False
        self._failures: List[Tuple[str, Optional[tuple], Exception]] = []

    def fail_on(self, sql_prefix: str, params: Optional[tuple] = None, exc: Optional[Exception] = None) -> None:
        self._failures.append((sql_prefix, params, exc or psycopg.OperationalError(f"boom: {sql_prefix}")))

    def tags_for(self, number: int) -> List[str]:
        return sorted(tag for n, tag in self.tags if n == number)

    def statements(self, sql_prefix: str) -> List[tuple]:
        return [params for sql, params in self.executed if sql.startswith(sql_prefix)]

    def execute(self, sql: str, params=()):  # type: ignore[no-untyped-def]
        params = tuple(params)
        self.executed.append((sql, params))
        for prefix, match, exc in self._failures:
            if sql.startswith(prefix) and (match is None or match == params):
                raise exc

        if sql.startswith("UPDATE stories"):
            year, day, title, prompt, content, number = params
            row = self.stories.get(number)
            if row is None:
                return FakeCursor(rowcount=0)
            row.update(year=year, day=day, title=title, prompt=prompt, content=content)
            return FakeCursor(rowcount=1)
        if sql.startswith("INSERT INTO stories"):
            number, year, day, title, prompt, content = params
            if number in self.stories:
                raise psycopg.errors.UniqueViolation('duplicate key value violates unique constraint "stories_pkey"')
            self.stories[number] = dict(
                number=number, year=year, day=day, title=title, prompt=prompt, content=content
            )
            return FakeCursor(rowcount=1)
        if sql.startswith("SELECT number, year") and "WHERE number" in sql:
            row = self.stories.get(params[0])
            return FakeCursor([dict(row)] if row else [])
        if sql.startswith("SELECT number, year") and "ORDER BY number DESC" in sql:
            if not self.stories:
                return FakeCursor([])
            return FakeCursor([dict(self.stories[max(self.stories)])])

        if sql.startswith("DELETE FROM tags"):
            before = len(self.tags)
            self.tags = [t for t in self.tags if t[0] != params[0]]
            return FakeCursor(rowcount=before - len(self.tags))
        if sql.startswith("INSERT INTO tags"):
            tag, number = params
            if (number, tag) in self.tags:
                raise psycopg.errors.UniqueViolation('duplicate key value violates unique constraint "tags_pkey"')
            self.tags.append((number, tag))
            return FakeCursor(rowcount=1)
        if sql.startswith("SELECT tag FROM tags"):
            return FakeCursor([{"tag": t} for t in self.tags_for(params[0])])

        if sql.startswith("INSERT INTO favourites"):
            key = (params[0], params[1])
            added = key not in self.favourites
            self.favourites.add(key)
            return FakeCursor(rowcount=1 if added else 0)
        if sql.startswith("DELETE FROM favourites"):
            key = (params[0], params[1])
            removed = key in self.favourites
            self.favourites.discard(key)
            return FakeCursor(rowcount=1 if removed else 0)
        if sql.startswith("SELECT number FROM favourites"):
            numbers = sorted(n for e, n in self.favourites if e == params[0])
            return FakeCursor([{"number": n} for n in numbers])

        raise AssertionError(f"unexpected SQL: {sql}")

    @contextmanager
    def transaction(self):  # type: ignore[no-untyped-def]
        snapshot = copy.deepcopy((self.stories, self.tags, self.favourites))
        self.transactions += 1
        try:
            yield self
        except BaseException:
            self.stories, self.tags, self.favourites = snapshot
            raise

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_db() -> FakeDb:
    return FakeDb()


@pytest.fixture
def client(fake_db: FakeDb, monkeypatch: pytest.MonkeyPatch):
    from fastapi.testclient import TestClient

    import archive.api.server as server

    monkeypatch.setattr(server, "_get_db_connection", lambda: fake_db)
    # Context manager runs the startup hooks (provider discovery).
    with TestClient(server.app) as c:
        yield c


@pytest.fixture
def sign_in(client, monkeypatch: pytest.MonkeyPatch) -> Callable[..., Any]:
    """Run the real /sign-in + /callback legs with the provider's HTTP calls stubbed."""
    from archive.auth.oidc import ProviderClient

    def _sign_in(email: str, referer: Optional[str] = None):  # type: ignore[no-untyped-def]
        monkeypatch.setattr(
            ProviderClient,
            "exchange_code_for_tokens",
            lambda self, *, code, code_verifier: {"access_token": f"at-{code}", "token_type": "Bearer"},
        )
        monkeypatch.setattr(
            ProviderClient,
            "fetch_userinfo",
            lambda self, *, access_token: {"email": email, "name": "Test Writer", "sub": "sub-1"},
        )
        headers = {"referer": referer} if referer else {}
        r = client.get("/sign-in", headers=headers, follow_redirects=False)
        assert r.status_code == 302
        r = client.get("/callback", params={"code": "auth-code"}, follow_redirects=False)
        assert r.status_code == 302
        return r

    return _sign_in
