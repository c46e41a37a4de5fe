"""
Story archive HTTP server.

Serves stories, tag sets and favourites; sign-in goes through an OIDC provider
(authorization code + PKCE). Only the configured admin identity may write
stories and tags.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

import psycopg
from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from psycopg.rows import dict_row

from archive.auth.config import AuthConfig, load_auth_config
from archive.auth.deps import (
    SessionStore,
    admin_session,
    get_provider,
    get_session,
    resolve_session,
    signed_in_email,
)
from archive.auth.flow import handle_callback, initiate, sign_out
from archive.auth.oidc import ProviderClient
from archive.auth.session import FileSessionStore, Session, encode_session_id, session_cookie_kwargs
from archive.auth.util import sanitize_redirect
from archive.errors import ArchiveError, InvalidRecord, InvalidTagSet, StorageFailure, StoryNotFound
from archive.store.config import build_postgres_dsn, load_store_config
from archive.store.favourites import list_favourites, parse_favourite, set_favourite
from archive.store.stories import get_last_story, get_story, parse_story, upsert_story
from archive.store.tags import list_tags, parse_tags, replace_tags

logger = logging.getLogger(__name__)

app = FastAPI(title="Story archive")

_session_store_cache: Dict[Tuple[str, int], SessionStore] = {}
_session_store_lock = threading.Lock()


def _get_session_store(cfg: AuthConfig) -> SessionStore:
    """Return a cached file-backed session store for the configured directory."""
    key = (os.path.abspath(cfg.session_dir), cfg.session_ttl_seconds)

    cached = _session_store_cache.get(key)
    if cached is not None:
        return cached

    with _session_store_lock:
        cached = _session_store_cache.get(key)
        if cached is not None:
            return cached
        store = FileSessionStore(base_dir=cfg.session_dir, ttl_seconds=cfg.session_ttl_seconds)
        _session_store_cache[key] = store
        return store


def _get_db_connection():
    """Get an autocommit Postgres connection with dict rows, or None if not configured."""
    dsn = build_postgres_dsn(load_store_config())
    if not dsn:
        return None
    return psycopg.connect(dsn, autocommit=True, row_factory=dict_row)


@contextmanager
def _db() -> Iterator[Any]:
    try:
        conn = _get_db_connection()
    except psycopg.Error as e:
        raise StorageFailure(f"Postgres connection failed: {e}", cause=e) from e
    if conn is None:
        raise StorageFailure("Database not configured")
    try:
        yield conn
    finally:
        conn.close()


def _parse_story_number(raw: str, error_cls=InvalidRecord) -> int:
    try:
        number = int(raw)
    except (TypeError, ValueError):
        raise error_cls(f"invalid story number: {raw!r}") from None
    if number <= 0:
        raise error_cls(f"invalid story number: {raw!r}")
    return number


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---- Startup ----


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """
    Optional dev behavior: auto-apply DB migrations when DB_AUTO_MIGRATE=1.

    This should never prevent the server from starting; failures are logged.
    """
    from archive.store.migrate import maybe_auto_migrate

    did_attempt, msg = maybe_auto_migrate()
    if did_attempt:
        logger.info("DB migrations: %s", msg)


@app.on_event("startup")
def _startup_discover_provider() -> None:
    """
    Resolve the OIDC provider once, before any request is served.

    Failure is fatal: the server must not run without a working sign-in.
    """
    cfg = load_auth_config()
    if not cfg.session_secret:
        raise RuntimeError("AUTH_SESSION_SECRET is required")
    if not cfg.oidc_enabled:
        raise RuntimeError("OIDC_DISCOVERY_URL and OIDC_CLIENT_ID are required")
    if not cfg.admin_email:
        logger.warning("AUTH_ADMIN_EMAIL is not set: story and tag writes are disabled")
    try:
        app.state.provider = ProviderClient.discover(cfg)
    except Exception:
        logger.critical("OIDC discovery failed for %s; aborting startup", cfg.oidc_discovery_url)
        raise


# ---- Middleware / error rendering ----


def _persist_session(store: SessionStore, session: Session, before: Dict[str, Any], replaced_id: Optional[str]) -> None:
    """Write back a changed session; drop the record under `replaced_id` after a rotation."""
    if replaced_id is not None:
        store.delete(replaced_id)
    elif session.fields() == before:
        return
    if session.is_empty:
        store.delete(session.session_id)
    else:
        store.save(session)


@app.middleware("http")
async def session_middleware(request: Request, call_next):
    """Attach the server-side session, persist it if changed, and log the request."""
    start_time = time.time()
    cfg = load_auth_config()
    store = _get_session_store(cfg)
    # Session stores do blocking file I/O; keep it off the event loop.
    session, is_new = await run_in_threadpool(resolve_session, request, store)
    original_id = session.session_id
    before = session.fields()
    request.state.session = session

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise
    finally:
        rotated = session.session_id != original_id
        await run_in_threadpool(_persist_session, store, session, before, original_id if rotated else None)

    if is_new or rotated:
        value = encode_session_id(cfg, session.session_id)
        if value:
            response.set_cookie(**session_cookie_kwargs(cfg, value))

    process_time = time.time() - start_time
    logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
    return response


@app.exception_handler(ArchiveError)
async def _archive_error_handler(request: Request, exc: ArchiveError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s: %s",
            request.method,
            request.url.path,
            type(exc).__name__,
            exc.detail,
            exc_info=exc.cause,
        )
    else:
        logger.warning("%s %s rejected: %s: %s", request.method, request.url.path, type(exc).__name__, exc.detail)
    return _no_store(JSONResponse(status_code=exc.status_code, content={"error": exc.public_message}))


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("%s %s rejected: malformed request body", request.method, request.url.path)
    return JSONResponse(status_code=400, content={"error": "malformed request body"})


# ---- Routes ----


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/sign-in")
def sign_in(
    request: Request,
    session: Session = Depends(get_session),
    provider: ProviderClient = Depends(get_provider),
):
    """Start sign-in: remember where the user came from, then send them to the provider."""
    cfg = load_auth_config()
    allowed = [cfg.public_base_url or "", *cfg.allowed_redirect_origins]
    target = sanitize_redirect(request.headers.get("referer"), allowed)
    url = initiate(session, provider, target)
    return _no_store(RedirectResponse(url=url, status_code=302))


@app.get("/callback")
def callback(
    request: Request,
    session: Session = Depends(get_session),
    provider: ProviderClient = Depends(get_provider),
):
    """Finish sign-in and send the user back where they started."""
    target = handle_callback(session, provider, dict(request.query_params))
    return _no_store(RedirectResponse(url=target, status_code=302))


@app.get("/sign-out")
def sign_out_route(session: Session = Depends(get_session)) -> JSONResponse:
    sign_out(session)
    return _no_store(JSONResponse(content={}))


@app.get("/account")
def account(session: Session = Depends(get_session)) -> JSONResponse:
    identity = session.identity or {}
    if not identity.get("email"):
        return _no_store(JSONResponse(content={"signedIn": False}))
    return _no_store(JSONResponse(content={**identity, "signedIn": True}))


@app.get("/story/{story_id}")
def read_story(story_id: str) -> Dict[str, Any]:
    """GET /story/3123 returns story 3123; GET /story/last returns the highest-numbered story."""
    with _db() as conn:
        if story_id == "last":
            story = get_last_story(conn)
        else:
            story = get_story(conn, _parse_story_number(story_id))
    if story is None:
        raise StoryNotFound(f"story {story_id} not found")
    return story


def _json_body(error_cls):
    """Dependency factory: the raw JSON body, decoded only after the route's gate dependencies ran."""

    async def _read(request: Request) -> Any:
        raw = await request.body()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise error_cls("malformed request body", cause=e) from e

    return _read


@app.post("/story")
def write_story(
    session: Session = Depends(admin_session),
    payload: Any = Depends(_json_body(InvalidRecord)),
) -> Dict[str, Any]:
    """Create or fully overwrite the story with the given number."""
    record = parse_story(payload)
    with _db() as conn:
        result = upsert_story(conn, record)
    return {"message": result.message, "number": result.number}


@app.get("/tags/{story_id}")
def read_tags(story_id: str) -> Dict[str, Any]:
    number = _parse_story_number(story_id, InvalidTagSet)
    with _db() as conn:
        tags = list_tags(conn, number)
    return {"number": number, "tags": tags}


@app.post("/tags/{story_id}")
def write_tags(
    story_id: str,
    session: Session = Depends(admin_session),
    payload: Any = Depends(_json_body(InvalidTagSet)),
) -> Dict[str, Any]:
    """Replace the story's tag set with the supplied list (an empty list clears it)."""
    number = _parse_story_number(story_id, InvalidTagSet)
    tags = parse_tags(payload)
    with _db() as conn:
        replace_tags(conn, number, tags, atomic=load_store_config().tags_atomic)
    return {"success": True}


@app.get("/favourite")
def read_favourites(email: str = Depends(signed_in_email)) -> Dict[str, Any]:
    with _db() as conn:
        numbers = list_favourites(conn, email)
    return {"favourites": numbers}


@app.post("/favourite")
def write_favourite(
    email: str = Depends(signed_in_email),
    payload: Any = Depends(_json_body(InvalidRecord)),
) -> Dict[str, Any]:
    fav = parse_favourite(payload)
    with _db() as conn:
        set_favourite(conn, email, fav.number, fav.set_)
    return {"success": True}


def run(host: str = "0.0.0.0", port: int = 3000, log_level: Optional[str] = None) -> None:
    import uvicorn

    log_level = (log_level or os.getenv("LOG_LEVEL", "info")).upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting story archive on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
