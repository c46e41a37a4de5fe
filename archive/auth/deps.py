from __future__ import annotations

from typing import Optional, Union

from fastapi import Request

from archive.auth.config import load_auth_config
from archive.auth.oidc import ProviderClient
from archive.auth.session import (
    FileSessionStore,
    MemorySessionStore,
    Session,
    decode_session_id,
    new_session_id,
    session_cookie_name,
)
from archive.authz.policy import require_admin, require_signed_in
from archive.errors import ProviderUnavailable

SessionStore = Union[FileSessionStore, MemorySessionStore]


def resolve_session(request: Request, store: SessionStore) -> tuple[Session, bool]:
    """
    Return the session for this request and whether its id is new.

    A validly signed cookie whose record is missing (expired, or never persisted
    because it was empty) keeps its id; an absent or forged cookie gets a new one.
    """
    cfg = load_auth_config()
    sid = decode_session_id(cfg, request.cookies.get(session_cookie_name(cfg)))
    if sid is None:
        return Session(session_id=new_session_id()), True
    session = store.load(sid)
    if session is None:
        session = Session(session_id=sid)
    return session, False


def get_session(request: Request) -> Session:
    """FastAPI dependency: the session attached by the session middleware."""
    return request.state.session


def get_provider(request: Request) -> ProviderClient:
    """FastAPI dependency: the provider client resolved at startup."""
    provider: Optional[ProviderClient] = getattr(request.app.state, "provider", None)
    if provider is None:
        raise ProviderUnavailable("Identity provider not initialized")
    return provider


def admin_session(request: Request) -> Session:
    """FastAPI dependency: the session, only if it belongs to the configured admin."""
    session: Session = request.state.session
    require_admin(session, load_auth_config().admin_email)
    return session


def signed_in_email(request: Request) -> str:
    """FastAPI dependency: the signed-in user's email, or NotSignedIn."""
    return require_signed_in(request.state.session)
