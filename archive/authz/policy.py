from __future__ import annotations

from typing import Any, Dict, Optional

from archive.auth.session import Session
from archive.errors import NotAuthorized, NotSignedIn


def identity_email(session: Optional[Session]) -> Optional[str]:
    identity: Optional[Dict[str, Any]] = session.identity if session is not None else None
    if not identity:
        return None
    email = identity.get("email")
    return email if isinstance(email, str) and email else None


def is_authorized(session: Optional[Session], admin_email: Optional[str]) -> bool:
    """
    True iff the session's identity email equals the configured admin email.

    Comparison is exact and case-sensitive: `Admin@x.org` does not match `admin@x.org`.
    An unconfigured admin email never authorizes anyone.
    """
    if not admin_email:
        return False
    email = identity_email(session)
    return email is not None and email == admin_email


def require_admin(session: Optional[Session], admin_email: Optional[str]) -> None:
    if not is_authorized(session, admin_email):
        raise NotAuthorized(f"Write denied for {identity_email(session) or 'anonymous'}")


def require_signed_in(session: Optional[Session]) -> str:
    email = identity_email(session)
    if email is None:
        raise NotSignedIn()
    return email
