"""
The two-leg sign-in handshake.

initiate() runs on GET /sign-in: it mints a PKCE verifier, parks it in the
server-side session next to the post-login redirect target, and returns the
provider URL carrying only the derived challenge.

handle_callback() runs on GET /callback: it takes the verifier out of the
session (whatever happens next, it is gone), exchanges the code with it, and
resolves the identity claims. A successful sign-in moves the session to a new id.

Binding the verifier to the session means an attacker who intercepts the
authorization code cannot redeem it without also holding this session, and
single-use clearing stops a captured callback URL from being replayed.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from archive.auth.oidc import ProviderClient, pkce_challenge
from archive.auth.session import Session
from archive.auth.util import random_token
from archive.errors import MissingProofState, TokenExchangeFailed

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT = "/"


def initiate(session: Session, provider: ProviderClient, referer: Optional[str]) -> str:
    verifier = random_token(32)  # 43 chars (base64url) -> valid PKCE verifier
    challenge = pkce_challenge(verifier)

    # At most one login attempt in flight per session: a newer one wins.
    session.verifier = verifier
    session.redirect = referer
    return provider.build_authorize_url(code_challenge=challenge)


def handle_callback(session: Session, provider: ProviderClient, params: Mapping[str, str]) -> str:
    verifier = session.verifier
    redirect = session.redirect
    session.verifier = None
    session.redirect = None

    if not verifier:
        raise MissingProofState("No PKCE verifier in session (expired, lost or replayed callback)")

    error = (params.get("error") or "").strip()
    if error:
        desc = (params.get("error_description") or "").strip()
        raise TokenExchangeFailed(f"Provider returned error={error} {desc}".strip())

    code = (params.get("code") or "").strip()
    if not code:
        raise TokenExchangeFailed("Callback is missing the authorization code")

    tokens = provider.exchange_code_for_tokens(code=code, code_verifier=verifier)
    claims = provider.fetch_userinfo(access_token=str(tokens["access_token"]))

    # New id for the signed-in session; an id planted before sign-in stays anonymous.
    session.rotate()
    session.identity = dict(claims)
    logger.info("Signed in: %s", claims.get("email"))
    return redirect or DEFAULT_REDIRECT


def sign_out(session: Session) -> None:
    session.identity = None
