from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from archive.auth.config import AuthConfig
from archive.auth.util import b64url
from archive.errors import ProviderUnavailable, TokenExchangeFailed, UserInfoFetchFailed

logger = logging.getLogger(__name__)

SCOPES = "openid email profile"


def fetch_discovery(discovery_url: str, *, timeout: float) -> Dict[str, Any]:
    """
    Fetch the OIDC discovery document from the provider.

    Called once at startup; the result is frozen into a ProviderClient.
    """
    r = requests.get(discovery_url, timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid OIDC discovery document")
    return data


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str

    @classmethod
    def from_discovery(cls, disc: Dict[str, Any]) -> "ProviderMetadata":
        fields = {}
        for name in ("authorization_endpoint", "token_endpoint", "userinfo_endpoint"):
            value = str(disc.get(name) or "").strip()
            if not value:
                raise ValueError(f"OIDC discovery missing {name}")
            fields[name] = value
        return cls(issuer=str(disc.get("issuer") or ""), **fields)


@dataclass(frozen=True)
class ProviderClient:
    """
    Immutable view of one discovered OIDC provider plus our client registration.

    Built once during startup (see `discover`) and shared read-only by all requests.
    """

    metadata: ProviderMetadata
    client_id: str
    client_secret: Optional[str]
    redirect_uri: str
    timeout: float = 10.0

    @classmethod
    def discover(cls, cfg: AuthConfig) -> "ProviderClient":
        if not cfg.oidc_discovery_url:
            raise ValueError("OIDC discovery URL not configured")
        if not cfg.oidc_client_id:
            raise ValueError("OIDC client ID not configured")
        if not cfg.public_base_url:
            raise ValueError("AUTH_PUBLIC_BASE_URL is required for OIDC")

        disc = fetch_discovery(cfg.oidc_discovery_url, timeout=cfg.oidc_timeout_seconds)
        metadata = ProviderMetadata.from_discovery(disc)
        logger.info("OIDC provider discovered: issuer=%s", metadata.issuer or "?")
        return cls(
            metadata=metadata,
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            redirect_uri=cfg.callback_url,
            timeout=cfg.oidc_timeout_seconds,
        )

    def build_authorize_url(self, *, code_challenge: str) -> str:
        """Build the authorization URL (PKCE S256)."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.metadata.authorization_endpoint}?{urlencode(params)}"

    def exchange_code_for_tokens(self, *, code: str, code_verifier: str) -> Dict[str, Any]:
        """
        Exchange authorization code for tokens, presenting the PKCE code_verifier.

        The provider recomputes the challenge from the verifier and rejects the
        exchange unless it matches the one sent with the authorization request.
        """
        payload = {
            "client_id": self.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        try:
            r = requests.post(self.metadata.token_endpoint, data=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderUnavailable(f"Token endpoint unreachable: {e}", cause=e) from e
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise TokenExchangeFailed(f"Token exchange failed (status={r.status_code})")
        try:
            data = r.json()
        except ValueError as e:
            raise TokenExchangeFailed("Invalid token response", cause=e) from e
        if not isinstance(data, dict) or not str(data.get("access_token") or "").strip():
            raise TokenExchangeFailed("Token response missing access_token")
        return data

    def fetch_userinfo(self, *, access_token: str) -> Dict[str, Any]:
        """Fetch identity claims for an access token from the userinfo endpoint."""
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            r = requests.get(self.metadata.userinfo_endpoint, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ProviderUnavailable(f"Userinfo endpoint unreachable: {e}", cause=e) from e
        if r.status_code >= 400:
            raise UserInfoFetchFailed(f"Userinfo request failed (status={r.status_code})")
        try:
            claims = r.json()
        except ValueError as e:
            raise UserInfoFetchFailed("Invalid userinfo response", cause=e) from e
        if not isinstance(claims, dict):
            raise UserInfoFetchFailed("Invalid userinfo response")
        if not str(claims.get("email") or "").strip():
            raise UserInfoFetchFailed("Missing email claim")
        return claims


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)
