from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional


@dataclass(frozen=True)
class AuthConfig:
    # OIDC provider
    oidc_discovery_url: Optional[str]
    oidc_client_id: Optional[str]
    oidc_client_secret: Optional[str]
    oidc_timeout_seconds: float

    # Session configuration
    public_base_url: Optional[str]  # Required: callback URL is built from it
    session_secret: Optional[str]  # Required for signing the session cookie
    session_ttl_seconds: int
    session_dir: str
    cookie_secure: bool

    # Post-login redirects are only honoured for these origins (plus public_base_url)
    allowed_redirect_origins: List[str]

    # The one identity allowed to write stories and tags
    admin_email: Optional[str]

    @property
    def oidc_enabled(self) -> bool:
        """OIDC is enabled if discovery URL and client id are configured."""
        return bool(self.oidc_discovery_url and self.oidc_client_id)

    @property
    def callback_url(self) -> str:
        base = (self.public_base_url or "").strip().rstrip("/")
        return f"{base}/callback"


def _parse_csv(value: str) -> List[str]:
    items = [x.strip().rstrip("/").lower() for x in (value or "").split(",")]
    return [x for x in items if x]


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    OIDC is enabled if OIDC_DISCOVERY_URL and OIDC_CLIENT_ID are set. The admin email is
    compared verbatim (case-sensitive), so it is not normalized here.
    """
    public_base_url = (os.getenv("AUTH_PUBLIC_BASE_URL", "") or "").strip() or None
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = True if (public_base_url or "").startswith("https://") else False

    ttl = int(float((os.getenv("AUTH_SESSION_TTL_SECONDS", "") or "43200").strip() or "43200"))  # 12h default
    if ttl <= 60:
        ttl = 60

    try:
        timeout = float((os.getenv("OIDC_TIMEOUT_SECONDS", "") or "10").strip() or "10")
    except ValueError:
        timeout = 10.0
    if timeout <= 0:
        timeout = 10.0

    return AuthConfig(
        oidc_discovery_url=(os.getenv("OIDC_DISCOVERY_URL", "") or "").strip() or None,
        oidc_client_id=(os.getenv("OIDC_CLIENT_ID", "") or "").strip() or None,
        oidc_client_secret=(os.getenv("OIDC_CLIENT_SECRET", "") or "").strip() or None,
        oidc_timeout_seconds=timeout,
        public_base_url=public_base_url,
        session_secret=(os.getenv("AUTH_SESSION_SECRET", "") or "").strip() or None,
        session_ttl_seconds=ttl,
        session_dir=(os.getenv("AUTH_SESSION_DIR", "") or "").strip() or "./sessions",
        cookie_secure=cookie_secure,
        allowed_redirect_origins=_parse_csv(os.getenv("AUTH_ALLOWED_REDIRECT_ORIGINS", "")),
        admin_email=(os.getenv("AUTH_ADMIN_EMAIL", "") or "").strip() or None,
    )
