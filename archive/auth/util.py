from __future__ import annotations

import base64
import os
from typing import Iterable, Optional
from urllib.parse import urlsplit


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def _origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}".lower()


def sanitize_redirect(target: Optional[str], allowed_origins: Iterable[str]) -> Optional[str]:
    """
    Prevent open-redirects: keep relative paths like `/story/3`, and absolute URLs
    only when their origin is allowed. Anything else is dropped (caller falls back to `/`).
    """
    t = (target or "").strip().replace("\r", "").replace("\n", "")
    if not t:
        return None
    if t.startswith("/"):
        # Disallow scheme-relative: `//evil.com`
        return None if t.startswith("//") else t
    origin = _origin(t)
    allowed = {(_origin(o) or o.rstrip("/")).lower() for o in allowed_origins if o}
    if origin and origin in allowed:
        return t
    return None
