"""
Server-side sessions.

The browser only ever holds a signed session id; verifier, redirect target and
identity stay on the server. Two stores share one small interface:

- FileSessionStore: one JSON file per session under AUTH_SESSION_DIR (single node).
- MemorySessionStore: dict-backed, for tests and local experiments.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from archive.auth.config import AuthConfig

logger = logging.getLogger(__name__)

SESSION_SALT = "story-archive-session-v1"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class Session:
    session_id: str
    verifier: Optional[str] = None
    redirect: Optional[str] = None
    identity: Optional[Dict[str, Any]] = None

    def fields(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("session_id", None)
        return data

    @property
    def is_empty(self) -> bool:
        return not any(v is not None for v in self.fields().values())

    def rotate(self) -> str:
        """Move the session to a fresh id (on privilege change); returns the id it had before."""
        previous = self.session_id
        self.session_id = new_session_id()
        return previous


class MemorySessionStore:
    def __init__(self, ttl_seconds: int = 43200):
        self._data: Dict[str, tuple[float, Dict[str, Any]]] = {}
        self._ttl = ttl_seconds
        self._lock = threading.Lock()

    def load(self, session_id: str) -> Optional[Session]:
        with self._lock:
            entry = self._data.get(session_id)
            if entry is None:
                return None
            saved_at, fields = entry
            if time.time() - saved_at > self._ttl:
                self._data.pop(session_id, None)
                return None
            return Session(session_id=session_id, **fields)

    def save(self, session: Session) -> None:
        with self._lock:
            self._data[session.session_id] = (time.time(), session.fields())

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)


@dataclass
class FileSessionStore:
    """JSON file per session; expiry is driven by file mtime."""

    base_dir: str = "./sessions"
    ttl_seconds: int = 43200

    def __post_init__(self) -> None:
        self.base_dir = os.path.abspath(self.base_dir)
        Path(self.base_dir).mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Optional[Path]:
        # Session ids end up in file names; refuse anything that is not a token.
        if not _SESSION_ID_RE.match(session_id or ""):
            return None
        return Path(self.base_dir) / f"{session_id}.json"

    def load(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if path is None or not path.exists():
            return None
        try:
            if time.time() - path.stat().st_mtime > self.ttl_seconds:
                self.delete(session_id)
                return None
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable session file %s: %s", path.name, str(e))
            return None
        if not isinstance(data, dict):
            return None
        identity = data.get("identity")
        return Session(
            session_id=session_id,
            verifier=data.get("verifier") or None,
            redirect=data.get("redirect") or None,
            identity=identity if isinstance(identity, dict) else None,
        )

    def save(self, session: Session) -> None:
        path = self._path(session.session_id)
        if path is None:
            raise ValueError("Invalid session id")
        payload = json.dumps(session.fields(), sort_keys=True)
        # Atomic replace so a concurrent reader never sees a half-written file.
        fd, tmp = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, session_id: str) -> None:
        path = self._path(session_id)
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass


# ---- Cookie transport ----


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-story_session" if cfg.cookie_secure else "story_session"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session_id(cfg: AuthConfig, session_id: str) -> Optional[str]:
    s = _serializer(cfg)
    if s is None:
        return None
    return s.dumps(session_id)


def decode_session_id(cfg: AuthConfig, value: str | None) -> Optional[str]:
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        sid = s.loads(value, max_age=cfg.session_ttl_seconds)
    except (BadSignature, BadTimeSignature, ValueError):
        return None
    if not isinstance(sid, str) or not _SESSION_ID_RE.match(sid):
        return None
    return sid


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
