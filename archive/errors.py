"""
Error taxonomy for the story archive.

Every error carries the HTTP status it maps to and a client-safe message. The
server renders them as `{"error": public_message}`; the full detail (and any
wrapped driver error) only goes to the server log.
"""

from __future__ import annotations

from typing import Optional


class ArchiveError(Exception):
    status_code: int = 500
    public_message: str = "Internal error"

    def __init__(self, detail: Optional[str] = None, *, cause: Optional[BaseException] = None) -> None:
        self.detail = detail or self.public_message
        self.cause = cause
        super().__init__(self.detail)


# ---- Sign-in handshake ----


class HandshakeError(ArchiveError):
    """Any failure of the OIDC callback leg."""


class MissingProofState(HandshakeError):
    public_message = "Sign-in session expired or already used"


class TokenExchangeFailed(HandshakeError):
    public_message = "Token exchange failed"


class UserInfoFetchFailed(HandshakeError):
    public_message = "Could not fetch user info"


class ProviderUnavailable(HandshakeError):
    public_message = "Identity provider unavailable"


# ---- Gate ----


class NotAuthorized(ArchiveError):
    status_code = 403
    public_message = "Not authorized"


class NotSignedIn(ArchiveError):
    status_code = 400
    public_message = "Not logged in"


# ---- Input validation ----


class ValidationFailed(ArchiveError):
    status_code = 400

    def __init__(self, detail: Optional[str] = None, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(detail, cause=cause)
        # Validation messages are safe to show as-is.
        self.public_message = self.detail


class InvalidRecord(ValidationFailed):
    public_message = "incomplete story provided"


class InvalidTagSet(ValidationFailed):
    public_message = "invalid tag list provided"


class StoryNotFound(ArchiveError):
    status_code = 404
    public_message = "story not found"


# ---- Storage ----


class StorageFailure(ArchiveError):
    public_message = "Storage failure"
