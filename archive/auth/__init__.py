"""
Sign-in for the story archive.

Design goals:
- OIDC authorization-code flow with PKCE (S256) against any discoverable provider.
- Server-side sessions; the cookie only carries a signed, opaque session id.
- The PKCE verifier lives in the session and is single use.
"""
