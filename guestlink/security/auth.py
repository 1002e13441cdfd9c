"""Owner authentication: HS256 JWT bearer tokens.

Owners are authenticated upstream; this service only verifies the token
they present and takes the ``sub`` claim as the owner id.  Guests never
hold a JWT: they authenticate with link and session tokens only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from guestlink.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_TOKEN_TTL = timedelta(hours=24)

# Paths that skip owner authentication (exact method + path match)
PUBLIC_ROUTES: set[tuple[str, str]] = {
    ("GET", "/health"),
}
PUBLIC_PREFIXES = ("/chat/", "/webhooks/")
SKIP_METHODS = {"OPTIONS"}


def create_owner_token(owner_id: str, config: Settings | None = None, ttl: timedelta = _TOKEN_TTL) -> str:
    """Issue a JWT for *owner_id* (tests and local tooling)."""
    config = config or default_settings
    now = datetime.now(timezone.utc)
    payload = {"sub": owner_id, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, config.owner_jwt_secret, algorithm=config.owner_jwt_algorithm)


def verify_owner_token(token: str, config: Settings | None = None) -> dict | None:
    """Verify an owner JWT. Returns claims or None."""
    config = config or default_settings
    try:
        claims = jwt.decode(token, config.owner_jwt_secret, algorithms=[config.owner_jwt_algorithm])
    except JWTError:
        return None
    if not claims.get("sub"):
        return None
    return claims


def extract_bearer_token(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def is_public(method: str, path: str) -> bool:
    if method in SKIP_METHODS:
        return True
    if (method, path) in PUBLIC_ROUTES:
        return True
    return path.startswith(PUBLIC_PREFIXES)
