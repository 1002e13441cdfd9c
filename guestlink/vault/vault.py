"""Token vault adapter: the only component that holds raw token material.

Security contract:
- Tokens are 256-bit random, URL-safe, prefixed by kind (gll_ link, gls_ session)
- Raw tokens are returned exactly once, from ``mint()``; records elsewhere
  hold only the opaque vault handle
- Stored encrypted (Fernet); looked up by HMAC-SHA256 digest, never by plaintext
- Final comparison is constant-time (hmac.compare_digest)
- Resolution failures are silent (None): callers must not learn whether a
  token was malformed, unknown, or revoked
- Logs carry a keyed fingerprint, never the token
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum

from cryptography.fernet import Fernet, InvalidToken

from guestlink.vault.store import SecretStore

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32
_WHITESPACE_RE = re.compile(r"\s+")


class TokenKind(str, Enum):
    """Token families; the value is the token prefix."""

    LINK = "gll"
    SESSION = "gls"


_TOKEN_FORMATS = {
    kind: re.compile(rf"^{kind.value}_[A-Za-z0-9_-]{{43}}$") for kind in TokenKind
}


@dataclass(frozen=True)
class MintedToken:
    """A freshly minted token. ``token`` is excluded from repr."""

    handle: str
    kind: TokenKind
    token: str = field(repr=False)


class TokenVault:
    """Issues and resolves opaque, non-guessable tokens."""

    def __init__(
        self,
        store: SecretStore,
        encryption_key: str = "",
        lookup_key: str = "",
    ):
        if not encryption_key:
            logger.warning("Vault encryption key not configured; using an ephemeral key")
            encryption_key = Fernet.generate_key().decode()
        if not lookup_key:
            logger.warning("Vault lookup key not configured; using an ephemeral key")
            lookup_key = secrets.token_hex(32)
        self._store = store
        self._fernet = Fernet(encryption_key.encode())
        self._lookup_key = lookup_key.encode()

    def mint(self, kind: TokenKind) -> MintedToken:
        """Generate a token, store it encrypted, and return it with its handle."""
        token = f"{kind.value}_{secrets.token_urlsafe(_TOKEN_BYTES)}"
        handle = str(uuid.uuid4())
        ciphertext = self._fernet.encrypt(token.encode()).decode()

        self._store.put_secret(handle, ciphertext)
        self._store.put_index(self._digest(token), handle)

        logger.info("Token minted: kind=%s handle=%s fp=%s", kind.name, handle[:8], self.fingerprint(token))
        return MintedToken(handle=handle, kind=kind, token=token)

    def resolve(self, token: str | None, kind: TokenKind) -> str | None:
        """Return the vault handle for *token*, or None on any failure."""
        if not token or not isinstance(token, str):
            return None

        cleaned = _WHITESPACE_RE.sub("", token)
        if not _TOKEN_FORMATS[kind].match(cleaned):
            return None

        handle = self._store.get_index(self._digest(cleaned))
        if handle is None:
            return None

        ciphertext = self._store.get_secret(handle)
        if ciphertext is None:
            return None

        try:
            plaintext = self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Vault secret for handle %s failed to decrypt", handle[:8])
            return None

        if not hmac.compare_digest(plaintext, cleaned):
            return None
        return handle

    def revoke(self, handle: str) -> None:
        """Delete the secret behind *handle*. Idempotent."""
        ciphertext = self._store.get_secret(handle)
        if ciphertext is None:
            return
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode()).decode()
            self._store.delete_index(self._digest(plaintext))
        except InvalidToken:
            logger.error("Vault secret for handle %s failed to decrypt on revoke", handle[:8])
        self._store.delete_secret(handle)
        logger.info("Token revoked: handle=%s", handle[:8])

    def fingerprint(self, token: str) -> str:
        """Short keyed fingerprint of *token*, safe to log."""
        return self._digest(_WHITESPACE_RE.sub("", token))[:12]

    def _digest(self, token: str) -> str:
        return hmac.new(self._lookup_key, token.encode(), hashlib.sha256).hexdigest()
