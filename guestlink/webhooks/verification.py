"""Inbound webhook signature verification: ECDSA P-256 / SHA-256.

Security contract:
- Timestamp window (default 300s) is checked first, before any crypto
- Signed payload is ``timestamp + "." + raw_body``, verified against the
  provider's public key
- Any failure returns False; callers answer a uniform 401
- Missing public key for a provider -> verification always fails (fail-closed)
- Failures are logged with request metadata, never with key material
"""

from __future__ import annotations

import base64
import binascii
import logging
import time

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

# Provider -> (signature_header, timestamp_header), lowercase
PROVIDER_HEADERS: dict[str, tuple[str, str]] = {
    "sendgrid": (
        "x-twilio-email-event-webhook-signature",
        "x-twilio-email-event-webhook-timestamp",
    ),
}
DEFAULT_HEADERS = ("x-webhook-signature", "x-webhook-timestamp")


def load_public_key(material: str) -> ec.EllipticCurvePublicKey | None:
    """Load an EC public key from PEM or base64-encoded DER."""
    material = (material or "").strip()
    if not material:
        return None
    try:
        if material.startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(material.encode())
        else:
            key = serialization.load_der_public_key(base64.b64decode(material))
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm):
        logger.error("Webhook public key could not be parsed")
        return None
    if not isinstance(key, ec.EllipticCurvePublicKey):
        logger.error("Webhook public key is not an EC key")
        return None
    return key


def verify(
    raw_body: bytes,
    signature_header: str | None,
    timestamp_header: str | None,
    public_key: ec.EllipticCurvePublicKey | None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify an inbound event's signature and freshness.

    Args:
        raw_body: Exact request body bytes
        signature_header: Base64 DER-encoded ECDSA signature
        timestamp_header: Unix timestamp (seconds) the sender signed
        public_key: Provider's P-256 public key
        tolerance_seconds: Maximum |now - timestamp|

    Returns:
        True if the timestamp is fresh and the signature is valid
    """
    if public_key is None or not signature_header or not timestamp_header:
        return False

    try:
        timestamp = int(timestamp_header.strip())
    except (ValueError, TypeError):
        return False

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance_seconds:
        logger.warning("Webhook timestamp outside window: skew=%ds", int(now - timestamp))
        return False

    try:
        signature = base64.b64decode(signature_header.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False

    signed_payload = f"{timestamp_header.strip()}.".encode("utf-8") + raw_body
    try:
        public_key.verify(signature, signed_payload, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    except ValueError:
        # Malformed DER
        return False
    return True


class SignatureVerifier:
    """Holds parsed provider keys and applies ``verify`` per request."""

    def __init__(self, public_keys: dict[str, str], tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.tolerance_seconds = tolerance_seconds
        self._keys: dict[str, ec.EllipticCurvePublicKey] = {}
        for provider, material in (public_keys or {}).items():
            key = load_public_key(material)
            if key is not None:
                self._keys[provider.lower()] = key
            else:
                logger.warning("No usable webhook key for provider %s; its events will be rejected", provider)

    def knows(self, provider: str) -> bool:
        return provider.lower() in self._keys

    def verify_request(self, provider: str, raw_body: bytes, headers: dict[str, str]) -> bool:
        """Verify using the provider's header names. ``headers`` keys are lowercase."""
        key = self._keys.get(provider.lower())
        if key is None:
            logger.warning("Webhook for unknown provider %s rejected", provider)
            return False
        sig_name, ts_name = PROVIDER_HEADERS.get(provider.lower(), DEFAULT_HEADERS)
        return verify(
            raw_body,
            headers.get(sig_name),
            headers.get(ts_name),
            key,
            tolerance_seconds=self.tolerance_seconds,
        )
