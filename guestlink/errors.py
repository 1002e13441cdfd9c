"""Error taxonomy for the guest link engine.

Every public-facing failure maps to one of these classes.  Each carries a
generic ``public_message`` that is safe to return to an anonymous caller and
an HTTP ``status_code``; the exception's own message is internal detail and
is only ever written to server-side logs.
"""

from __future__ import annotations


class GuestLinkError(Exception):
    """Base exception for all guest link errors."""

    status_code: int = 500
    public_message: str = "Request failed"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class ValidationError(GuestLinkError):
    """Malformed or oversized input. Always recoverable by the caller."""

    status_code = 400
    public_message = "Invalid request"

    def __init__(self, detail: str = "", field: str = "") -> None:
        self.field = field
        super().__init__(detail)


class InvalidLink(GuestLinkError):
    """Missing, malformed, expired or revoked link token.

    Deliberately uninformative: the same public message is returned for
    every cause so tokens cannot be enumerated.
    """

    status_code = 404
    public_message = "Invalid or expired chat link"


class InvalidSession(GuestLinkError):
    """Session token unknown, ended, expired or timed out."""

    status_code = 401
    public_message = "Invalid or expired session"


class NotFoundError(GuestLinkError):
    """Owner-scoped lookup failed (wrong owner or unknown id)."""

    status_code = 404
    public_message = "Not found"


class CapacityExceeded(GuestLinkError):
    """The link's concurrent session cap has been reached."""

    status_code = 409
    public_message = "This chat link has reached its session limit"


class LimitExceeded(GuestLinkError):
    """The session's message cap has been reached."""

    status_code = 429
    public_message = "Message limit reached for this session"


class RateLimited(GuestLinkError):
    """Per-origin or per-link throttling."""

    status_code = 429
    public_message = "Rate limit exceeded"

    def __init__(self, detail: str = "", retry_after: int = 60, scope: str = "") -> None:
        self.retry_after = retry_after
        self.scope = scope
        super().__init__(detail)


class Unauthorized(GuestLinkError):
    """Signature, timestamp or credential failure."""

    status_code = 401
    public_message = "Unauthorized"


class InternalError(GuestLinkError):
    """Datastore, vault or downstream failure after retries."""

    status_code = 500
    public_message = "Internal error"
