"""Centralized logging configuration.

Modules log through ``logging.getLogger(__name__)``.  ``setup_logging``
configures the root logger once and installs a redaction filter so raw
link/session tokens and bearer credentials never reach a log sink, even if
a caller formats one into a message by mistake.
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar

from guestlink.config import Settings

# Set per request by the request-id middleware
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

_REDACTION_PATTERNS = [
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)(token[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9_-]{16,}"), r"\1[REDACTED]"),
    (re.compile(r"\bgl[ls]_[A-Za-z0-9_-]{20,}"), "[TOKEN]"),
]


def redact_secrets(text: str) -> str:
    """Replace anything shaped like a credential with a placeholder."""
    for pattern, replacement in _REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class TokenRedactionFilter(logging.Filter):
    """Scrub tokens from the fully formatted message and attach the request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(config: Settings | None = None) -> None:
    """Configure root logging. Safe to call more than once."""
    if config is None:
        from guestlink.config import settings as config

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    for handler in root.handlers:
        if getattr(handler, "_guestlink", False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(TokenRedactionFilter())
    handler._guestlink = True  # type: ignore[attr-defined]
    root.addHandler(handler)
