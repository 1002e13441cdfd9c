"""Payload validation for untrusted guest input.

Runs before any rate counter is charged, so malformed input is rejected
cheaply.

Checks:
- Non-empty text within the configured length cap
- Character set: valid UTF-8, no control characters other than \\t \\n \\r
- Attachment count, size and content-type allow-list
- Dangerous markup stripped (script/iframe/object/embed, script URIs)
- Prompt-override attempts flagged (logged, not rejected)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from guestlink.errors import ValidationError

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RUN_RE = re.compile(r"[ \t]{3,}")
_BLANK_LINES_RE = re.compile(r"\n{4,}")

_DANGEROUS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE),
    re.compile(r"<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>", re.IGNORECASE),
    re.compile(r"<embed\b[^<]*(?:(?!</embed>)<[^<]*)*</embed>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]
_REMOVED_PLACEHOLDER = "[Content removed for security]"

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?(?:previous|prior|above)\s+instructions", re.IGNORECASE),
    re.compile(r"forget\s+(?:all\s+)?(?:your|previous)\s+", re.IGNORECASE),
    re.compile(r"disregard\s+(?:all\s+)?(?:previous|prior|your)\s+", re.IGNORECASE),
    re.compile(r"system\s*:\s*you\s+are", re.IGNORECASE),
    re.compile(r"<\s*system\s*>", re.IGNORECASE),
    re.compile(r"override\s+(?:the\s+)?(?:system|safety|instructions)", re.IGNORECASE),
]


@dataclass(frozen=True)
class Attachment:
    """Declared attachment metadata (content is uploaded out of band)."""

    filename: str
    content_type: str
    size_bytes: int


@dataclass
class ValidatedMessage:
    """A guest message that passed validation."""

    text: str
    attachments: list[Attachment] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    @property
    def was_sanitized(self) -> bool:
        return "sanitized" in self.flags


@dataclass(frozen=True)
class PayloadLimits:
    max_chars: int = 4000
    allowed_attachment_types: tuple[str, ...] = ("image/png", "image/jpeg", "application/pdf", "text/plain")
    max_attachments: int = 5
    max_attachment_bytes: int = 10 * 1024 * 1024


def sanitize_text(text: str) -> str:
    """Strip dangerous markup and collapse whitespace runs."""
    sanitized = text.strip()
    for pattern in _DANGEROUS_PATTERNS:
        sanitized = pattern.sub(_REMOVED_PLACEHOLDER, sanitized)
    sanitized = _WHITESPACE_RUN_RE.sub("   ", sanitized)
    sanitized = _BLANK_LINES_RE.sub("\n\n\n", sanitized)
    return sanitized


def _parse_attachment(raw: Any) -> Attachment:
    if isinstance(raw, Attachment):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError("attachment must be an object", field="attachments")
    try:
        return Attachment(
            filename=str(raw.get("filename", ""))[:255],
            content_type=str(raw["content_type"]).lower().strip(),
            size_bytes=int(raw["size_bytes"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"malformed attachment: {e}", field="attachments") from e


def validate_attachments(raw: list[Any] | None, limits: PayloadLimits) -> list[Attachment]:
    if not raw:
        return []
    if len(raw) > limits.max_attachments:
        raise ValidationError(f"too many attachments ({len(raw)} > {limits.max_attachments})", field="attachments")
    attachments = [_parse_attachment(item) for item in raw]
    for att in attachments:
        if att.content_type not in limits.allowed_attachment_types:
            raise ValidationError(f"attachment type not allowed: {att.content_type}", field="attachments")
        if att.size_bytes < 0 or att.size_bytes > limits.max_attachment_bytes:
            raise ValidationError(f"attachment size out of range: {att.size_bytes}", field="attachments")
    return attachments


def validate_guest_message(
    content: Any,
    attachments: list[Any] | None = None,
    limits: PayloadLimits | None = None,
) -> ValidatedMessage:
    """Validate and sanitize a guest message. Raises ``ValidationError``."""
    limits = limits or PayloadLimits()

    if not isinstance(content, str):
        raise ValidationError("message must be a string", field="message")
    if not content.strip():
        raise ValidationError("message is empty", field="message")
    if len(content) > limits.max_chars:
        raise ValidationError(f"message too long ({len(content)} > {limits.max_chars})", field="message")
    try:
        content.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValidationError("message is not valid UTF-8", field="message") from e
    if _CONTROL_CHARS_RE.search(content):
        raise ValidationError("message contains control characters", field="message")

    parsed = validate_attachments(attachments, limits)

    flags: list[str] = []
    text = sanitize_text(content)
    if text != content.strip():
        flags.append("sanitized")
    for pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            flags.append("injection:prompt_override")
            break

    if flags:
        logger.info("Guest message flagged: %s", flags)

    return ValidatedMessage(text=text, attachments=parsed, flags=flags)
