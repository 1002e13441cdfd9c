"""Inbound event normalization.

A verified webhook body is either one JSON object or a JSON array of
objects (batched delivery).  Each object becomes an ``InboundEvent`` with a
stable id used for deduplication.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from guestlink.errors import ValidationError

logger = logging.getLogger(__name__)

_MAX_EVENTS_PER_BODY = 1000
_ID_FIELDS = ("sg_event_id", "event_id", "id", "message_id")
_TYPE_FIELDS = ("event", "type", "event_type")


@dataclass
class InboundEvent:
    """One normalized event ready for routing."""

    provider: str
    event_type: str
    event_id: str
    payload: dict[str, Any]

    def as_routable(self) -> dict[str, Any]:
        """The dict routing conditions are evaluated against."""
        return {**self.payload, "_provider": self.provider, "_event_type": self.event_type}


def _event_id(payload: dict[str, Any]) -> str:
    for key in _ID_FIELDS:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)[:256]
    # No provider id: derive one from the canonical body
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _event_type(payload: dict[str, Any]) -> str:
    for key in _TYPE_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value[:128]
    return "unknown"


def parse_events(provider: str, body: bytes) -> list[InboundEvent]:
    """Decode and normalize a webhook body. Raises ``ValidationError``."""
    try:
        decoded = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"invalid JSON body: {e}") from e

    if isinstance(decoded, dict):
        items = [decoded]
    elif isinstance(decoded, list):
        items = decoded
    else:
        raise ValidationError("body must be a JSON object or array")

    if not items:
        raise ValidationError("body contains no events")
    if len(items) > _MAX_EVENTS_PER_BODY:
        raise ValidationError(f"too many events ({len(items)})")
    if not all(isinstance(item, dict) for item in items):
        raise ValidationError("every event must be a JSON object")

    return [
        InboundEvent(
            provider=provider,
            event_type=_event_type(item),
            event_id=_event_id(item),
            payload=item,
        )
        for item in items
    ]
