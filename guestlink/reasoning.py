"""Reasoning engine client.

The engine that actually produces assistant replies lives elsewhere; this
module is the narrow send-message contract to it.  The link's system-prompt
override and intent travel in the request body only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from guestlink.config import Settings, settings as default_settings
from guestlink.fusion.context import ReasoningRequest
from guestlink.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class ReasoningFailure(Exception):
    """The reasoning engine could not produce a reply."""


@dataclass
class ReasoningReply:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ReasoningEngine(Protocol):
    def generate(self, request: ReasoningRequest) -> ReasoningReply: ...


@retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=5.0)
def _post_chat(url: str, body: dict, headers: dict, timeout: float) -> dict:
    response = httpx.post(url, json=body, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.json()


class HttpReasoningEngine:
    """POSTs each guest turn to the reasoning service's chat endpoint."""

    def __init__(self, config: Settings | None = None):
        self._config = config or default_settings

    def generate(self, request: ReasoningRequest) -> ReasoningReply:
        headers = {"Content-Type": "application/json"}
        if self._config.reasoning_service_token:
            headers["Authorization"] = f"Bearer {self._config.reasoning_service_token}"

        try:
            data = _post_chat(
                self._config.reasoning_url,
                request.as_payload(),
                headers,
                self._config.reasoning_timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Reasoning engine call failed for conversation %s: %s", request.conversation_id[:8], e)
            raise ReasoningFailure(str(e)) from e

        if not isinstance(data, dict):
            raise ReasoningFailure(f"malformed reply from reasoning engine: {type(data).__name__}")
        content = data.get("response") or data.get("content") or ""
        if not isinstance(content, str) or not content.strip():
            raise ReasoningFailure("empty reply from reasoning engine")
        return ReasoningReply(
            content=content,
            metadata={k: data[k] for k in ("model", "usage") if k in data},
        )
