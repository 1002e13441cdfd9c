"""Inbound webhook handling: verify, then dispatch.

Each request:
1. Charges the per-origin rate counter (shared with guest traffic)
2. Rejects oversized bodies
3. Verifies timestamp freshness and signature
4. Parses the body into one or more events
5. Skips events already seen (idempotency)
6. Routes the rest through the rule engine

Security contract:
- Never return error details to the webhook caller
- 401 only for signature/timestamp failures, 400 for malformed bodies
- Duplicates and unmatched events still get 200
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from guestlink.errors import RateLimited, Unauthorized, ValidationError
from guestlink.guard.rate_limit import RateGuard
from guestlink.logging_config import request_id_var
from guestlink.webhooks.dispatcher import parse_events
from guestlink.webhooks.idempotency import EventDeduplicator
from guestlink.webhooks.rules import RuleEngine
from guestlink.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    received: int = 0
    duplicates: int = 0
    matched_rules: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": "received",
            "received": self.received,
            "duplicates": self.duplicates,
            "matched_rules": list(self.matched_rules),
            "tags": list(self.tags),
        }


def _log_webhook(provider: str, status: str, origin: str, **fields: Any) -> None:
    """Audit log for webhook activity."""
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    logger.info(
        "WEBHOOK_AUDIT provider=%s status=%s origin=%s %s request_id=%s",
        provider,
        status,
        origin,
        extra,
        request_id_var.get(),
    )


class WebhookReceiver:
    """Framework-free webhook pipeline; the HTTP route is a thin wrapper."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        deduplicator: EventDeduplicator,
        rules: RuleEngine,
        guard: RateGuard,
        max_body_bytes: int = 1024 * 1024,
    ):
        self._verifier = verifier
        self._dedup = deduplicator
        self._rules = rules
        self._guard = guard
        self._max_body_bytes = max_body_bytes

    def handle(self, provider: str, body: bytes, headers: dict[str, str], origin_address: str) -> WebhookResult:
        """Process one webhook request. Raises ``GuestLinkError`` subclasses."""
        provider = provider.lower()
        try:
            self._guard.check_origin(origin_address)
        except RateLimited:
            _log_webhook(provider, "rate_limited", origin_address)
            raise

        if len(body) > self._max_body_bytes:
            _log_webhook(provider, "too_large", origin_address, size=len(body))
            raise ValidationError(f"webhook body of {len(body)} bytes exceeds {self._max_body_bytes}")

        if not self._verifier.verify_request(provider, body, headers):
            _log_webhook(provider, "signature_failed", origin_address, size=len(body))
            raise Unauthorized(f"webhook signature rejected for provider {provider}")

        try:
            events = parse_events(provider, body)
        except ValidationError:
            _log_webhook(provider, "invalid_body", origin_address)
            raise

        result = WebhookResult()
        for event in events:
            if self._dedup.is_duplicate(provider, event.event_id):
                result.duplicates += 1
                _log_webhook(provider, "duplicate", origin_address, event=event.event_type, id=event.event_id)
                continue

            outcome = self._rules.route(provider, event.as_routable())
            result.received += 1
            result.matched_rules.extend(outcome.matched_rules)
            for tag in outcome.tags:
                if tag not in result.tags:
                    result.tags.append(tag)
            _log_webhook(
                provider,
                "dispatched",
                origin_address,
                event=event.event_type,
                id=event.event_id,
                rules=len(outcome.matched_rules),
            )
        return result


def register_webhook_routes(app: FastAPI) -> None:
    """Register the inbound webhook route.

    Reads ``app.state.webhooks`` (a ``WebhookReceiver``) and
    ``app.state.client_ip`` (callable(Request) -> str) at request time.
    """

    @app.post("/webhooks/inbound/{provider}")
    async def inbound_webhook(provider: str, request: Request):
        """Receive a signed inbound event (or batch of events)."""
        start = time.time()
        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        origin = request.app.state.client_ip(request)

        receiver: WebhookReceiver = request.app.state.webhooks
        # GuestLinkError subclasses are rendered by the app-level handler
        result = await run_in_threadpool(receiver.handle, provider, body, headers, origin)

        logger.debug("Webhook processed in %.1fms: %s", (time.time() - start) * 1000, provider)
        return JSONResponse(result.as_dict(), status_code=200)

    logger.info("Webhook routes registered: /webhooks/inbound/{provider}")
