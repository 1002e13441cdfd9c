"""Security middleware for FastAPI: request ids, owner auth, CORS, rate limiting.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight before auth
2. Request id -- every log line and error body carries it
3. Owner auth -- verify Bearer JWT on /api/*, inject owner id
Guest routes (/chat/*) and webhooks are public at this layer; they
authenticate with link/session tokens and signatures respectively.
"""

from __future__ import annotations

import ipaddress
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from guestlink.config import Settings, settings
from guestlink.logging_config import request_id_var
from guestlink.security.auth import extract_bearer_token, is_public, verify_owner_token

logger = logging.getLogger(__name__)

_REQUEST_ID_HEADER = "X-Request-Id"
_MAX_REQUEST_ID_CHARS = 64


def _parse_networks(raw: str) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            networks.append(ipaddress.ip_network(item, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid trusted proxy entry: %s", item)
    return networks


def client_ip_resolver(config: Settings):
    """Build a callable(Request) -> client IP honouring ``trusted_proxies``.

    X-Forwarded-For is only read when the direct peer is a trusted proxy.
    """
    networks = _parse_networks(config.trusted_proxies)

    def resolve(request: Request) -> str:
        peer = get_remote_address(request)
        if networks:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                try:
                    peer_ip = ipaddress.ip_address(peer)
                except ValueError:
                    peer_ip = None
                if peer_ip is not None and any(peer_ip in net for net in networks):
                    return forwarded.split(",")[0].strip()
        return peer

    return resolve


# Rate limiter for anonymous redemption (per client IP)
limiter = Limiter(key_func=lambda request: request.app.state.client_ip(request))


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagate or mint a request id for logs and error bodies."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(_REQUEST_ID_HEADER, "")
        request_id = incoming[:_MAX_REQUEST_ID_CHARS] if incoming.isprintable() and incoming else uuid.uuid4().hex
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[_REQUEST_ID_HEADER] = request_id
        return response


class OwnerAuthMiddleware(BaseHTTPMiddleware):
    """Enforce owner authentication on everything that is not public."""

    def __init__(self, app, config: Settings | None = None):
        super().__init__(app)
        self._config = config or settings

    async def dispatch(self, request: Request, call_next):
        if is_public(request.method, request.url.path):
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return JSONResponse(
                {"error": "Authentication required", "request_id": request_id_var.get()},
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )

        claims = verify_owner_token(token, self._config)
        if claims is None:
            logger.debug("Owner auth failed for %s %s", request.method, request.url.path)
            return JSONResponse(
                {"error": "Invalid or expired credentials", "request_id": request_id_var.get()},
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.state.owner_id = claims["sub"]
        return await call_next(request)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"error": "Rate limit exceeded", "retry_after": retry_after, "request_id": request_id_var.get()},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def install_security_middleware(app: FastAPI, config: Settings | None = None) -> None:
    """Install all security middleware on the FastAPI app.

    Middleware is added in reverse order (last added = outermost = runs first).
    """
    config = config or settings
    app.state.client_ip = client_ip_resolver(config)

    # 3. Owner auth (innermost)
    app.add_middleware(OwnerAuthMiddleware, config=config)

    # 2. Request id
    app.add_middleware(RequestIdMiddleware)

    # Anonymous redemption limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # 1. CORS (outermost, handles OPTIONS preflight)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[_REQUEST_ID_HEADER],
    )
