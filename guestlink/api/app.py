"""FastAPI application factory.

Usage:
    uvicorn guestlink.api.app:app
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from guestlink import __version__
from guestlink.api.engine import Engine, build_engine
from guestlink.api.routers import guest, health, owner
from guestlink.config import Settings, settings as default_settings
from guestlink.errors import GuestLinkError, InternalError, RateLimited
from guestlink.logging_config import request_id_var, setup_logging
from guestlink.security.middleware import install_security_middleware
from guestlink.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


async def _sweep_forever(engine: Engine, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(engine.sweep)
        except GuestLinkError:
            logger.exception("Periodic sweep failed")


def _error_response(exc: GuestLinkError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(
        {"error": exc.public_message, "request_id": request_id_var.get()},
        status_code=exc.status_code,
        headers=headers,
    )


async def _guestlink_error_handler(request: Request, exc: GuestLinkError) -> JSONResponse:
    """Generic message out, full detail to the server log only."""
    level = logging.ERROR if isinstance(exc, InternalError) else logging.INFO
    logger.log(
        level,
        "Request failed: %s %s class=%s detail=%s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc.detail,
    )
    return _error_response(exc)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Malformed request body: %s %s errors=%d", request.method, request.url.path, len(exc.errors()))
    return JSONResponse({"error": "Invalid request", "request_id": request_id_var.get()}, status_code=400)


def create_app(
    config: Settings | None = None,
    engine: Engine | None = None,
) -> FastAPI:
    """Build the app. Tests pass a prebuilt ``engine`` with fakes wired in."""
    config = config or default_settings
    setup_logging(config)
    engine = engine or build_engine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = None
        if config.sweep_interval_seconds > 0:
            task = asyncio.create_task(_sweep_forever(engine, config.sweep_interval_seconds))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="guestlink", version=__version__, lifespan=lifespan)
    app.state.engine = engine
    app.state.webhooks = engine.webhooks

    app.add_exception_handler(GuestLinkError, _guestlink_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(health.router)
    app.include_router(owner.router)
    app.include_router(guest.router)
    register_webhook_routes(app)

    install_security_middleware(app, config)
    return app


app = create_app()

if __name__ == "__main__":
    import sys

    import uvicorn

    port = 8060
    for i, arg in enumerate(sys.argv):
        if arg == "--port" and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])
    uvicorn.run("guestlink.api.app:app", host="0.0.0.0", port=port)
