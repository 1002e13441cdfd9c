"""Health route."""

from __future__ import annotations

from fastapi import APIRouter, Request

from guestlink import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    """Liveness plus a few cheap counters."""
    engine = request.app.state.engine
    return {
        "status": "ok",
        "version": __version__,
        "storage": "redis" if engine.config.redis_url else "memory",
    }
