"""Health check and monitoring endpoints."""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(prefix="/api")


@router.get("/health")
async def health() -> dict:
    """Basic health check, including whether the database answers."""
    from telerent.main import APP_VERSION, get_stats, get_store

    database_ok = await get_store().ping()
    snapshot = get_stats().snapshot()
    return {
        "status": "ok" if database_ok else "degraded",
        "version": APP_VERSION,
        "uptime_seconds": snapshot["uptime_seconds"],
        "database_reachable": database_ok,
    }


@router.get("/stats")
async def stats() -> dict:
    """Ingestion counters and active device counts.

    The ``active_devices`` section shows:
    - ``total``: devices that reported in the last N seconds (configurable window)
    - ``binary``: of those, devices whose last packet was a binary frame
    - ``json``: devices whose last packet was a JSON body
    - ``window_seconds``: the time window used for "active" calculation
    """
    from telerent.main import get_stats

    return get_stats().snapshot()
