"""Telerent server — main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, storage, and API layers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from telerent.api.admin import router as admin_router
from telerent.api.ingest import router as ingest_router
from telerent.api.monitoring import router as monitoring_router
from telerent.api.rental import router as rental_router
from telerent.config import AppConfig, load_config
from telerent.core.errors import StorageFailure, TelerentError
from telerent.core.pricing import PricingRates
from telerent.core.processor import TelemetryProcessor
from telerent.core.rental import RentalService
from telerent.core.stats import ServerStats
from telerent.storage.base import Store
from telerent.storage.sql_storage import SqlStore

log = structlog.get_logger()

APP_VERSION = "0.1.0"

# Module-level singletons (set during startup)
_config: AppConfig | None = None
_stats: ServerStats | None = None
_store: Store | None = None
_processor: TelemetryProcessor | None = None
_rentals: RentalService | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_clock: Callable[[], datetime] = _utcnow


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def get_stats() -> ServerStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_store() -> Store:
    assert _store is not None, "Server not initialized"
    return _store


def get_processor() -> TelemetryProcessor:
    assert _processor is not None, "Server not initialized"
    return _processor


def get_rentals() -> RentalService:
    assert _rentals is not None, "Server not initialized"
    return _rentals


def get_clock() -> Callable[[], datetime]:
    return _clock


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def pricing_rates(config: AppConfig) -> PricingRates:
    return PricingRates(
        per_km=config.pricing.per_km,
        drive_per_minute=config.pricing.drive_per_minute,
        park_per_minute=config.pricing.park_per_minute,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _config, _stats, _store, _processor, _rentals

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             database=_config.storage.database_url.split("://", 1)[0],
             verify_crc=_config.decoder.verify_crc)

    # Create components
    _stats = ServerStats(active_window_seconds=_config.limits.active_window_seconds)
    store = SqlStore(_config.storage.database_url, echo=_config.storage.echo)
    await store.create_schema()
    _store = store
    _processor = TelemetryProcessor(store, _stats, verify_crc=_config.decoder.verify_crc,
                                    clock=get_clock())
    _rentals = RentalService(store, pricing_rates(_config), clock=get_clock())

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    await store.close()
    log.info("server_stopped")


app = FastAPI(
    title="Telerent",
    description="Tracking-unit telemetry ingestion and rental lifecycle service",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(TelerentError)
async def telerent_error_handler(request: Request, exc: TelerentError) -> JSONResponse:
    """Render core errors with the status each error class carries."""
    content = {"ok": False, "error": exc.message}
    if isinstance(exc, StorageFailure):
        content["details"] = exc.details
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, error=exc.message)
    else:
        log.info("request_rejected", path=request.url.path,
                 status=exc.status_code, error=exc.message)
    return JSONResponse(content=content, status_code=exc.status_code)


app.include_router(ingest_router)
app.include_router(rental_router)
app.include_router(admin_router)
app.include_router(monitoring_router)
