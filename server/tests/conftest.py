"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import telerent.main as main_module
from telerent.config import AppConfig
from telerent.core.processor import TelemetryProcessor
from telerent.core.rental import RentalService
from telerent.core.stats import ServerStats
from telerent.storage.sql_storage import SqlStore


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
async def store(tmp_path):
    store = SqlStore(f"sqlite+aiosqlite:///{tmp_path / 'data' / 'telerent.db'}")
    await store.create_schema()
    yield store
    await store.close()


@pytest.fixture
def stats():
    return ServerStats()


@pytest.fixture
def processor(store, stats, clock):
    return TelemetryProcessor(store, stats, clock=clock)


@pytest.fixture
def rentals(store, clock):
    return RentalService(store, clock=clock)


@pytest.fixture(autouse=True)
def _init_server(store, stats, processor, rentals, clock):
    """Initialize server singletons for every test, using a temp database."""
    config = AppConfig()
    config.logging.level = "warning"

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._store = store
    main_module._processor = processor
    main_module._rentals = rentals
    main_module._clock = clock

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._store = None
    main_module._processor = None
    main_module._rentals = None
    main_module._clock = main_module._utcnow


@pytest.fixture
async def client():
    from telerent.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
