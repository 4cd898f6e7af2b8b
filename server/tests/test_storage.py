"""Tests for the SQL store: merge-on-write device rows, trips, defaults."""

from __future__ import annotations

import pytest

from telerent.core.errors import StorageFailure
from telerent.core.models import (
    ControlState,
    DeviceUpdate,
    RoutePoint,
    TripSnapshot,
    TripSummary,
)
from telerent.storage.sql_storage import SqlStore


@pytest.mark.asyncio
async def test_new_device_gets_defaults(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(lat=45.0, lon=4.0), clock())
        device = await tx.get_device("B1")

    assert device.lat == 45.0
    assert device.rental_active is False
    assert device.park_mode is False
    assert device.gps_send is True
    assert device.stats_send is True
    assert device.park_duration == 0.0
    assert device.created_at == clock()
    assert device.updated_at == clock()


@pytest.mark.asyncio
async def test_partial_update_keeps_other_fields(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(lat=45.0, lon=4.0, speed=12.0,
                                                  rental_active=True, trip_id="trip_1"), clock())
    clock.advance(5)
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(total_distance=1.5), clock())
        device = await tx.get_device("B1")

    assert (device.lat, device.lon, device.speed) == (45.0, 4.0, 12.0)
    assert device.total_distance == 1.5
    assert device.rental_active is True
    assert device.trip_id == "trip_1"
    assert device.updated_at == clock()
    assert device.created_at < device.updated_at


@pytest.mark.asyncio
async def test_clear_resets_to_null(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(trip_id="trip_1", park_start_time=clock()), clock())
        await tx.upsert_device("B1", DeviceUpdate(clear=frozenset({"trip_id", "park_start_time"})), clock())
        device = await tx.get_device("B1")

    assert device.trip_id is None
    assert device.park_start_time is None


@pytest.mark.asyncio
async def test_empty_update_only_touches_timestamp(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(speed=7.0), clock())
    clock.advance(60)
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(), clock())
        device = await tx.get_device("B1")

    assert device.speed == 7.0
    assert device.updated_at == clock()


@pytest.mark.asyncio
async def test_list_devices_most_recent_first(store, clock):
    for device_id in ("B1", "B2", "B3"):
        async with store.transaction() as tx:
            await tx.upsert_device(device_id, DeviceUpdate(speed=1.0), clock())
        clock.advance(1)
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(speed=2.0), clock())
        devices = await tx.list_devices()

    assert [d.device_id for d in devices] == ["B1", "B3", "B2"]


@pytest.mark.asyncio
async def test_delete_device(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(), clock())
        assert await tx.delete_device("B1") is True
        assert await tx.delete_device("B1") is False
        assert await tx.get_device("B1") is None


@pytest.mark.asyncio
async def test_control_defaults(store, clock):
    async with store.transaction() as tx:
        assert await tx.get_control_defaults() == ControlState()
        await tx.update_control_defaults(clock(), park_mode=True)
        await tx.update_control_defaults(clock(), gps_send=False)
        defaults = await tx.get_control_defaults()

    assert defaults == ControlState(rental_active=False, park_mode=True,
                                    gps_send=False, stats_send=True)


@pytest.mark.asyncio
async def test_failed_transaction_rolls_back(store, clock):
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.upsert_device("B1", DeviceUpdate(speed=3.0), clock())
            raise RuntimeError("boom")

    async with store.transaction() as tx:
        assert await tx.get_device("B1") is None


@pytest.mark.asyncio
async def test_database_errors_become_storage_failure(store, clock):
    async with store.transaction() as tx:
        await tx.insert_trip("trip_1", "B1", clock())

    with pytest.raises(StorageFailure) as exc_info:
        async with store.transaction() as tx:
            await tx.insert_trip("trip_1", "B1", clock())
    assert exc_info.value.status_code == 500
    assert exc_info.value.details


@pytest.mark.asyncio
async def test_finalize_trip_only_once(store, clock):
    summary = TripSummary(snapshot=TripSnapshot(total_distance=2.0, trip_duration=120),
                          park_duration=30.0, total_cost=5.5)
    async with store.transaction() as tx:
        await tx.insert_trip("trip_1", "B1", clock())
        assert await tx.finalize_trip("trip_1", summary, clock()) is True
        assert await tx.finalize_trip("trip_1", summary, clock()) is False
        trip = await tx.get_trip("trip_1")

    assert trip.is_finalized
    assert trip.total_cost == 5.5
    assert trip.park_duration == 30.0
    assert trip.trip_duration == 120


@pytest.mark.asyncio
async def test_list_trips_sorting_and_routes(store, clock):
    async with store.transaction() as tx:
        for n, (distance, speed) in enumerate([(1.0, 30.0), (5.0, 10.0), (3.0, 20.0)]):
            trip_id = f"trip_{n}"
            await tx.insert_trip(trip_id, "B1" if n < 2 else "B2", clock())
            await tx.update_trip_snapshot(trip_id, TripSnapshot(total_distance=distance,
                                                                avg_speed=speed))
            await tx.insert_route_point(trip_id, RoutePoint(lat=n, lon=n, timestamp=clock()))
            clock.advance(10)

        by_time = await tx.list_trips()
        by_distance = await tx.list_trips(sort_by="distance")
        by_speed = await tx.list_trips(sort_by="speed", limit=1)
        for_b1 = await tx.list_trips(device_id="B1")

    assert [t.trip_id for t in by_time] == ["trip_2", "trip_1", "trip_0"]
    assert [t.trip_id for t in by_distance] == ["trip_1", "trip_2", "trip_0"]
    assert [t.trip_id for t in by_speed] == ["trip_0"]
    assert {t.trip_id for t in for_b1} == {"trip_0", "trip_1"}
    assert [len(t.route) for t in by_time] == [1, 1, 1]
    assert by_time[0].route[0].lat == 2


@pytest.mark.asyncio
async def test_route_points_keep_insertion_order(store, clock):
    async with store.transaction() as tx:
        await tx.insert_trip("trip_1", "B1", clock())
        for lat in (1.0, 2.0, 3.0):
            await tx.insert_route_point("trip_1", RoutePoint(lat=lat, lon=0.0, timestamp=clock()))
        route = await tx.list_route_points("trip_1")

    assert [p.lat for p in route] == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_delete_trips_for_device(store, clock):
    async with store.transaction() as tx:
        await tx.insert_trip("trip_1", "B1", clock())
        await tx.insert_trip("trip_2", "B1", clock())
        await tx.insert_trip("trip_3", "B2", clock())
        await tx.insert_route_point("trip_1", RoutePoint(lat=1, lon=1, timestamp=clock()))
        assert await tx.delete_trips_for_device("B1") == 2
        assert await tx.list_route_points("trip_1") == []
        assert [t.trip_id for t in await tx.list_trips()] == ["trip_3"]


@pytest.mark.asyncio
async def test_clear_all(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(speed=1.0), clock())
        await tx.insert_trip("trip_1", "B1", clock())
        await tx.update_control_defaults(clock(), park_mode=True)
        await tx.clear_all()
        assert await tx.list_devices() == []
        assert await tx.list_trips() == []
        assert await tx.get_control_defaults() == ControlState()


@pytest.mark.asyncio
async def test_in_memory_database():
    store = SqlStore("sqlite+aiosqlite:///:memory:")
    await store.create_schema()
    try:
        assert await store.ping() is True
    finally:
        await store.close()


def test_unsupported_backend():
    with pytest.raises(ValueError, match="unsupported"):
        SqlStore("mysql+aiomysql://localhost/telerent")


@pytest.mark.asyncio
async def test_require_idle_skips_rented_device(store, clock):
    async with store.transaction() as tx:
        assert await tx.upsert_device("B1", DeviceUpdate(rental_active=True, trip_id="trip_1"),
                                      clock(), require_idle=True) is True
        claimed = await tx.upsert_device("B1", DeviceUpdate(trip_id="trip_2"),
                                         clock(), require_idle=True)
        device = await tx.get_device("B1")

    assert claimed is False
    assert device.trip_id == "trip_1"


@pytest.mark.asyncio
async def test_require_idle_writes_idle_device(store, clock):
    async with store.transaction() as tx:
        await tx.upsert_device("B1", DeviceUpdate(speed=4.0), clock())
        assert await tx.upsert_device("B1", DeviceUpdate(rental_active=True, trip_id="trip_1"),
                                      clock(), require_idle=True) is True
        device = await tx.get_device("B1")

    assert device.trip_id == "trip_1"
    assert device.speed == 4.0
