"""Tests for the rental state machine and park-time accounting."""

from __future__ import annotations

import asyncio
import re

import pytest

from telerent.core.errors import InvalidStateTransition, UnknownDevice
from telerent.core.models import DeviceUpdate, RentalState, TripRecord
from telerent.core.rental import RentalService, new_trip_id
from telerent.core.pricing import PricingRates


async def _device(store, device_id):
    async with store.transaction() as tx:
        return await tx.get_device(device_id)


async def _report_stats(store, clock, device_id, km, seconds):
    async with store.transaction() as tx:
        await tx.upsert_device(device_id, DeviceUpdate(total_distance=km, trip_duration=seconds), clock())


def _check_invariant(device):
    # A trip id is linked exactly while the rental is active.
    assert device.rental_active == (device.trip_id is not None)


def test_trip_id_format(clock):
    trip_id = new_trip_id(clock())
    assert re.fullmatch(r"trip_\d+_[0-9a-f]{9}", trip_id)
    assert trip_id.startswith(f"trip_{int(clock().timestamp() * 1000)}_")


@pytest.mark.asyncio
async def test_start_provisions_unknown_device(rentals, store, clock):
    trip = await rentals.start("B1")
    device = await _device(store, "B1")

    assert device.state is RentalState.DRIVING
    assert device.trip_id == trip.trip_id
    assert device.park_duration == 0
    assert trip.started_at == clock()
    _check_invariant(device)


@pytest.mark.asyncio
async def test_start_resets_previous_trip_counters(rentals, store, clock):
    await _report_stats(store, clock, "B1", 12.0, 900)
    await rentals.start("B1")
    device = await _device(store, "B1")
    assert device.total_distance == 0
    assert device.trip_duration == 0


@pytest.mark.asyncio
async def test_start_twice_conflicts(rentals, store):
    first = await rentals.start("B1")
    with pytest.raises(InvalidStateTransition):
        await rentals.start("B1")
    device = await _device(store, "B1")
    assert device.trip_id == first.trip_id


@pytest.mark.asyncio
async def test_end_unknown_device(rentals):
    with pytest.raises(UnknownDevice):
        await rentals.end("ghost")


@pytest.mark.asyncio
async def test_end_idle_device_conflicts(rentals, store, clock):
    await _report_stats(store, clock, "B1", 1.0, 10)
    with pytest.raises(InvalidStateTransition):
        await rentals.end("B1")


@pytest.mark.asyncio
async def test_park_while_idle_conflicts(rentals, store, clock):
    await _report_stats(store, clock, "B1", 1.0, 10)
    with pytest.raises(InvalidStateTransition):
        await rentals.set_park_mode("B1", True)
    with pytest.raises(UnknownDevice):
        await rentals.set_park_mode("ghost", True)


@pytest.mark.asyncio
async def test_park_accounting_across_intervals(rentals, store, clock):
    await rentals.start("B1")

    clock.advance(60)
    parked = await rentals.set_park_mode("B1", True)
    assert parked.state is RentalState.PARKED
    assert parked.park_start_time == clock()

    clock.advance(120)
    driving = await rentals.set_park_mode("B1", False)
    assert driving.park_duration == pytest.approx(120)
    assert driving.park_start_time is None

    clock.advance(30)
    await rentals.set_park_mode("B1", True)
    clock.advance(45)
    device = await _device(store, "B1")
    assert device.effective_park_duration(clock()) == pytest.approx(165)


@pytest.mark.asyncio
async def test_repeated_park_request_is_a_no_op(rentals, store, clock):
    await rentals.start("B1")
    await rentals.set_park_mode("B1", True)
    started = (await _device(store, "B1")).park_start_time

    clock.advance(30)
    again = await rentals.set_park_mode("B1", True)
    assert again.park_start_time == started

    unparked = await rentals.set_park_mode("B1", False)
    clock.advance(30)
    assert (await rentals.set_park_mode("B1", False)).park_duration == unparked.park_duration


@pytest.mark.asyncio
async def test_unpark_clears_motion_flag(rentals, processor, store, clock):
    await rentals.start("B1")
    await rentals.set_park_mode("B1", True)
    await processor.record_motion("B1")
    assert (await _device(store, "B1")).motion_detected is True

    device = await rentals.set_park_mode("B1", False)
    assert device.motion_detected is False
    assert device.last_motion_time is None


@pytest.mark.asyncio
async def test_full_lifecycle_is_priced(rentals, store, clock):
    trip = await rentals.start("B1")

    clock.advance(300)
    await _report_stats(store, clock, "B1", 2.0, 300)
    await rentals.set_park_mode("B1", True)
    clock.advance(120)
    await rentals.set_park_mode("B1", False)
    clock.advance(180)
    await _report_stats(store, clock, "B1", 4.0, 600)

    ended = await rentals.end("B1")

    # 4 km, 600 s total of which 120 s parked
    assert ended.breakdown.km_cost == pytest.approx(4.0)
    assert ended.breakdown.drive_cost == pytest.approx(16.0)
    assert ended.breakdown.park_cost == pytest.approx(2.0)
    assert ended.trip.trip_id == trip.trip_id
    assert ended.trip.total_cost == pytest.approx(22.0)
    assert ended.trip.park_duration == pytest.approx(120)
    assert ended.trip.end_time == clock()

    device = await _device(store, "B1")
    assert device.state is RentalState.IDLE
    assert device.park_mode is True
    assert device.trip_id is None
    assert device.park_duration == 0
    _check_invariant(device)


@pytest.mark.asyncio
async def test_end_while_parked_counts_open_interval(rentals, store, clock):
    await rentals.start("B1")
    await _report_stats(store, clock, "B1", 0.0, 600)
    await rentals.set_park_mode("B1", True)
    clock.advance(240)

    ended = await rentals.end("B1")
    assert ended.trip.park_duration == pytest.approx(240)
    assert ended.breakdown.drive_cost == pytest.approx((600 - 240) / 60 * 2)
    assert (await _device(store, "B1")).park_start_time is None


@pytest.mark.asyncio
async def test_negative_drive_time_is_clamped(rentals, store, clock):
    await rentals.start("B1")
    await _report_stats(store, clock, "B1", 1.0, 30)
    await rentals.set_park_mode("B1", True)
    clock.advance(300)

    ended = await rentals.end("B1")
    assert ended.breakdown.drive_cost == 0
    assert ended.breakdown.park_cost == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_end_twice_conflicts(rentals):
    await rentals.start("B1")
    await rentals.end("B1")
    with pytest.raises(InvalidStateTransition):
        await rentals.end("B1")


@pytest.mark.asyncio
async def test_client_route_is_echoed_not_stored(rentals):
    await rentals.start("B1")
    claimed = [{"lat": 1.0, "lon": 2.0}]
    ended = await rentals.end("B1", claimed)
    assert ended.client_route == claimed
    assert ended.trip.route == []


@pytest.mark.asyncio
async def test_custom_rates(store, clock):
    service = RentalService(store, PricingRates(per_km=10, drive_per_minute=0, park_per_minute=0),
                            clock=clock)
    await service.start("B1")
    await _report_stats(store, clock, "B1", 1.5, 60)
    ended = await service.end("B1")
    assert ended.breakdown.total == pytest.approx(15.0)


@pytest.mark.asyncio
async def test_update_control_toggles_reporting(rentals):
    await rentals.start("B1")
    device = await rentals.update_control("B1", gps_send=False, stats_send=False)
    assert device.gps_send is False
    assert device.stats_send is False
    assert device.state is RentalState.DRIVING


@pytest.mark.asyncio
async def test_apply_control_state_starts_and_ends(rentals, store, clock):
    device = await rentals.apply_control_state("B1", rental_active=True)
    assert device.state is RentalState.DRIVING
    trip_id = device.trip_id

    # Same value again does not open a second trip
    device = await rentals.apply_control_state("B1", rental_active=True, park_mode=True)
    assert device.trip_id == trip_id
    assert device.state is RentalState.PARKED

    clock.advance(60)
    device = await rentals.apply_control_state("B1", rental_active=False)
    assert device.state is RentalState.IDLE
    _check_invariant(device)
    async with store.transaction() as tx:
        trip = await tx.get_trip(trip_id)
    assert trip.is_finalized
    assert trip.park_duration == pytest.approx(60)


@pytest.mark.asyncio
async def test_apply_control_state_on_idle_device_sets_flags(rentals, store, clock):
    await _report_stats(store, clock, "B1", 0.0, 0)
    device = await rentals.apply_control_state("B1", rental_active=False, park_mode=True,
                                               gps_send=False)
    assert device.state is RentalState.IDLE
    assert device.park_mode is True
    assert device.gps_send is False
    assert device.park_start_time is None


@pytest.mark.asyncio
async def test_reset_trip_deletes_history(rentals, store):
    await rentals.start("B1")
    await rentals.end("B1")
    await rentals.start("B1")

    deleted = await rentals.reset_trip("B1")
    assert deleted == 2

    device = await _device(store, "B1")
    assert device.state is RentalState.IDLE
    _check_invariant(device)
    async with store.transaction() as tx:
        assert await tx.list_trips(device_id="B1") == []


@pytest.mark.asyncio
async def test_reset_trip_unknown_device(rentals):
    assert await rentals.reset_trip("ghost") == 0


@pytest.mark.asyncio
async def test_concurrent_starts_open_one_trip(rentals, store):
    results = await asyncio.gather(
        rentals.start("B1"), rentals.start("B1"), return_exceptions=True,
    )
    trips = [r for r in results if isinstance(r, TripRecord)]
    conflicts = [r for r in results if isinstance(r, InvalidStateTransition)]
    assert len(trips) == 1
    assert len(conflicts) == 1

    device = await _device(store, "B1")
    assert device.trip_id == trips[0].trip_id
    async with store.transaction() as tx:
        stored = await tx.list_trips(device_id="B1")
    assert [t.trip_id for t in stored] == [trips[0].trip_id]
