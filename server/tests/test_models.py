"""Tests for core model helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from telerent.core.models import DeviceRecord, DeviceUpdate, RentalState

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_update_assignments_skip_unset_fields():
    update = DeviceUpdate(lat=45.0, speed=0.0)
    assert update.assignments() == {"lat": 45.0, "speed": 0.0}


def test_update_clear_writes_null():
    update = DeviceUpdate(park_mode=False, clear=frozenset({"park_start_time"}))
    assert update.assignments() == {"park_mode": False, "park_start_time": None}


def test_update_false_is_a_value():
    assert DeviceUpdate(rental_active=False).assignments() == {"rental_active": False}


def test_empty_update():
    assert DeviceUpdate().is_empty()
    assert not DeviceUpdate(clear=frozenset({"trip_id"})).is_empty()


def test_clear_unknown_field_rejected():
    with pytest.raises(ValueError, match="unknown"):
        DeviceUpdate(clear=frozenset({"battery"}))


def test_set_and_clear_same_field_rejected():
    with pytest.raises(ValueError, match="both"):
        DeviceUpdate(trip_id="trip_1", clear=frozenset({"trip_id"}))


@pytest.mark.parametrize("rental_active,park_mode,state", [
    (False, False, RentalState.IDLE),
    (False, True, RentalState.IDLE),
    (True, False, RentalState.DRIVING),
    (True, True, RentalState.PARKED),
])
def test_rental_state(rental_active, park_mode, state):
    device = DeviceRecord(device_id="B1", rental_active=rental_active, park_mode=park_mode)
    assert device.state is state


def test_effective_park_duration_adds_open_interval():
    device = DeviceRecord(device_id="B1", park_duration=60.0, park_start_time=T0)
    assert device.open_park_seconds(T0 + timedelta(seconds=30)) == 30
    assert device.effective_park_duration(T0 + timedelta(seconds=30)) == 90


def test_effective_park_duration_without_open_interval():
    device = DeviceRecord(device_id="B1", park_duration=12.5)
    assert device.effective_park_duration(T0) == 12.5


def test_open_interval_never_negative():
    device = DeviceRecord(device_id="B1", park_start_time=T0)
    assert device.open_park_seconds(T0 - timedelta(seconds=5)) == 0
