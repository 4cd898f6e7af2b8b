"""Rental state machine.

Per device::

    Idle --start--> Renting/Driving <--set_park_mode--> Renting/Parked
      ^                     |                                 |
      +--------end----------+---------------end---------------+

This is the only component that links or unlinks a ``trip_id`` to a device.
Every operation runs inside one storage transaction, so a rejected transition
leaves the stored state untouched.
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from telerent.core.errors import InvalidStateTransition, UnknownDevice
from telerent.core.ledger import TripLedger
from telerent.core.models import (
    DeviceRecord,
    DeviceUpdate,
    RentalState,
    TripRecord,
    TripSnapshot,
    TripSummary,
)
from telerent.core.pricing import DEFAULT_RATES, CostBreakdown, PricingRates, line_items

if TYPE_CHECKING:
    from telerent.storage.base import Store, StoreTransaction

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_trip_id(now: datetime) -> str:
    return f"trip_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class RentalEnded:
    trip: TripRecord
    breakdown: CostBreakdown
    # Route the client claimed; echoed back for display, never persisted.
    client_route: list[Any] = field(default_factory=list)


def park_transition(device: DeviceRecord, parked: bool, now: datetime) -> DeviceUpdate | None:
    """Device update for a park/unpark request, or None if it is a no-op."""
    state = device.state
    if state is RentalState.IDLE:
        raise InvalidStateTransition(f"device {device.device_id} is not rented")
    if parked and state is RentalState.PARKED:
        return None
    if not parked and state is RentalState.DRIVING:
        return None
    if parked:
        return DeviceUpdate(park_mode=True, park_start_time=now)
    return DeviceUpdate(
        park_mode=False,
        park_duration=device.effective_park_duration(now),
        motion_detected=False,
        clear=frozenset({"park_start_time", "last_motion_time"}),
    )


class RentalService:
    """Drives rentals for all devices against a Store."""

    def __init__(
        self,
        store: Store,
        rates: PricingRates = DEFAULT_RATES,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._rates = rates
        self._clock = clock

    @property
    def rates(self) -> PricingRates:
        return self._rates

    @staticmethod
    async def _require_device(tx: StoreTransaction, device_id: str) -> DeviceRecord:
        device = await tx.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    # --- Transitions (inside an open transaction) ---

    async def _start(self, tx: StoreTransaction, device_id: str, now: datetime) -> TripRecord:
        device = await tx.get_device(device_id)
        if device is not None and device.rental_active:
            raise InvalidStateTransition(f"device {device_id} is already rented")

        trip_id = new_trip_id(now)
        claimed = await tx.upsert_device(device_id, DeviceUpdate(
            rental_active=True,
            park_mode=False,
            gps_send=True,
            stats_send=True,
            trip_id=trip_id,
            park_duration=0.0,
            total_distance=0.0,
            avg_speed=0.0,
            trip_duration=0,
            motion_detected=False,
            clear=frozenset({"park_start_time", "last_motion_time"}),
        ), now, require_idle=True)
        if not claimed:
            # Another request started a rental after our read.
            raise InvalidStateTransition(f"device {device_id} is already rented")
        trip = await TripLedger(tx).open(trip_id, device_id, now)
        log.info("rental_started", device=device_id, trip_id=trip_id,
                 new_device=device is None)
        return trip

    async def _end(
        self,
        tx: StoreTransaction,
        device: DeviceRecord,
        client_route: list[Any] | None,
        now: datetime,
    ) -> RentalEnded:
        if not device.rental_active or device.trip_id is None:
            raise InvalidStateTransition(f"device {device.device_id} is not rented")

        # Closes an open park interval the same way unparking would.
        park_seconds = device.effective_park_duration(now)
        trip_seconds = device.trip_duration or 0
        drive_seconds = trip_seconds - park_seconds
        if drive_seconds < 0:
            log.warning("drive_time_negative", device=device.device_id,
                        trip_id=device.trip_id, trip_seconds=trip_seconds,
                        park_seconds=round(park_seconds, 1))
            drive_seconds = 0.0

        breakdown = line_items(device.total_distance or 0.0, drive_seconds,
                               park_seconds, self._rates)
        summary = TripSummary(
            snapshot=TripSnapshot.from_device(device),
            park_duration=park_seconds,
            total_cost=breakdown.total,
        )
        trip = await TripLedger(tx).finalize(device.trip_id, summary, now)

        await tx.upsert_device(device.device_id, DeviceUpdate(
            rental_active=False,
            park_mode=True,
            gps_send=True,
            stats_send=True,
            park_duration=0.0,
            total_distance=0.0,
            avg_speed=0.0,
            trip_duration=0,
            clear=frozenset({"trip_id", "park_start_time"}),
        ), now)

        client_route = list(client_route or [])
        if client_route and len(client_route) != len(trip.route):
            log.info("client_route_ignored", device=device.device_id,
                     trip_id=trip.trip_id, client_points=len(client_route),
                     server_points=len(trip.route))
        log.info("rental_ended", device=device.device_id, trip_id=trip.trip_id,
                 distance_km=summary.snapshot.total_distance,
                 park_seconds=round(park_seconds, 1),
                 total_cost=round(breakdown.total, 2))
        return RentalEnded(trip=trip, breakdown=breakdown, client_route=client_route)

    async def _control(
        self,
        tx: StoreTransaction,
        device: DeviceRecord,
        now: datetime,
        *,
        park_mode: bool | None = None,
        gps_send: bool | None = None,
        stats_send: bool | None = None,
    ) -> None:
        update = DeviceUpdate()
        if park_mode is not None:
            update = park_transition(device, park_mode, now) or update
            if not update.is_empty():
                log.info("park_mode_changed", device=device.device_id,
                         trip_id=device.trip_id, parked=park_mode)
        update = dataclasses.replace(update, gps_send=gps_send, stats_send=stats_send)
        if not update.is_empty():
            await tx.upsert_device(device.device_id, update, now)

    # --- Public operations ---

    async def start(self, device_id: str) -> TripRecord:
        """Begin a rental. Provisions the device row on first rental."""
        now = self._clock()
        async with self._store.transaction() as tx:
            return await self._start(tx, device_id, now)

    async def end(self, device_id: str, client_route: list[Any] | None = None) -> RentalEnded:
        """Finish a rental, price it, and return the finalized trip."""
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await self._require_device(tx, device_id)
            return await self._end(tx, device, client_route, now)

    async def set_park_mode(self, device_id: str, parked: bool) -> DeviceRecord:
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await self._require_device(tx, device_id)
            await self._control(tx, device, now, park_mode=parked)
            return await self._require_device(tx, device_id)

    async def update_control(
        self,
        device_id: str,
        *,
        park_mode: bool | None = None,
        gps_send: bool | None = None,
        stats_send: bool | None = None,
    ) -> DeviceRecord:
        """Mid-rental controls: park mode goes through the state machine."""
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await self._require_device(tx, device_id)
            await self._control(tx, device, now, park_mode=park_mode,
                                gps_send=gps_send, stats_send=stats_send)
            return await self._require_device(tx, device_id)

    async def apply_control_state(
        self,
        device_id: str,
        *,
        rental_active: bool | None = None,
        park_mode: bool | None = None,
        gps_send: bool | None = None,
        stats_send: bool | None = None,
    ) -> DeviceRecord:
        """Drive a device towards the requested control flags.

        ``rental_active`` starts or ends a rental only when it differs from the
        current state. On a rented device park mode goes through the state
        machine; on an idle one it is a plain flag with no park interval.
        """
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await tx.get_device(device_id)
            if rental_active is True and (device is None or not device.rental_active):
                await self._start(tx, device_id, now)
            elif rental_active is False and device is not None and device.rental_active:
                await self._end(tx, device, None, now)
            device = await self._require_device(tx, device_id)
            if device.rental_active:
                await self._control(tx, device, now, park_mode=park_mode,
                                    gps_send=gps_send, stats_send=stats_send)
            else:
                update = DeviceUpdate(park_mode=park_mode, gps_send=gps_send, stats_send=stats_send)
                if not update.is_empty():
                    await tx.upsert_device(device_id, update, now)
            return await self._require_device(tx, device_id)

    async def reset_trip(self, device_id: str) -> int:
        """Return the device to Idle and delete its whole trip history."""
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await tx.get_device(device_id)
            if device is not None:
                await tx.upsert_device(device_id, DeviceUpdate(
                    rental_active=False,
                    park_duration=0.0,
                    total_distance=0.0,
                    avg_speed=0.0,
                    trip_duration=0,
                    clear=frozenset({"trip_id", "park_start_time"}),
                ), now)
            deleted = await TripLedger(tx).delete_for_device(device_id)
        log.info("trip_history_reset", device=device_id, trips_deleted=deleted)
        return deleted
