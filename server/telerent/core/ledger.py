"""Trip ledger: the only writer of route points and trip finalization.

Works on top of one storage transaction, so its checks and writes commit or
roll back together with whatever else the request does.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from telerent.core.errors import TripFinalized, UnknownTrip
from telerent.core.models import RoutePoint, TripRecord, TripSnapshot, TripSummary

if TYPE_CHECKING:
    from telerent.storage.base import StoreTransaction

log = structlog.get_logger()


class TripLedger:
    def __init__(self, tx: StoreTransaction) -> None:
        self._tx = tx

    async def _open_trip(self, trip_id: str) -> TripRecord:
        trip = await self._tx.get_trip(trip_id)
        if trip is None:
            raise UnknownTrip(trip_id)
        if trip.is_finalized:
            raise TripFinalized(trip_id)
        return trip

    async def open(self, trip_id: str, device_id: str, started_at: datetime) -> TripRecord:
        """Create an empty trip with zeroed statistics."""
        await self._tx.insert_trip(trip_id, device_id, started_at)
        return TripRecord(trip_id=trip_id, device_id=device_id, started_at=started_at)

    async def append_route_point(self, trip_id: str, point: RoutePoint, snapshot: TripSnapshot) -> None:
        """Append a fix to an open trip and refresh its snapshot fields."""
        await self._open_trip(trip_id)
        await self._tx.insert_route_point(trip_id, point)
        await self._tx.update_trip_snapshot(trip_id, snapshot)

    async def finalize(self, trip_id: str, summary: TripSummary, end_time: datetime) -> TripRecord:
        """Close the trip once. Later appends and finalizations are rejected."""
        await self._open_trip(trip_id)
        if not await self._tx.finalize_trip(trip_id, summary, end_time):
            raise TripFinalized(trip_id)
        trip = await self._tx.get_trip(trip_id, with_route=True)
        assert trip is not None
        log.info("trip_finalized", trip_id=trip_id, device=trip.device_id,
                 points=len(trip.route), total_cost=round(summary.total_cost, 2))
        return trip

    async def get_route(self, trip_id: str) -> list[RoutePoint]:
        if await self._tx.get_trip(trip_id) is None:
            raise UnknownTrip(trip_id)
        return await self._tx.list_route_points(trip_id)

    async def get_trip(self, trip_id: str) -> TripRecord:
        trip = await self._tx.get_trip(trip_id, with_route=True)
        if trip is None:
            raise UnknownTrip(trip_id)
        return trip

    async def list_trips(
        self,
        device_id: str | None = None,
        sort_by: str = "timestamp",
        limit: int = 100,
    ) -> list[TripRecord]:
        return await self._tx.list_trips(device_id=device_id, sort_by=sort_by, limit=limit)

    async def delete_for_device(self, device_id: str) -> int:
        return await self._tx.delete_trips_for_device(device_id)
