"""Storage interface (port) for device state and trip history."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from telerent.core.models import (
        ControlState,
        DeviceRecord,
        DeviceUpdate,
        RoutePoint,
        TripRecord,
        TripSnapshot,
        TripSummary,
    )

# Accepted values for ``list_trips(sort_by=...)``.
TRIP_SORT_KEYS = ("timestamp", "speed", "distance", "duration")


class StoreTransaction(Protocol):
    """Port: one atomic unit of work against durable storage.

    Everything done through a transaction is committed together when the
    ``Store.transaction()`` block exits cleanly, and rolled back otherwise.
    """

    # Devices

    async def upsert_device(
        self,
        device_id: str,
        update: DeviceUpdate,
        now: datetime,
        *,
        require_idle: bool = False,
    ) -> bool:
        """Insert or merge. With ``require_idle`` an existing rented row is left
        alone and False is returned."""
        ...

    async def get_device(self, device_id: str) -> DeviceRecord | None: ...

    async def list_devices(self) -> list[DeviceRecord]: ...

    async def delete_device(self, device_id: str) -> bool: ...

    async def get_control_defaults(self) -> ControlState: ...

    async def update_control_defaults(
        self,
        now: datetime,
        *,
        rental_active: bool | None = None,
        park_mode: bool | None = None,
        gps_send: bool | None = None,
        stats_send: bool | None = None,
    ) -> None: ...

    # Trips

    async def insert_trip(self, trip_id: str, device_id: str, started_at: datetime) -> None: ...

    async def get_trip(self, trip_id: str, *, with_route: bool = False) -> TripRecord | None: ...

    async def update_trip_snapshot(self, trip_id: str, snapshot: TripSnapshot) -> None: ...

    async def insert_route_point(self, trip_id: str, point: RoutePoint) -> None: ...

    async def list_route_points(self, trip_id: str) -> list[RoutePoint]: ...

    async def finalize_trip(self, trip_id: str, summary: TripSummary, end_time: datetime) -> bool: ...

    async def list_trips(
        self,
        device_id: str | None = None,
        sort_by: str = "timestamp",
        limit: int = 100,
    ) -> list[TripRecord]: ...

    async def delete_trips_for_device(self, device_id: str) -> int: ...

    async def clear_all(self) -> None: ...


class Store(Protocol):
    """Port: hands out transactions against durable storage."""

    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
