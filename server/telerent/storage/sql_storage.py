"""Relational storage implementation (SQLAlchemy 2.0 async).

Supports SQLite (dev, tests) and PostgreSQL. Device and defaults writes are a
single ``INSERT ... ON CONFLICT DO UPDATE`` statement, so each one is atomic
per row. Two packets for the same device racing each other are still
last-write-wins per column.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import RowMapping, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from telerent.core.errors import StorageFailure
from telerent.core.models import (
    ControlState,
    DeviceRecord,
    DeviceUpdate,
    RoutePoint,
    TripRecord,
    TripSnapshot,
    TripSummary,
)
from telerent.storage.tables import Base, ControlDefaultsRow, DeviceRow, RoutePointRow, TripRow

log = structlog.get_logger()

DEVICES = DeviceRow.__table__
TRIPS = TripRow.__table__
ROUTE_POINTS = RoutePointRow.__table__
CONTROL_DEFAULTS = ControlDefaultsRow.__table__

DEFAULTS_ROW_ID = "default"

_DATETIME_COLUMNS = frozenset({"park_start_time", "last_motion_time"})

_TRIP_ORDER = {
    "timestamp": TRIPS.c.started_at,
    "speed": TRIPS.c.avg_speed,
    "distance": TRIPS.c.total_distance,
    "duration": TRIPS.c.trip_duration,
}


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _device_from_row(row: RowMapping) -> DeviceRecord:
    return DeviceRecord(
        device_id=row["device_id"],
        lat=row["lat"],
        lon=row["lon"],
        speed=row["speed"],
        total_distance=row["total_distance"],
        avg_speed=row["avg_speed"],
        trip_duration=row["trip_duration"],
        rental_active=bool(row["rental_active"]),
        park_mode=bool(row["park_mode"]),
        gps_send=bool(row["gps_send"]),
        stats_send=bool(row["stats_send"]),
        trip_id=row["trip_id"],
        park_duration=row["park_duration"] or 0.0,
        park_start_time=_parse(row["park_start_time"]),
        motion_detected=bool(row["motion_detected"]),
        last_motion_time=_parse(row["last_motion_time"]),
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _trip_from_row(row: RowMapping, route: list[RoutePoint] | None = None) -> TripRecord:
    return TripRecord(
        trip_id=row["trip_id"],
        device_id=row["device_id"],
        started_at=_parse(row["started_at"]),
        lat=row["lat"],
        lon=row["lon"],
        speed=row["speed"],
        total_distance=row["total_distance"],
        avg_speed=row["avg_speed"],
        trip_duration=row["trip_duration"],
        park_duration=row["park_duration"],
        total_cost=row["total_cost"],
        end_time=_parse(row["end_time"]),
        route=route or [],
    )


def _point_from_row(row: RowMapping) -> RoutePoint:
    return RoutePoint(lat=row["lat"], lon=row["lon"], timestamp=_parse(row["timestamp"]))


class SqlTransaction:
    """StoreTransaction bound to one AsyncSession."""

    def __init__(self, session: AsyncSession, insert: Any) -> None:
        self._session = session
        self._insert = insert

    # --- Devices ---

    async def upsert_device(
        self,
        device_id: str,
        update: DeviceUpdate,
        now: datetime,
        *,
        require_idle: bool = False,
    ) -> bool:
        """Insert the device or merge ``update`` into it.

        Only the columns named by ``update.assignments()`` are written on
        conflict; everything else keeps its stored value. With
        ``require_idle`` the conflict branch only fires while the stored row
        has no active rental, so the idle check and the write are one
        statement. Returns whether a row was written.
        """
        assignments = {
            name: _iso(value) if name in _DATETIME_COLUMNS else value
            for name, value in update.assignments().items()
        }
        stamp = _iso(now)
        stmt = self._insert(DEVICES).values(
            device_id=device_id,
            created_at=stamp,
            updated_at=stamp,
            **assignments,
        )
        set_ = {name: stmt.excluded[name] for name in assignments}
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(
            index_elements=[DEVICES.c.device_id],
            set_=set_,
            where=DEVICES.c.rental_active.is_(False) if require_idle else None,
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get_device(self, device_id: str) -> DeviceRecord | None:
        result = await self._session.execute(
            select(DEVICES).where(DEVICES.c.device_id == device_id)
        )
        row = result.mappings().first()
        return _device_from_row(row) if row is not None else None

    async def list_devices(self) -> list[DeviceRecord]:
        result = await self._session.execute(
            select(DEVICES).order_by(DEVICES.c.updated_at.desc())
        )
        return [_device_from_row(row) for row in result.mappings()]

    async def delete_device(self, device_id: str) -> bool:
        result = await self._session.execute(
            delete(DEVICES).where(DEVICES.c.device_id == device_id)
        )
        return result.rowcount > 0

    async def get_control_defaults(self) -> ControlState:
        result = await self._session.execute(
            select(CONTROL_DEFAULTS).where(CONTROL_DEFAULTS.c.state_id == DEFAULTS_ROW_ID)
        )
        row = result.mappings().first()
        if row is None:
            return ControlState()
        return ControlState(
            rental_active=bool(row["rental_active"]),
            park_mode=bool(row["park_mode"]),
            gps_send=bool(row["gps_send"]),
            stats_send=bool(row["stats_send"]),
        )

    async def update_control_defaults(
        self,
        now: datetime,
        *,
        rental_active: bool | None = None,
        park_mode: bool | None = None,
        gps_send: bool | None = None,
        stats_send: bool | None = None,
    ) -> None:
        provided = {
            name: value
            for name, value in (
                ("rental_active", rental_active),
                ("park_mode", park_mode),
                ("gps_send", gps_send),
                ("stats_send", stats_send),
            )
            if value is not None
        }
        stmt = self._insert(CONTROL_DEFAULTS).values(
            state_id=DEFAULTS_ROW_ID, updated_at=_iso(now), **provided,
        )
        set_ = {name: stmt.excluded[name] for name in provided}
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=[CONTROL_DEFAULTS.c.state_id], set_=set_)
        await self._session.execute(stmt)

    # --- Trips ---

    async def insert_trip(self, trip_id: str, device_id: str, started_at: datetime) -> None:
        await self._session.execute(
            TRIPS.insert().values(
                trip_id=trip_id,
                device_id=device_id,
                started_at=_iso(started_at),
            )
        )

    async def get_trip(self, trip_id: str, *, with_route: bool = False) -> TripRecord | None:
        result = await self._session.execute(select(TRIPS).where(TRIPS.c.trip_id == trip_id))
        row = result.mappings().first()
        if row is None:
            return None
        route = await self.list_route_points(trip_id) if with_route else None
        return _trip_from_row(row, route)

    async def update_trip_snapshot(self, trip_id: str, snapshot: TripSnapshot) -> None:
        await self._session.execute(
            update(TRIPS)
            .where(TRIPS.c.trip_id == trip_id)
            .values(
                lat=snapshot.lat,
                lon=snapshot.lon,
                speed=snapshot.speed,
                total_distance=snapshot.total_distance,
                avg_speed=snapshot.avg_speed,
                trip_duration=snapshot.trip_duration,
            )
        )

    async def insert_route_point(self, trip_id: str, point: RoutePoint) -> None:
        await self._session.execute(
            ROUTE_POINTS.insert().values(
                trip_id=trip_id, lat=point.lat, lon=point.lon, timestamp=_iso(point.timestamp),
            )
        )

    async def list_route_points(self, trip_id: str) -> list[RoutePoint]:
        result = await self._session.execute(
            select(ROUTE_POINTS)
            .where(ROUTE_POINTS.c.trip_id == trip_id)
            .order_by(ROUTE_POINTS.c.id)
        )
        return [_point_from_row(row) for row in result.mappings()]

    async def finalize_trip(self, trip_id: str, summary: TripSummary, end_time: datetime) -> bool:
        """Close an open trip. Returns False if it was already closed or missing."""
        snap = summary.snapshot
        result = await self._session.execute(
            update(TRIPS)
            .where(TRIPS.c.trip_id == trip_id, TRIPS.c.end_time.is_(None))
            .values(
                lat=snap.lat,
                lon=snap.lon,
                speed=snap.speed,
                total_distance=snap.total_distance,
                avg_speed=snap.avg_speed,
                trip_duration=snap.trip_duration,
                park_duration=summary.park_duration,
                total_cost=summary.total_cost,
                end_time=_iso(end_time),
            )
        )
        return result.rowcount == 1

    async def list_trips(
        self,
        device_id: str | None = None,
        sort_by: str = "timestamp",
        limit: int = 100,
    ) -> list[TripRecord]:
        query = select(TRIPS)
        if device_id:
            query = query.where(TRIPS.c.device_id == device_id)
        order_col = _TRIP_ORDER.get(sort_by, TRIPS.c.started_at)
        query = query.order_by(order_col.desc(), TRIPS.c.trip_id).limit(limit)
        rows = (await self._session.execute(query)).mappings().all()
        if not rows:
            return []

        routes: dict[str, list[RoutePoint]] = {row["trip_id"]: [] for row in rows}
        points = await self._session.execute(
            select(ROUTE_POINTS)
            .where(ROUTE_POINTS.c.trip_id.in_(list(routes)))
            .order_by(ROUTE_POINTS.c.id)
        )
        for point in points.mappings():
            routes[point["trip_id"]].append(_point_from_row(point))

        return [_trip_from_row(row, routes[row["trip_id"]]) for row in rows]

    async def delete_trips_for_device(self, device_id: str) -> int:
        trip_ids = select(TRIPS.c.trip_id).where(TRIPS.c.device_id == device_id)
        await self._session.execute(
            delete(ROUTE_POINTS).where(ROUTE_POINTS.c.trip_id.in_(trip_ids))
        )
        result = await self._session.execute(delete(TRIPS).where(TRIPS.c.device_id == device_id))
        return result.rowcount

    async def clear_all(self) -> None:
        for table in (ROUTE_POINTS, TRIPS, DEVICES, CONTROL_DEFAULTS):
            await self._session.execute(delete(table))


class SqlStore:
    """Store backed by a SQLAlchemy async engine."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        url = make_url(database_url)
        dialect = url.get_backend_name()
        if dialect == "sqlite":
            self._insert = sqlite_insert
        elif dialect == "postgresql":
            self._insert = pg_insert
        else:
            raise ValueError(f"unsupported database backend: {dialect}")

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if dialect == "sqlite":
            if url.database in (None, "", ":memory:"):
                # One shared connection, otherwise each connection gets its own empty database
                engine_kwargs.update({
                    "poolclass": StaticPool,
                    "connect_args": {"check_same_thread": False},
                })
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs.update({
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            })

        self._engine = create_async_engine(database_url, **engine_kwargs)
        self._sessionmaker = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        """Create tables on startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        """Open a unit of work; commit on success, roll back on any exception."""
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    yield SqlTransaction(session, self._insert)
            except SQLAlchemyError as exc:
                log.error("storage_failure", error=str(exc), exc_info=True)
                raise StorageFailure("storage operation failed", details=str(exc)) from exc

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            log.warning("storage_ping_failed", exc_info=True)
            return False
        return True

    async def close(self) -> None:
        await self._engine.dispose()
