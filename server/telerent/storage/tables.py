"""Relational schema for devices, trips and route points.

Timestamps are stored as ISO 8601 UTC strings.
"""

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DeviceRow(Base):
    """Live projection of one tracking unit."""
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float | None] = mapped_column(Float)
    lon: Mapped[float | None] = mapped_column(Float)
    speed: Mapped[float | None] = mapped_column(Float)
    total_distance: Mapped[float | None] = mapped_column(Float)  # km
    avg_speed: Mapped[float | None] = mapped_column(Float)  # km/h
    trip_duration: Mapped[int | None] = mapped_column(Integer)  # seconds
    rental_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    park_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gps_send: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    stats_send: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    trip_id: Mapped[str | None] = mapped_column(String(64))
    park_duration: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # closed intervals only
    park_start_time: Mapped[str | None] = mapped_column(String(40))
    motion_detected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_motion_time: Mapped[str | None] = mapped_column(String(40))
    created_at: Mapped[str] = mapped_column(String(40), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)

    __table_args__ = (
        Index("ix_devices_updated_at", "updated_at"),
    )


class TripRow(Base):
    """One rental. Outlives its device row."""
    __tablename__ = "trips"

    trip_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float)
    lon: Mapped[float | None] = mapped_column(Float)
    speed: Mapped[float | None] = mapped_column(Float)
    total_distance: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_speed: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    trip_duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    park_duration: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_cost: Mapped[float | None] = mapped_column(Float)
    started_at: Mapped[str] = mapped_column(String(40), nullable=False)
    end_time: Mapped[str | None] = mapped_column(String(40))

    __table_args__ = (
        Index("ix_trips_device_id", "device_id"),
        Index("ix_trips_started_at", "started_at"),
    )


class RoutePointRow(Base):
    """GPS fix appended to an open trip, ordered by id."""
    __tablename__ = "route_points"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    trip_id: Mapped[str] = mapped_column(ForeignKey("trips.trip_id", ondelete="CASCADE"), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[str] = mapped_column(String(40), nullable=False)

    __table_args__ = (
        Index("ix_route_points_trip_id", "trip_id"),
    )


class ControlDefaultsRow(Base):
    """Fallback control flags for units with no device row (single 'default' row)."""
    __tablename__ = "control_defaults"

    state_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    rental_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    park_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gps_send: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    stats_send: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[str] = mapped_column(String(40), nullable=False)
