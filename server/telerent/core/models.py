"""Telerent server — core internal data models.

These are plain dataclasses with no framework dependencies.
Wire frames, JSON bodies and database rows are converted to/from these at the
boundary.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Union


# --- Telemetry events (decoder output) ---

@dataclass(frozen=True)
class GpsFix:
    device_id: str
    lat: float
    lon: float
    speed: float = 0.0


@dataclass(frozen=True)
class TripStats:
    """Cumulative trip statistics reported by the unit. Each field is optional."""
    device_id: str
    total_distance: float | None = None
    avg_speed: float | None = None
    trip_duration: int | None = None


@dataclass(frozen=True)
class MotionAlert:
    device_id: str


TelemetryEvent = Union[GpsFix, TripStats, MotionAlert]


# --- Device state ---

class RentalState(str, enum.Enum):
    IDLE = "idle"
    DRIVING = "driving"
    PARKED = "parked"


@dataclass(frozen=True)
class DeviceUpdate:
    """Partial update of a device row.

    ``None`` means "leave the stored value unchanged". Fields that must be
    reset to NULL are named in ``clear``.
    """
    lat: float | None = None
    lon: float | None = None
    speed: float | None = None
    total_distance: float | None = None
    avg_speed: float | None = None
    trip_duration: int | None = None
    rental_active: bool | None = None
    park_mode: bool | None = None
    gps_send: bool | None = None
    stats_send: bool | None = None
    trip_id: str | None = None
    park_duration: float | None = None
    park_start_time: datetime | None = None
    motion_detected: bool | None = None
    last_motion_time: datetime | None = None
    clear: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        names = {f.name for f in fields(self)} - {"clear"}
        unknown = set(self.clear) - names
        if unknown:
            raise ValueError(f"cannot clear unknown fields: {sorted(unknown)}")
        both = {name for name in self.clear if getattr(self, name) is not None}
        if both:
            raise ValueError(f"fields both set and cleared: {sorted(both)}")

    def assignments(self) -> dict[str, Any]:
        """Columns this update writes, mapped to their new values."""
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "clear":
                continue
            value = getattr(self, f.name)
            if value is not None:
                out[f.name] = value
        for name in self.clear:
            out[name] = None
        return out

    def is_empty(self) -> bool:
        return not self.assignments()


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    lat: float | None = None
    lon: float | None = None
    speed: float | None = None
    total_distance: float | None = None
    avg_speed: float | None = None
    trip_duration: int | None = None
    rental_active: bool = False
    park_mode: bool = False
    gps_send: bool = True
    stats_send: bool = True
    trip_id: str | None = None
    park_duration: float = 0.0
    park_start_time: datetime | None = None
    motion_detected: bool = False
    last_motion_time: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def state(self) -> RentalState:
        if not self.rental_active:
            return RentalState.IDLE
        return RentalState.PARKED if self.park_mode else RentalState.DRIVING

    def open_park_seconds(self, now: datetime) -> float:
        """Length of the currently open park interval, 0 if none."""
        if self.park_start_time is None:
            return 0.0
        return max(0.0, (now - self.park_start_time).total_seconds())

    def effective_park_duration(self, now: datetime) -> float:
        """Closed park intervals plus the open one, if any."""
        return (self.park_duration or 0.0) + self.open_park_seconds(now)


@dataclass(frozen=True)
class ControlState:
    """Control flags a unit polls for. Also used for the global defaults row."""
    rental_active: bool = False
    park_mode: bool = False
    gps_send: bool = True
    stats_send: bool = True
    trip_id: str | None = None


# --- Trips ---

@dataclass(frozen=True)
class RoutePoint:
    lat: float
    lon: float
    timestamp: datetime


@dataclass(frozen=True)
class TripSnapshot:
    """Latest device telemetry copied onto the open trip."""
    lat: float | None = None
    lon: float | None = None
    speed: float | None = None
    total_distance: float = 0.0
    avg_speed: float = 0.0
    trip_duration: int = 0

    @classmethod
    def from_device(cls, device: DeviceRecord) -> TripSnapshot:
        return cls(
            lat=device.lat,
            lon=device.lon,
            speed=device.speed,
            total_distance=device.total_distance or 0.0,
            avg_speed=device.avg_speed or 0.0,
            trip_duration=device.trip_duration or 0,
        )


@dataclass(frozen=True)
class TripSummary:
    """Final figures written when a trip is closed."""
    snapshot: TripSnapshot
    park_duration: float
    total_cost: float


@dataclass(frozen=True)
class TripRecord:
    trip_id: str
    device_id: str
    started_at: datetime
    lat: float | None = None
    lon: float | None = None
    speed: float | None = None
    total_distance: float = 0.0
    avg_speed: float = 0.0
    trip_duration: int = 0
    park_duration: float = 0.0
    total_cost: float | None = None
    end_time: datetime | None = None
    route: list[RoutePoint] = field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.end_time is not None
