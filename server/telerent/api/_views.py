"""Core model -> JSON conversion for API responses (camelCase keys)."""

from __future__ import annotations

from datetime import datetime

from telerent.core.models import ControlState, DeviceRecord, RoutePoint, TripRecord
from telerent.core.pricing import CostBreakdown, PricingRates


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def control_to_json(state: ControlState | DeviceRecord) -> dict:
    return {
        "rentalActive": state.rental_active,
        "parkMode": state.park_mode,
        "gpsSend": state.gps_send,
        "statsSend": state.stats_send,
        "tripId": state.trip_id,
    }


def device_to_json(device: DeviceRecord, now: datetime) -> dict:
    """Latest device state. ``parkDuration`` includes the open park interval."""
    return {
        "deviceId": device.device_id,
        "lat": device.lat,
        "lon": device.lon,
        "speed": device.speed,
        "totalDistance": device.total_distance,
        "avgSpeed": device.avg_speed,
        "tripDuration": device.trip_duration,
        **control_to_json(device),
        "parkDuration": round(device.effective_park_duration(now), 3),
        "parkStartTime": _iso(device.park_start_time),
        "motionDetected": device.motion_detected,
        "lastMotionTime": _iso(device.last_motion_time),
        "createdAt": _iso(device.created_at),
        "timestamp": _iso(device.updated_at),
    }


def route_to_json(points: list[RoutePoint]) -> list[dict]:
    return [
        {"lat": p.lat, "lon": p.lon, "timestamp": _iso(p.timestamp)}
        for p in points
    ]


def trip_to_json(trip: TripRecord) -> dict:
    return {
        "tripId": trip.trip_id,
        "deviceId": trip.device_id,
        "lat": trip.lat,
        "lon": trip.lon,
        "speed": trip.speed,
        "totalDistance": trip.total_distance,
        "avgSpeed": trip.avg_speed,
        "tripDuration": trip.trip_duration,
        "parkDuration": trip.park_duration,
        "totalCost": trip.total_cost,
        "timestamp": _iso(trip.started_at),
        "endTime": _iso(trip.end_time),
        "realtimeRoute": route_to_json(trip.route),
    }


def breakdown_to_json(breakdown: CostBreakdown) -> dict:
    return {
        "kmCost": breakdown.km_cost,
        "driveCost": breakdown.drive_cost,
        "parkCost": breakdown.park_cost,
        "totalCost": breakdown.total,
    }


def rates_to_json(rates: PricingRates) -> dict:
    return {
        "perKm": rates.per_km,
        "drivePerMinute": rates.drive_per_minute,
        "parkPerMinute": rates.park_per_minute,
    }
