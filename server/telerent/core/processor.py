"""Telemetry processor. Decodes, merges and records incoming unit data.

This is the ingest path of the core. It depends on the Store protocol, not
a concrete implementation. Each packet is applied in one storage transaction:
the device row is merged, and while a rental is open every GPS fix is also
appended to the trip route.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from telerent.core.errors import (
    InvalidJSON,
    InvalidStateTransition,
    MalformedFrame,
    MissingRequiredField,
    StorageFailure,
    UnknownDevice,
)
from telerent.core.ledger import TripLedger
from telerent.core.models import (
    DeviceRecord,
    DeviceUpdate,
    GpsFix,
    MotionAlert,
    RoutePoint,
    TelemetryEvent,
    TripSnapshot,
    TripStats,
)
from telerent.core.packets import decode_frame, decode_json

if TYPE_CHECKING:
    from telerent.core.stats import ServerStats
    from telerent.storage.base import Store

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_events(device: DeviceRecord | None, events: Sequence[TelemetryEvent],
                 now: datetime) -> DeviceUpdate:
    """Fold decoded events into one partial device update."""
    values: dict[str, Any] = {}
    for event in events:
        if isinstance(event, GpsFix):
            values.update(lat=event.lat, lon=event.lon, speed=event.speed)
        elif isinstance(event, TripStats):
            values.update(
                total_distance=event.total_distance,
                avg_speed=event.avg_speed,
                trip_duration=event.trip_duration,
            )
        elif isinstance(event, MotionAlert):
            # Motion only means intrusion on a parked unit.
            if device is not None and device.park_mode:
                values.update(motion_detected=True, last_motion_time=now)
            else:
                log.debug("motion_ignored", device=event.device_id[:16])
    return DeviceUpdate(**values)


class TelemetryProcessor:
    """Applies decoded telemetry to device state and open trips."""

    def __init__(
        self,
        store: Store,
        stats: ServerStats,
        *,
        verify_crc: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._stats = stats
        self._verify_crc = verify_crc
        self._clock = clock

    async def ingest_frame(self, frame: bytes) -> TelemetryEvent:
        """Decode and apply one binary frame."""
        try:
            event = decode_frame(frame, verify_crc=self._verify_crc)
        except MalformedFrame as exc:
            self._stats.record_rejected()
            log.warning("frame_rejected", reason=exc.message, size=len(frame))
            raise
        await self._apply(event.device_id, [event], transport="binary", size_bytes=len(frame))
        return event

    async def ingest_json(self, raw: bytes) -> list[TelemetryEvent]:
        """Parse and apply a pre-decoded JSON body."""
        try:
            try:
                body = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise InvalidJSON("invalid JSON") from None
            if not isinstance(body, dict):
                raise InvalidJSON("JSON body must be an object")
            events = decode_json(body)
        except (InvalidJSON, MissingRequiredField) as exc:
            self._stats.record_rejected()
            log.warning("json_rejected", reason=exc.message)
            raise
        await self._apply(body["deviceId"], events, transport="json", size_bytes=len(raw))
        return events

    async def _apply(self, device_id: str, events: Sequence[TelemetryEvent], *,
                     transport: str, size_bytes: int) -> None:
        now = self._clock()
        fixes = [e for e in events if isinstance(e, GpsFix)]
        appended = 0
        try:
            async with self._store.transaction() as tx:
                device = await tx.get_device(device_id)
                await tx.upsert_device(device_id, merge_events(device, events, now), now)

                if fixes:
                    device = await tx.get_device(device_id)
                    if device is not None and device.rental_active and device.trip_id:
                        ledger = TripLedger(tx)
                        snapshot = TripSnapshot.from_device(device)
                        for fix in fixes:
                            point = RoutePoint(lat=fix.lat, lon=fix.lon, timestamp=now)
                            await ledger.append_route_point(device.trip_id, point, snapshot)
                            appended += 1
        except StorageFailure:
            self._stats.record_storage_error()
            raise

        self._stats.record_packet(
            device_id,
            size_bytes,
            transport=transport,
            gps=len(fixes),
            stats=sum(1 for e in events if isinstance(e, TripStats)),
            motion=sum(1 for e in events if isinstance(e, MotionAlert)),
            route_points=appended,
        )
        log.debug("telemetry_ingested", device=device_id[:16], transport=transport,
                  events=[type(e).__name__ for e in events], route_points=appended)

    async def record_motion(self, device_id: str) -> datetime:
        """Flag an intrusion on a parked unit and ask it to start reporting GPS."""
        now = self._clock()
        async with self._store.transaction() as tx:
            device = await tx.get_device(device_id)
            if device is None:
                raise UnknownDevice(device_id)
            if not device.park_mode:
                raise InvalidStateTransition(f"device {device_id} is not in park mode")
            await tx.upsert_device(device_id, DeviceUpdate(
                gps_send=True, motion_detected=True, last_motion_time=now,
            ), now)
        self._stats.record_packet(device_id, 0, transport="json", motion=1)
        log.warning("motion_detected", device=device_id, trip_id=device.trip_id)
        return now
