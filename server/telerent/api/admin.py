"""Operator endpoints: control flags, device list, trip history, maintenance."""

from __future__ import annotations

from collections import defaultdict

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from telerent.api._body import optional_bool, read_json_object
from telerent.api._views import control_to_json, device_to_json, route_to_json, trip_to_json
from telerent.core.errors import InvalidJSON, InvalidStateTransition, UnknownDevice
from telerent.core.ledger import TripLedger
from telerent.storage.base import TRIP_SORT_KEYS

router = APIRouter(prefix="/admin")

log = structlog.get_logger()

_FLAGS = ("rentalActive", "parkMode", "gpsSend", "statsSend")


def _parse_limit(raw: str | None) -> int:
    """Positive integer from the query string, 0 when missing or unusable."""
    try:
        value = int(raw) if raw else 0
    except ValueError:
        return 0
    return max(value, 0)


@router.get("/state")
async def get_state(device_id: str | None = Query(default=None, alias="deviceId")) -> JSONResponse:
    """Control flags of one device, or the global defaults.

    Falls back to the defaults when ``deviceId`` is omitted or unknown.
    """
    from telerent.main import get_store

    async with get_store().transaction() as tx:
        device = await tx.get_device(device_id) if device_id else None
        if device is not None:
            return JSONResponse(content={"deviceId": device_id, **control_to_json(device)})
        defaults = await tx.get_control_defaults()
    return JSONResponse(content=control_to_json(defaults))


@router.post("/state")
async def set_state(request: Request) -> JSONResponse:
    """Update a device's control flags, or the global defaults without ``deviceId``.

    On a device, ``rentalActive`` starts or ends a rental and ``parkMode``
    goes through the rental state machine.
    """
    from telerent.main import get_clock, get_rentals, get_store

    body = await read_json_object(request)
    flags = {key: optional_bool(body, key) for key in _FLAGS}
    device_id = body.get("deviceId")
    if device_id is not None and not isinstance(device_id, str):
        raise InvalidJSON("deviceId must be a string")

    if device_id:
        await get_rentals().apply_control_state(
            device_id,
            rental_active=flags["rentalActive"],
            park_mode=flags["parkMode"],
            gps_send=flags["gpsSend"],
            stats_send=flags["statsSend"],
        )
    elif any(v is not None for v in flags.values()):
        async with get_store().transaction() as tx:
            await tx.update_control_defaults(
                get_clock()(),
                rental_active=flags["rentalActive"],
                park_mode=flags["parkMode"],
                gps_send=flags["gpsSend"],
                stats_send=flags["statsSend"],
            )
        log.info("control_defaults_updated",
                 **{k: v for k, v in flags.items() if v is not None})

    return JSONResponse(content={"ok": True})


@router.get("/devices")
async def list_devices() -> JSONResponse:
    """All devices with their latest telemetry, most recently updated first."""
    from telerent.main import get_clock, get_store

    now = get_clock()()
    async with get_store().transaction() as tx:
        devices = await tx.list_devices()
    return JSONResponse(content={
        "devices": [
            {"deviceId": d.device_id, "value": device_to_json(d, now)}
            for d in devices
        ],
    })


@router.delete("/devices/{device_id}")
async def delete_device(device_id: str) -> JSONResponse:
    """Remove an idle device row. Its trip history is kept.

    A device with an open rental is refused; end the rental first.
    """
    from telerent.main import get_store

    async with get_store().transaction() as tx:
        device = await tx.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        if device.rental_active:
            raise InvalidStateTransition(
                f"device {device_id} has an open rental {device.trip_id}")
        await tx.delete_device(device_id)
    log.info("device_deleted", device=device_id)
    return JSONResponse(content={"ok": True, "message": f"{device_id} deleted"})


@router.get("/trips")
async def list_trips(
    device_id: str | None = Query(default=None, alias="deviceId"),
    sort_by: str = Query(default="timestamp", alias="sortBy"),
    limit: str | None = Query(default=None),
) -> JSONResponse:
    """Trips, newest/largest first, also grouped by device.

    ``sortBy`` is one of timestamp, speed, distance, duration; anything else
    sorts by timestamp. A missing, zero or non-numeric ``limit`` means the
    configured default.
    """
    from telerent.main import get_config, get_store

    limits = get_config().limits
    count = _parse_limit(limit) or limits.default_trip_limit
    count = min(count, limits.max_trip_limit)
    if sort_by not in TRIP_SORT_KEYS:
        sort_by = "timestamp"

    async with get_store().transaction() as tx:
        trips = await TripLedger(tx).list_trips(device_id=device_id, sort_by=sort_by, limit=count)

    payload = [trip_to_json(t) for t in trips]
    grouped: dict[str, list[dict]] = defaultdict(list)
    for trip in payload:
        grouped[trip["deviceId"]].append(trip)

    return JSONResponse(content={
        "ok": True,
        "trips": payload,
        "grouped": grouped,
        "sortedBy": sort_by,
        "total": len(payload),
    })


@router.get("/trips/{trip_id}")
async def get_trip(trip_id: str) -> JSONResponse:
    """One trip with its full route, for display or replay."""
    from telerent.main import get_store

    async with get_store().transaction() as tx:
        trip = await TripLedger(tx).get_trip(trip_id)
    return JSONResponse(content={
        "trip": trip_to_json(trip),
        "routePoints": route_to_json(trip.route),
    })


@router.post("/clear-all")
async def clear_all() -> JSONResponse:
    """Delete every device, trip, route point and the global defaults."""
    from telerent.main import get_store

    async with get_store().transaction() as tx:
        await tx.clear_all()
    log.warning("all_data_cleared")
    return JSONResponse(content={"ok": True, "message": "All data cleared"})
