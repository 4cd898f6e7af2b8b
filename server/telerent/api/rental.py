"""Renter-facing endpoints: rental lifecycle, mid-rental controls, pricing."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from telerent.api._body import optional_bool, read_json_object, require_device_id
from telerent.api._views import breakdown_to_json, rates_to_json, trip_to_json
from telerent.core.errors import InvalidJSON

router = APIRouter()


@router.post("/rental/start")
async def start_rental(request: Request) -> JSONResponse:
    from telerent.main import get_rentals

    body = await read_json_object(request)
    device_id = require_device_id(body)
    trip = await get_rentals().start(device_id)
    return JSONResponse(content={
        "ok": True,
        "message": f"{device_id} rented",
        "tripId": trip.trip_id,
        "rentalActive": True,
        "rentalStartTime": trip.started_at.isoformat(),
    })


@router.post("/rental/end")
async def end_rental(request: Request) -> JSONResponse:
    """End a rental and return the priced, finalized trip.

    ``realtimeRoute`` from the client is echoed back as ``clientRoute``; the
    stored trip always carries the route the server collected.
    """
    from telerent.main import get_rentals

    body = await read_json_object(request)
    device_id = require_device_id(body)
    client_route = body.get("realtimeRoute")
    if client_route is not None and not isinstance(client_route, list):
        raise InvalidJSON("realtimeRoute must be a list")

    ended = await get_rentals().end(device_id, client_route)
    return JSONResponse(content={
        "ok": True,
        "message": f"{device_id} rental ended",
        "tripId": ended.trip.trip_id,
        "trip": trip_to_json(ended.trip),
        "costBreakdown": breakdown_to_json(ended.breakdown),
        "clientRoute": ended.client_route,
    })


@router.get("/rental/status/{device_id}")
async def rental_status(device_id: str) -> JSONResponse:
    from telerent.main import get_clock, get_store

    async with get_store().transaction() as tx:
        device = await tx.get_device(device_id)
    if device is None:
        return JSONResponse(content={"deviceId": device_id, "rentalActive": False, "tripId": None})

    return JSONResponse(content={
        "deviceId": device_id,
        "rentalActive": device.rental_active,
        "tripId": device.trip_id,
        "parkMode": device.park_mode,
        "gpsSend": device.gps_send,
        "statsSend": device.stats_send,
        "parkDuration": round(device.effective_park_duration(get_clock()()), 3),
    })


@router.post("/rental/control/{device_id}")
async def control_device(device_id: str, request: Request) -> JSONResponse:
    """Toggle park mode and reporting flags on a rented device."""
    from telerent.main import get_rentals

    body = await read_json_object(request)
    await get_rentals().update_control(
        device_id,
        park_mode=optional_bool(body, "parkMode"),
        gps_send=optional_bool(body, "gpsSend"),
        stats_send=optional_bool(body, "statsSend"),
    )
    return JSONResponse(content={"ok": True, "message": "Device control updated"})


@router.post("/trip/reset/{device_id}")
async def reset_trip(device_id: str) -> JSONResponse:
    """Maintenance: clear trip accumulators and delete the device's trip history."""
    from telerent.main import get_rentals

    deleted = await get_rentals().reset_trip(device_id)
    return JSONResponse(content={
        "ok": True,
        "tripsDeleted": deleted,
        "message": f"Trip data reset, {deleted} trips deleted",
    })


@router.get("/pricing")
async def pricing_rates() -> dict:
    from telerent.main import get_rentals

    return rates_to_json(get_rentals().rates)
