"""Device-facing endpoints: telemetry ingest, motion alerts, control polling.

This is the thin FastAPI adapter. It hands raw frames or JSON bodies to the
telemetry processor; errors are rendered by the handler in ``main``.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from telerent.api._body import read_json_object, require_device_id

router = APIRouter()


@router.post("/data")
async def receive_data(request: Request) -> PlainTextResponse:
    """Receive telemetry from a tracking unit.

    Accepts:
    - application/json: pre-decoded ``{deviceId, ...}`` body
    - anything else: one binary frame ``0x02 .. 0x03``
    """
    from telerent.main import get_processor

    processor = get_processor()
    body_bytes = await request.body()
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        await processor.ingest_json(body_bytes)
    else:
        await processor.ingest_frame(body_bytes)

    return PlainTextResponse("OK")


@router.post("/motion")
async def receive_motion(request: Request) -> JSONResponse:
    """Explicit motion alert from a parked unit."""
    from telerent.main import get_processor

    body = await read_json_object(request)
    device_id = require_device_id(body)
    detected_at = await get_processor().record_motion(device_id)
    return JSONResponse(content={
        "ok": True,
        "message": f"Motion detected for {device_id}",
        "deviceId": device_id,
        "motionDetectedAt": detected_at.isoformat(),
    })


@router.get("/control")
async def poll_control(device_id: str | None = Query(default=None, alias="deviceId")) -> PlainTextResponse:
    """Compact control string polled by unit firmware.

    Uses the device row when one exists, the global defaults otherwise.
    """
    from telerent.main import get_store

    async with get_store().transaction() as tx:
        state = await tx.get_device(device_id) if device_id else None
        if state is None:
            state = await tx.get_control_defaults()

    return PlainTextResponse(
        f"rent={int(state.rental_active)}&park={int(state.park_mode)}"
        f"&gps={int(state.gps_send)}&stats={int(state.stats_send)}"
    )
