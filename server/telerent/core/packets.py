"""Tracking-unit packet codec.

Binary frame layout (device -> server)::

    0x02 DEVICE_BYTE MOD PROP LEN DATA[LEN] CRC 0x03

``CRC`` is the XOR of DEVICE_BYTE, MOD, PROP, LEN and every DATA byte.
DATA is ASCII text of the form ``"<deviceId>|<fields>"``. DEVICE_BYTE only
carries the first byte of the device id, so it is used as a fallback when the
payload has no id prefix.

JSON bodies skip the framing entirely and are mapped straight to events.
"""

from __future__ import annotations

import math
from typing import Any

from telerent.core.errors import (
    ChecksumMismatch,
    InvalidJSON,
    MalformedFrame,
    MissingRequiredField,
    UnsupportedPacket,
)
from telerent.core.models import GpsFix, MotionAlert, TelemetryEvent, TripStats

START = 0x02
STOP = 0x03

MOD_GPS = 0x01
PROP_GPS_DATA = 0x02
MOD_MOTION = 0x10
PROP_MOTION = 0x01
MOD_STATS = 0x20
PROP_STATS = 0x01

# START, DEVICE_BYTE, MOD, PROP, LEN + CRC, STOP
HEADER_SIZE = 5
FRAME_OVERHEAD = HEADER_SIZE + 2
MAX_PAYLOAD = 255

# Trip duration is stored as a 32-bit INTEGER column
MAX_TRIP_DURATION = 2**31 - 1


def frame_crc(device_byte: int, mod: int, prop: int, data: bytes) -> int:
    crc = device_byte ^ mod ^ prop ^ len(data)
    for b in data:
        crc ^= b
    return crc


def _split_device_id(text: str, device_byte: int) -> tuple[str, str]:
    """Return (device_id, remainder) from a ``"<id>|<rest>"`` payload."""
    head, sep, rest = text.partition("|")
    if not sep:
        return f"device_{device_byte:02x}", text
    if not head:
        return f"device_{device_byte:02x}", rest
    return head, rest


def _parse_float(raw: str, name: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise MalformedFrame(f"{name} is not a number: {raw!r}") from None
    if not math.isfinite(value):
        raise MalformedFrame(f"{name} is not finite: {raw!r}")
    return value


def _parse_gps(device_id: str, body: str) -> GpsFix:
    parts = body.split(",")
    if len(parts) < 3:
        raise MalformedFrame(f"GPS payload needs lat,lon,speed, got {body!r}")
    speed = _parse_float(parts[2], "speed")
    if speed < 0:
        raise MalformedFrame(f"speed must not be negative: {speed}")
    return GpsFix(
        device_id=device_id,
        lat=_parse_float(parts[0], "lat"),
        lon=_parse_float(parts[1], "lon"),
        speed=speed,
    )


def _parse_stats(device_id: str, body: str) -> TripStats:
    values: dict[str, Any] = {}
    for pair in body.split(","):
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep:
            continue
        if key == "km":
            values["total_distance"] = _parse_float(raw, "km")
        elif key == "avg":
            values["avg_speed"] = _parse_float(raw, "avg")
        elif key == "time":
            try:
                values["trip_duration"] = int(raw)
            except ValueError:
                raise MalformedFrame(f"time is not an integer: {raw!r}") from None
            if values["trip_duration"] > MAX_TRIP_DURATION:
                raise MalformedFrame(f"time out of range: {raw!r}")

    if values.get("total_distance", 0) < 0 or values.get("trip_duration", 0) < 0:
        raise MalformedFrame("trip statistics must not be negative")
    return TripStats(device_id=device_id, **values)


def decode_frame(frame: bytes, *, verify_crc: bool = False) -> TelemetryEvent:
    """Decode one binary frame into a telemetry event.

    Raises MalformedFrame (or a subclass) on any framing or payload problem.
    The CRC byte is only checked when ``verify_crc`` is set.
    """
    if len(frame) < FRAME_OVERHEAD:
        raise MalformedFrame(f"frame too short: {len(frame)} bytes")
    if frame[0] != START or frame[-1] != STOP:
        raise MalformedFrame("missing start/stop byte")

    device_byte, mod, prop, length = frame[1], frame[2], frame[3], frame[4]
    if len(frame) != length + FRAME_OVERHEAD:
        raise MalformedFrame(
            f"length mismatch: header says {length} data bytes, "
            f"frame carries {len(frame) - FRAME_OVERHEAD}"
        )

    data = bytes(frame[HEADER_SIZE:HEADER_SIZE + length])
    crc = frame[HEADER_SIZE + length]
    if verify_crc:
        expected = frame_crc(device_byte, mod, prop, data)
        if crc != expected:
            raise ChecksumMismatch(expected, crc)

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise MalformedFrame("payload is not valid UTF-8") from None

    device_id, body = _split_device_id(text, device_byte)

    if (mod, prop) == (MOD_GPS, PROP_GPS_DATA):
        return _parse_gps(device_id, body)
    if (mod, prop) == (MOD_STATS, PROP_STATS):
        return _parse_stats(device_id, body)
    if (mod, prop) == (MOD_MOTION, PROP_MOTION):
        return MotionAlert(device_id=device_id)
    raise UnsupportedPacket(mod, prop)


def _json_number(body: dict, key: str, *, minimum: float | None = None) -> float | None:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidJSON(f"{key} must be a number")
    try:
        number = float(value)
    except OverflowError:
        raise InvalidJSON(f"{key} is out of range") from None
    if not math.isfinite(number):
        raise InvalidJSON(f"{key} must be finite")
    if minimum is not None and number < minimum:
        raise InvalidJSON(f"{key} must be >= {minimum}")
    return number


def decode_json(body: dict) -> list[TelemetryEvent]:
    """Map a pre-decoded JSON body to telemetry events.

    A single body may carry a GPS fix, trip statistics and a motion flag at
    once; each yields its own event. A body holding only ``deviceId`` yields
    no events.
    """
    device_id = body.get("deviceId")
    if not device_id:
        raise MissingRequiredField("deviceId")
    if not isinstance(device_id, str):
        raise InvalidJSON("deviceId must be a string")

    events: list[TelemetryEvent] = []

    lat = _json_number(body, "lat")
    lon = _json_number(body, "lon")
    if lat is not None and lon is not None:
        speed = _json_number(body, "speed", minimum=0)
        events.append(GpsFix(device_id=device_id, lat=lat, lon=lon, speed=speed or 0.0))

    total_distance = _json_number(body, "totalDistance", minimum=0)
    avg_speed = _json_number(body, "avgSpeed")
    trip_duration = _json_number(body, "tripDuration", minimum=0)
    if trip_duration is not None and trip_duration > MAX_TRIP_DURATION:
        raise InvalidJSON("tripDuration is out of range")
    if total_distance is not None or avg_speed is not None or trip_duration is not None:
        events.append(TripStats(
            device_id=device_id,
            total_distance=total_distance,
            avg_speed=avg_speed,
            trip_duration=int(trip_duration) if trip_duration is not None else None,
        ))

    if body.get("motion") is True:
        events.append(MotionAlert(device_id=device_id))

    return events


# --- Encoding (simulator and tests) ---

def encode_frame(device_id: str, mod: int, prop: int, payload: str) -> bytes:
    data = payload.encode("utf-8")
    if len(data) > MAX_PAYLOAD:
        raise ValueError(f"payload too long: {len(data)} > {MAX_PAYLOAD} bytes")
    id_bytes = device_id.encode("utf-8")
    device_byte = id_bytes[0] if id_bytes else 0
    crc = frame_crc(device_byte, mod, prop, data)
    return bytes([START, device_byte, mod, prop, len(data)]) + data + bytes([crc, STOP])


def encode_gps(device_id: str, lat: float, lon: float, speed: float) -> bytes:
    return encode_frame(device_id, MOD_GPS, PROP_GPS_DATA,
                        f"{device_id}|{lat:.6f},{lon:.6f},{speed:.2f}")


def encode_stats(device_id: str, total_distance: float, avg_speed: float,
                 trip_duration: int) -> bytes:
    return encode_frame(device_id, MOD_STATS, PROP_STATS,
                        f"{device_id}|km={total_distance:.3f},avg={avg_speed:.2f},time={trip_duration}")


def encode_motion(device_id: str) -> bytes:
    return encode_frame(device_id, MOD_MOTION, PROP_MOTION, f"{device_id}|1")
