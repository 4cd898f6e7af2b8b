"""Request body helpers shared by the API routers."""

from __future__ import annotations

import json
from typing import Any

from fastapi import Request

from telerent.core.errors import InvalidJSON, MissingRequiredField


async def read_json_object(request: Request) -> dict[str, Any]:
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidJSON("invalid JSON") from None
    if not isinstance(body, dict):
        raise InvalidJSON("JSON body must be an object")
    return body


def require_device_id(body: dict[str, Any]) -> str:
    device_id = body.get("deviceId")
    if not device_id:
        raise MissingRequiredField("deviceId")
    if not isinstance(device_id, str):
        raise InvalidJSON("deviceId must be a string")
    return device_id


def optional_bool(body: dict[str, Any], key: str) -> bool | None:
    """Read a flag that may arrive as a JSON boolean or as "true"/"false"."""
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise InvalidJSON(f"{key} must be a boolean")
