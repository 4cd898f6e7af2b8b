"""Error taxonomy for the telemetry and rental core.

Each error carries the HTTP status the API layer answers with.
"""

from __future__ import annotations


class TelerentError(Exception):
    """Base exception for all service errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MalformedFrame(TelerentError):
    """Binary frame with bad framing bytes, bad length, or unparseable payload."""

    status_code = 400


class ChecksumMismatch(MalformedFrame):
    """Frame CRC does not match its contents (only raised when CRC checks are on)."""

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"CRC mismatch: expected 0x{expected:02x}, got 0x{received:02x}")


class UnsupportedPacket(MalformedFrame):
    """Well-framed packet with an unknown MOD/PROP pair."""

    def __init__(self, mod: int, prop: int) -> None:
        self.mod = mod
        self.prop = prop
        super().__init__(f"unsupported packet type mod=0x{mod:02x} prop=0x{prop:02x}")


class InvalidJSON(TelerentError):
    status_code = 400


class MissingRequiredField(TelerentError):
    status_code = 400

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"missing required field: {field}")


class UnknownDevice(TelerentError):
    status_code = 404

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"device not found: {device_id}")


class UnknownTrip(TelerentError):
    status_code = 404

    def __init__(self, trip_id: str) -> None:
        self.trip_id = trip_id
        super().__init__(f"trip not found: {trip_id}")


class InvalidStateTransition(TelerentError):
    """Operation attempted from the wrong rental state."""

    status_code = 409


class TripFinalized(InvalidStateTransition):
    def __init__(self, trip_id: str) -> None:
        self.trip_id = trip_id
        super().__init__(f"trip {trip_id} is already finalized")


class InvalidPricingInput(TelerentError, ValueError):
    status_code = 422


class StorageFailure(TelerentError):
    """Durable store I/O error. ``details`` carries the driver message."""

    status_code = 500

    def __init__(self, message: str, details: str = "") -> None:
        self.details = details
        super().__init__(message)
