"""Ingestion counters and active-unit tracking.

In-memory diagnostics only: rental and device state never live here, and
everything resets on restart. No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass

TRANSPORTS = ("binary", "json")

_COUNTERS = (
    "packets_received",
    "packets_rejected",
    "bytes_received",
    "gps_fixes",
    "stats_reports",
    "motion_alerts",
    "route_points",
    "storage_errors",
)


@dataclass
class UnitActivity:
    last_seen: float  # monotonic
    transport: str
    packets: int = 0


class ServerStats:
    """Thread-safe counters plus a sliding window of reporting units.

    A unit counts as active while its last accepted packet is younger than
    ``active_window_seconds``; it is attributed to that packet's transport.
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._boot = time.time()
        self._window = active_window_seconds
        self._counts: Counter[str] = Counter()
        self._units: dict[str, UnitActivity] = {}

    def record_packet(
        self,
        device_id: str,
        size_bytes: int,
        *,
        transport: str = "binary",
        gps: int = 0,
        stats: int = 0,
        motion: int = 0,
        route_points: int = 0,
    ) -> None:
        """Count an accepted packet and the events it carried."""
        seen = time.monotonic()
        with self._lock:
            self._counts.update({
                "packets_received": 1,
                "bytes_received": size_bytes,
                "gps_fixes": gps,
                "stats_reports": stats,
                "motion_alerts": motion,
                "route_points": route_points,
            })
            unit = self._units.setdefault(device_id, UnitActivity(seen, transport))
            unit.last_seen = seen
            unit.transport = transport
            unit.packets += 1

    def record_rejected(self, count: int = 1) -> None:
        with self._lock:
            self._counts["packets_rejected"] += count

    def record_storage_error(self) -> None:
        with self._lock:
            self._counts["storage_errors"] += 1

    def _active_units(self) -> list[UnitActivity]:
        """Drop units outside the window and return the rest. Caller holds lock."""
        horizon = time.monotonic() - self._window
        self._units = {
            device_id: unit for device_id, unit in self._units.items()
            if unit.last_seen >= horizon
        }
        return list(self._units.values())

    def snapshot(self) -> dict:
        """JSON-serializable view of every counter and the active units."""
        with self._lock:
            active = self._active_units()
            by_transport = Counter(unit.transport for unit in active)
            result: dict = {"uptime_seconds": round(time.time() - self._boot, 1)}
            result.update({name: self._counts[name] for name in _COUNTERS})
            result["active_devices"] = {
                "total": len(active),
                **{transport: by_transport[transport] for transport in TRANSPORTS},
                "window_seconds": self._window,
            }
            return result
