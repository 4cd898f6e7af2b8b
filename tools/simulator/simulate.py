#!/usr/bin/env python3
"""Telerent tracking-unit simulator.

Drives simulated units around a city and posts binary GPS and trip-stats
frames to the server, honouring the flags each unit polls from /control.

Usage:
    # 5 units driving around Lyon for 2 minutes
    python tools/simulator/simulate.py --server http://localhost:8000 --devices 5 --duration 120

    # Rent every unit for the run, park halfway, and print the priced trips
    python tools/simulator/simulate.py --devices 3 --duration 60 --rent --park-at 0.5

    # Stress test: 50 units reporting every 200 ms
    python tools/simulator/simulate.py --devices 50 --interval 0.2
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
from dataclasses import dataclass

import httpx

from telerent.core.packets import encode_gps, encode_stats

FRAME_HEADERS = {"content-type": "application/octet-stream"}


@dataclass
class SimDevice:
    device_id: str
    lat: float
    lon: float
    bearing: float
    speed_mps: float
    distance_km: float = 0.0
    moving_seconds: float = 0.0
    trip_seconds: int = 0
    frames_sent: int = 0
    errors: int = 0
    trip_id: str | None = None


@dataclass
class ControlFlags:
    rent: bool = False
    park: bool = False
    gps: bool = True
    stats: bool = True


def parse_control(text: str) -> ControlFlags:
    """Parse the ``rent=0&park=1&gps=1&stats=1`` string served by /control."""
    values = {}
    for pair in text.strip().split("&"):
        key, _, raw = pair.partition("=")
        values[key] = raw == "1"
    return ControlFlags(
        rent=values.get("rent", False),
        park=values.get("park", False),
        gps=values.get("gps", True),
        stats=values.get("stats", True),
    )


def move_device(device: SimDevice, dt_seconds: float) -> None:
    """Move a device along its current bearing, with random turns."""
    # Random bearing change (simulates turns)
    device.bearing = (device.bearing + random.uniform(-15, 15)) % 360

    # Random speed variation (city riding: 3-12 m/s)
    device.speed_mps = max(3.0, min(12.0, device.speed_mps + random.uniform(-1, 1)))

    # Move position
    distance_m = device.speed_mps * dt_seconds
    bearing_rad = math.radians(device.bearing)

    # Approximate: 1 degree latitude = 111,000 m
    dlat = (distance_m * math.cos(bearing_rad)) / 111_000
    dlon = (distance_m * math.sin(bearing_rad)) / (111_000 * math.cos(math.radians(device.lat)))

    device.lat += dlat
    device.lon += dlon
    device.distance_km += distance_m / 1000
    device.moving_seconds += dt_seconds


async def post_frame(client: httpx.AsyncClient, server_url: str, device: SimDevice,
                     frame: bytes) -> None:
    try:
        resp = await client.post(f"{server_url}/data", content=frame, headers=FRAME_HEADERS)
        if resp.status_code == 200:
            device.frames_sent += 1
        else:
            device.errors += 1
    except httpx.RequestError:
        device.errors += 1


async def poll_control(client: httpx.AsyncClient, server_url: str,
                       device: SimDevice) -> ControlFlags:
    try:
        resp = await client.get(f"{server_url}/control", params={"deviceId": device.device_id})
        if resp.status_code == 200:
            return parse_control(resp.text)
    except httpx.RequestError:
        pass
    device.errors += 1
    return ControlFlags()


async def set_parked(client: httpx.AsyncClient, server_url: str, device: SimDevice,
                     parked: bool) -> None:
    try:
        resp = await client.post(f"{server_url}/rental/control/{device.device_id}",
                                 json={"parkMode": parked})
        if resp.status_code != 200:
            device.errors += 1
    except httpx.RequestError:
        device.errors += 1


async def run_device(
    client: httpx.AsyncClient,
    device: SimDevice,
    server_url: str,
    interval: float,
    duration_seconds: float,
    park_at: float | None,
    park_seconds: float,
) -> None:
    """Simulate a single unit: poll flags, move, report."""
    start = time.monotonic()
    end_time = start + duration_seconds
    park_from = start + duration_seconds * park_at if park_at is not None else None
    park_until = park_from + park_seconds if park_from is not None else None
    parked = False

    while time.monotonic() < end_time:
        now = time.monotonic()
        if device.trip_id and park_from is not None:
            want_parked = park_from <= now < park_until
            if want_parked != parked:
                await set_parked(client, server_url, device, want_parked)
                parked = want_parked

        flags = await poll_control(client, server_url, device)
        if not flags.park:
            move_device(device, interval)
        device.trip_seconds = int(now - start)

        if flags.gps:
            await post_frame(client, server_url, device,
                             encode_gps(device.device_id, device.lat, device.lon,
                                        0.0 if flags.park else device.speed_mps * 3.6))
        if flags.stats:
            avg_kmh = device.distance_km / (device.moving_seconds / 3600) if device.moving_seconds else 0.0
            await post_frame(client, server_url, device,
                             encode_stats(device.device_id, device.distance_km, avg_kmh,
                                          device.trip_seconds))

        await asyncio.sleep(interval)


async def start_rentals(client: httpx.AsyncClient, server_url: str,
                        devices: list[SimDevice]) -> None:
    for dev in devices:
        resp = await client.post(f"{server_url}/rental/start", json={"deviceId": dev.device_id})
        if resp.status_code == 200:
            dev.trip_id = resp.json()["tripId"]
        else:
            print(f"  {dev.device_id}: rental start failed ({resp.status_code}): {resp.text}")


async def end_rentals(client: httpx.AsyncClient, server_url: str,
                      devices: list[SimDevice]) -> None:
    for dev in devices:
        if dev.trip_id is None:
            continue
        resp = await client.post(f"{server_url}/rental/end", json={"deviceId": dev.device_id})
        if resp.status_code != 200:
            print(f"  {dev.device_id}: rental end failed ({resp.status_code}): {resp.text}")
            continue
        data = resp.json()
        trip = data["trip"]
        cost = data["costBreakdown"]
        print(f"  {dev.device_id}: {trip['totalDistance']:.2f} km, "
              f"{trip['tripDuration']} s, parked {trip['parkDuration']:.0f} s, "
              f"{len(trip['realtimeRoute'])} route points, cost {cost['totalCost']:.2f}")


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    center_lat, center_lon = args.center
    devices = []
    for i in range(args.devices):
        # Scatter devices within radius of center
        angle = random.uniform(0, 2 * math.pi)
        dist_km = random.uniform(0, args.radius_km)
        lat = center_lat + (dist_km / 111.0) * math.cos(angle)
        lon = center_lon + (dist_km / (111.0 * math.cos(math.radians(center_lat)))) * math.sin(angle)

        devices.append(SimDevice(
            device_id=f"{args.prefix}_{i + 1:04d}",
            lat=lat,
            lon=lon,
            bearing=random.uniform(0, 360),
            speed_mps=random.uniform(4, 10),
        ))

    print(f"Starting simulation: {args.devices} units, one report every {args.interval}s")
    print(f"  Center: {center_lat:.4f}, {center_lon:.4f}")
    print(f"  Radius: {args.radius_km} km")
    print(f"  Duration: {args.duration}s")
    print(f"  Server: {args.server}")
    print(f"  Rent: {args.rent}")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as client:
        if args.rent:
            await start_rentals(client, args.server, devices)

        tasks = [
            run_device(client, dev, args.server, args.interval, args.duration,
                       args.park_at if args.rent else None, args.park_seconds)
            for dev in devices
        ]
        await asyncio.gather(*tasks)

        if args.rent:
            print("\nEnded rentals:")
            await end_rentals(client, args.server, devices)

        elapsed = time.monotonic() - start
        total_frames = sum(d.frames_sent for d in devices)
        total_errors = sum(d.errors for d in devices)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Total frames sent: {total_frames}")
        print(f"  Total errors: {total_errors}")
        print(f"  Throughput: {total_frames / elapsed:.1f} frames/sec")

        # Check server stats
        try:
            resp = await client.get(f"{args.server}/api/stats")
            if resp.status_code == 200:
                stats = resp.json()
                print("\nServer stats:")
                print(f"  Packets received: {stats['packets_received']}")
                print(f"  Packets rejected: {stats['packets_rejected']}")
                print(f"  Route points: {stats['route_points']}")
                print(f"  Active devices (binary): {stats['active_devices']['binary']}")
        except httpx.RequestError as exc:
            print(f"\nCould not fetch server stats: {exc}")


def main():
    parser = argparse.ArgumentParser(description="Telerent tracking-unit simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--devices", type=int, default=5, help="Number of simulated units")
    parser.add_argument("--prefix", default="SIM", help="Device id prefix")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between reports per unit")
    parser.add_argument("--center", type=str, default="45.764,4.835",
                        help="Center lat,lon (default: Lyon)")
    parser.add_argument("--radius-km", type=float, default=2.0, help="Scatter radius in km")
    parser.add_argument("--rent", action="store_true",
                        help="Start a rental per unit before the run and end it after")
    parser.add_argument("--park-at", type=float, default=None,
                        help="With --rent, park each unit at this fraction of the run (0-1)")
    parser.add_argument("--park-seconds", type=float, default=10.0,
                        help="How long to stay parked with --park-at")

    args = parser.parse_args()

    # Parse center
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
