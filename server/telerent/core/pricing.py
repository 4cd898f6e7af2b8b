"""Usage-based rental pricing.

cost = km * per_km + drive_minutes * drive_per_minute + park_minutes * park_per_minute
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from telerent.core.errors import InvalidPricingInput


@dataclass(frozen=True)
class PricingRates:
    per_km: float = 1.0
    drive_per_minute: float = 2.0
    park_per_minute: float = 1.0


DEFAULT_RATES = PricingRates()


@dataclass(frozen=True)
class CostBreakdown:
    km_cost: float
    drive_cost: float
    park_cost: float

    @property
    def total(self) -> float:
        return self.km_cost + self.drive_cost + self.park_cost


def _check(name: str, value: float) -> None:
    if not math.isfinite(value) or value < 0:
        raise InvalidPricingInput(f"{name} must be a finite non-negative number, got {value}")


def line_items(
    distance_km: float,
    drive_seconds: float,
    park_seconds: float,
    rates: PricingRates = DEFAULT_RATES,
) -> CostBreakdown:
    _check("distance_km", distance_km)
    _check("drive_seconds", drive_seconds)
    _check("park_seconds", park_seconds)
    return CostBreakdown(
        km_cost=distance_km * rates.per_km,
        drive_cost=(drive_seconds / 60) * rates.drive_per_minute,
        park_cost=(park_seconds / 60) * rates.park_per_minute,
    )


def calculate_cost(
    distance_km: float,
    drive_seconds: float,
    park_seconds: float,
    rates: PricingRates = DEFAULT_RATES,
) -> float:
    return line_items(distance_km, drive_seconds, park_seconds, rates).total
