"""Driving distance between two addresses.

Two sources:

- ``DistanceResolver`` asks the mapping SDK's distance matrix (driving,
  metric) and accepts only a fully successful element.
- ``FallbackEstimator`` makes up a plausible number when the SDK is not
  configured or not working.  Its results are always flagged ``estimated``.

Choosing between them is the caller's job (see
``tools.mileage.distance_service``).
"""

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Any

from core.errors import DistanceUnavailable
from tools.maps.adapter import MapsAdapter
from tools.maps.loader import MapsLoader

logger = logging.getLogger("kmtrack.maps")

FALLBACK_MIN_KM = 5.0
FALLBACK_MAX_KM = 55.0
FALLBACK_MINUTES_PER_KM = 2


@dataclass
class DistanceResult:
    """Distance between two addresses, as stored on a trip."""
    distance_km: float
    duration: str
    estimated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "distance_km": self.distance_km,
            "duration": self.duration,
            "estimated": self.estimated,
        }


def meters_to_km(meters: float) -> float:
    """Meters → kilometres, rounded half-up to one decimal place."""
    return math.floor(meters / 100 + 0.5) / 10


def parse_distance_matrix(payload: dict[str, Any]) -> DistanceResult:
    """Extract the single origin/destination element from a matrix payload.

    Raises:
        DistanceUnavailable: top-level or element status is not OK, or the
            element is missing/malformed.
    """
    status = payload.get("status")
    if status != "OK":
        raise DistanceUnavailable(f"Could not calculate distance (status {status})")

    try:
        element = payload["rows"][0]["elements"][0]
    except (KeyError, IndexError, TypeError):
        raise DistanceUnavailable("Could not calculate distance (no matrix element)")

    element_status = element.get("status")
    if element_status != "OK":
        raise DistanceUnavailable(f"Could not calculate distance (element {element_status})")

    try:
        meters = float(element["distance"]["value"])
        duration = str(element["duration"]["text"])
    except (KeyError, TypeError, ValueError):
        raise DistanceUnavailable("Could not calculate distance (malformed element)")

    return DistanceResult(distance_km=meters_to_km(meters), duration=duration)


class DistanceResolver:
    """Primary distance path through the mapping SDK.

    Args:
        loader:   Shared MapsLoader; the SDK is loaded on first use.
        adapter:  Adapter used for the matrix request.
    """

    def __init__(self, loader: MapsLoader, adapter: MapsAdapter):
        self._loader = loader
        self._adapter = adapter

    async def resolve(self, origin: str, destination: str) -> DistanceResult:
        """Return driving distance/duration for an address pair.

        Raises:
            ScriptLoadFailure / AuthRestrictionFailure: SDK could not load.
            DistanceUnavailable: the matrix gave no usable answer.
        """
        await self._loader.ensure_loaded()
        payload = await self._adapter.distance_matrix(origin, destination)
        result = parse_distance_matrix(payload)
        logger.info("Distance resolved: %.1f km, %s", result.distance_km, result.duration)
        return result


class FallbackEstimator:
    """Stand-in distance generator.

    Sleeps for ``latency`` seconds (to mimic a network call), then picks a
    distance in [5.0, 55.0) km at 0.1 km resolution.  Duration is
    ``round(distance * 2)`` minutes.

    Args:
        latency: Simulated delay in seconds.
        rng:     Random source; pass a seeded ``random.Random`` for tests.
    """

    def __init__(self, latency: float = 1.0, rng: random.Random | None = None):
        self.latency = latency
        self._rng = rng or random.Random()

    async def estimate(self, origin: str, destination: str) -> DistanceResult:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        tenths = self._rng.randrange(int(FALLBACK_MIN_KM * 10), int(FALLBACK_MAX_KM * 10))
        distance = tenths / 10
        return DistanceResult(
            distance_km=distance,
            duration=fallback_duration(distance),
            estimated=True,
        )


def fallback_duration(distance_km: float) -> str:
    """Display label for an estimated trip of ``distance_km``."""
    return f"{round(distance_km * FALLBACK_MINUTES_PER_KM)} mins"
