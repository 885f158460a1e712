"""Primary-or-fallback distance policy.

``DistanceService.calculate()`` is what trip creation calls.  It never
raises for mapping problems: a failure on the primary path is logged,
remembered, and answered with a fallback estimate plus a warning string
the UI shows next to the trip.

Once the primary path has failed the API is considered broken and later
calls skip it.  With ``primary_retry_seconds`` > 0 the primary path gets
another chance after that interval; ``reset()`` clears the flag at once.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from core.errors import MapsError
from core.event_logger import EventLogger
from tools.maps.distance import DistanceResolver, DistanceResult, FallbackEstimator

logger = logging.getLogger("kmtrack.maps")

NO_API_WARNING = "Using estimated distance - no Google Maps API"
API_ERROR_WARNING = "Used estimated distance - Google Maps API error"
SHORT_TRIP_ERROR = "Distance too short to record (under 0.1 km)."


@dataclass
class DistanceOutcome:
    result: DistanceResult
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        d = self.result.to_dict()
        d["warning"] = self.warning
        return d


class DistanceService:
    """Chooses between the resolver and the estimator.

    Args:
        resolver:               Primary path.
        estimator:              Fallback path.
        has_api_key:            True when a Maps key is configured.
        primary_retry_seconds:  Retry the primary path this long after it
                                broke; 0 keeps it off until ``reset()``.
        event_logger:           Optional activity log.
        clock:                  Monotonic time source (tests).
    """

    def __init__(
        self,
        resolver: DistanceResolver,
        estimator: FallbackEstimator,
        has_api_key: bool,
        primary_retry_seconds: float = 0,
        event_logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._resolver = resolver
        self._estimator = estimator
        self.has_api_key = has_api_key
        self.primary_retry_seconds = primary_retry_seconds
        self._events = event_logger
        self._clock = clock
        self.api_broken = False
        self.api_error: Optional[str] = None
        self._broken_at = 0.0

    def _primary_available(self) -> bool:
        if not self.has_api_key:
            return False
        if not self.api_broken:
            return True
        if self.primary_retry_seconds > 0 and \
                self._clock() - self._broken_at >= self.primary_retry_seconds:
            logger.info("Retrying Google Maps distance after %.0fs", self.primary_retry_seconds)
            return True
        return False

    async def calculate(self, origin: str, destination: str, user_id: str = "") -> DistanceOutcome:
        if not self.has_api_key:
            result = await self._estimator.estimate(origin, destination)
            self._note_fallback(NO_API_WARNING, result, user_id)
            return DistanceOutcome(result, NO_API_WARNING)

        if self._primary_available():
            try:
                result = await self._resolver.resolve(origin, destination)
            except MapsError as e:
                self._mark_broken(e, user_id)
            else:
                if self.api_broken:
                    logger.info("Google Maps distance recovered")
                    self.reset()
                return DistanceOutcome(result)

        result = await self._estimator.estimate(origin, destination)
        self._note_fallback(API_ERROR_WARNING, result, user_id)
        return DistanceOutcome(result, API_ERROR_WARNING)

    def _mark_broken(self, error: MapsError, user_id: str):
        self.api_broken = True
        self._broken_at = self._clock()
        self.api_error = str(error) or None
        logger.warning("Google Maps distance failed: %s", error)
        if self._events:
            self._events.warn("maps", "Distance lookup failed, switching to estimates",
                              user_id=user_id, error=str(error))

    def _note_fallback(self, warning: str, result: DistanceResult, user_id: str):
        logger.info("%s (%.1f km)", warning, result.distance_km)
        if self._events:
            self._events.warn("maps", warning, user_id=user_id, km=result.distance_km)

    def reset(self):
        self.api_broken = False
        self.api_error = None
        self._broken_at = 0.0

    def to_dict(self) -> dict:
        return {
            "has_api_key": self.has_api_key,
            "api_broken": self.api_broken,
            "api_error": self.api_error,
            "primary_retry_seconds": self.primary_retry_seconds,
        }
