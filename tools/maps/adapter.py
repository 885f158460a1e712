"""Google Maps adapter.

The only module that knows Google's endpoint names, query parameters and
response envelopes.  Everything else talks to a ``MapsAdapter`` through
three calls:

    await adapter.load()                               # validate the key
    await adapter.distance_matrix(origin, destination)  # raw matrix payload
    await adapter.autocomplete("Westfield Parram")      # raw predictions

Errors raised here carry the provider's raw message; the loader turns load
errors into user-facing diagnostics.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from core.errors import (
    AuthRestrictionFailure,
    DistanceUnavailable,
    MapsError,
    ScriptLoadFailure,
)

logger = logging.getLogger("kmtrack.maps")

DEFAULT_BASE_URL = "https://maps.googleapis.com/maps/api"

# Statuses that mean "the request itself was fine"
_OK_STATUSES = ("OK", "ZERO_RESULTS")


class MapsAdapter(ABC):
    """Interface between the tracker and a mapping provider."""

    @abstractmethod
    async def load(self) -> None:
        """Make the provider usable.  Raise a MapsError subclass on failure."""

    @abstractmethod
    async def distance_matrix(self, origin: str, destination: str) -> dict[str, Any]:
        """Return the provider's driving/metric distance matrix payload."""

    @abstractmethod
    async def autocomplete(self, text: str) -> list[dict[str, Any]]:
        """Return place predictions for a partial address."""

    async def close(self) -> None:
        """Release network resources."""


class GoogleMapsAdapter(MapsAdapter):
    """Google Maps web services over httpx.

    Args:
        api_key:      Maps API key.  Empty means load() always fails.
        base_url:     Web services root.
        timeout:      Per-request timeout in seconds.
        country:      Autocomplete country restriction (ISO 3166-1 alpha-2).
        probe_query:  Text used for the load() probe request.
        transport:    Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        country: str = "au",
        probe_query: str = "Sydney",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.country = country
        self.probe_query = probe_query
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"User-Agent": "kmtrack/1.0"},
            )
        return self._client

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        resp = await self._get_client().get(path, params={**params, "key": self.api_key})
        resp.raise_for_status()
        return resp.json()

    def _autocomplete_params(self, text: str) -> dict[str, Any]:
        params: dict[str, Any] = {"input": text, "types": "establishment|geocode"}
        if self.country:
            params["components"] = f"country:{self.country}"
        return params

    async def load(self) -> None:
        """Probe the Places API once to confirm the key is accepted."""
        if not self.api_key:
            raise ScriptLoadFailure("Google Maps API key is not configured")

        try:
            payload = await self._get_json(
                "/place/autocomplete/json", self._autocomplete_params(self.probe_query),
            )
        except (httpx.HTTPError, ValueError) as e:
            raise ScriptLoadFailure(f"{type(e).__name__}: {e}") from e

        status = payload.get("status", "")
        if status in _OK_STATUSES:
            logger.info("Google Maps API key accepted (probe status %s)", status)
            return

        message = payload.get("error_message") or status or "empty response"
        if status == "REQUEST_DENIED":
            raise AuthRestrictionFailure(message)
        raise ScriptLoadFailure(message)

    async def distance_matrix(self, origin: str, destination: str) -> dict[str, Any]:
        params = {
            "origins": origin,
            "destinations": destination,
            "mode": "driving",
            "units": "metric",
        }
        try:
            return await self._get_json("/distancematrix/json", params)
        except (httpx.HTTPError, ValueError) as e:
            raise DistanceUnavailable(f"Distance matrix request failed: {e}") from e

    async def autocomplete(self, text: str) -> list[dict[str, Any]]:
        try:
            payload = await self._get_json("/place/autocomplete/json", self._autocomplete_params(text))
        except (httpx.HTTPError, ValueError) as e:
            raise MapsError(f"Autocomplete request failed: {e}") from e

        status = payload.get("status", "")
        if status not in _OK_STATUSES:
            message = payload.get("error_message") or status
            if status == "REQUEST_DENIED":
                raise AuthRestrictionFailure(message)
            raise MapsError(f"Autocomplete failed: {message}")
        return list(payload.get("predictions", []))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
