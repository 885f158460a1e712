"""Place autocomplete and selected-place formatting.

Businesses are stored as ``"<name>, <address>"`` so a trip to
"Westfield Parramatta" still reads as a business visit in the report;
plain addresses are stored as the formatted address only.
"""

import logging
from dataclasses import dataclass
from typing import Any

from tools.maps.adapter import MapsAdapter
from tools.maps.loader import MapsLoader

logger = logging.getLogger("kmtrack.maps")

BUSINESS_PLACE_TYPES = (
    "establishment",
    "point_of_interest",
    "store",
    "restaurant",
    "lodging",
    "hospital",
    "school",
    "university",
)


def format_place_address(name: str, formatted_address: str, types: list[str] | None) -> str:
    """Address string to store for a selected place."""
    if name and types and any(t in BUSINESS_PLACE_TYPES for t in types):
        return f"{name}, {formatted_address}"
    return formatted_address or ""


@dataclass
class PlaceSuggestion:
    place_id: str
    name: str
    formatted_address: str
    types: list[str]

    @property
    def address(self) -> str:
        return format_place_address(self.name, self.formatted_address, self.types)

    def to_dict(self) -> dict[str, Any]:
        return {
            "place_id": self.place_id,
            "name": self.name,
            "formatted_address": self.formatted_address,
            "types": self.types,
            "address": self.address,
        }

    @staticmethod
    def from_prediction(prediction: dict[str, Any]) -> "PlaceSuggestion":
        """Build from a Places autocomplete prediction."""
        structured = prediction.get("structured_formatting") or {}
        description = prediction.get("description", "")
        name = structured.get("main_text", "")
        secondary = structured.get("secondary_text", "")
        types = list(prediction.get("types") or [])
        # Businesses: main_text is the name, secondary_text the street address.
        # Plain addresses: the description already is the full address.
        if any(t in BUSINESS_PLACE_TYPES for t in types) and secondary:
            formatted = secondary
        else:
            formatted = description
        return PlaceSuggestion(
            place_id=prediction.get("place_id", ""),
            name=name,
            formatted_address=formatted,
            types=types,
        )


class PlaceSearch:
    """Autocomplete through the shared loader/adapter pair."""

    def __init__(self, loader: MapsLoader, adapter: MapsAdapter, limit: int = 5):
        self._loader = loader
        self._adapter = adapter
        self.limit = limit

    async def suggest(self, text: str) -> list[PlaceSuggestion]:
        text = text.strip()
        if not text:
            return []
        await self._loader.ensure_loaded()
        predictions = await self._adapter.autocomplete(text)
        suggestions = [PlaceSuggestion.from_prediction(p) for p in predictions[: self.limit]]
        logger.debug("Autocomplete %r → %d suggestion(s)", text, len(suggestions))
        return suggestions
