"""Period reports over a user's trips.

Pure functions: the caller loads the trips, this module filters and sums
them.  ``today`` is injectable so month boundaries can be tested.

Periods:
    all         every trip
    this-month  the calendar month containing ``today``, both ends inclusive
    custom      ``date_from``..``date_to`` inclusive; no trips when either
                bound is missing
    ""          nothing picked yet, treated as ``all``
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from tools.mileage.trip_log import Trip

logger = logging.getLogger(__name__)

PERIOD_ALL = "all"
PERIOD_THIS_MONTH = "this-month"
PERIOD_CUSTOM = "custom"
PERIODS = (PERIOD_ALL, PERIOD_THIS_MONTH, PERIOD_CUSTOM)

_DESCRIPTIONS = {
    PERIOD_ALL: "All time business travel summary",
    PERIOD_THIS_MONTH: "This month's business travel summary",
}
UNSET_DESCRIPTION = "Select a report period to view summary"


@dataclass
class TripReport:
    """Filtered trips plus the numbers shown on the report card."""

    period: str
    trips: list[Trip] = field(default_factory=list)
    description: str = ""
    date_from: date | None = None
    date_to: date | None = None

    @property
    def total_trips(self) -> int:
        return len(self.trips)

    @property
    def total_km(self) -> float:
        return sum(t.km for t in self.trips)

    def monthly_breakdown(self) -> dict[str, dict[str, Any]]:
        """``YYYY-MM`` → trip count and km, oldest month first."""
        months: dict[str, dict[str, Any]] = {}
        for trip in self.trips:
            bucket = months.setdefault(trip.date[:7], {"trips": 0, "km": 0.0})
            bucket["trips"] += 1
            bucket["km"] += trip.km
        return {k: months[k] for k in sorted(months)}

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "description": self.description,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "total_trips": self.total_trips,
            "total_km": self.total_km,
            "total_km_display": f"{self.total_km:.1f} km",
            "monthly": self.monthly_breakdown(),
            "trips": [t.to_dict() for t in self.trips],
        }


def _as_date(value: date | str | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid report date '{value}', expected YYYY-MM-DD")


def month_bounds(today: date) -> tuple[date, date]:
    """First and last day of the month containing ``today``."""
    last_day = calendar.monthrange(today.year, today.month)[1]
    return today.replace(day=1), today.replace(day=last_day)


def describe_range(start: date, end: date) -> str:
    return f"{start.strftime('%b %d, %Y')} - {end.strftime('%b %d, %Y')}"


def build_report(
    trips: Iterable[Trip],
    period: str = PERIOD_ALL,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    today: date | None = None,
) -> TripReport:
    """Filter ``trips`` to ``period`` and total them.

    Raises:
        ValueError: unknown period or malformed date.
    """
    trips = list(trips)
    period = (period or "").strip()

    if not period:
        return TripReport(period="", trips=trips, description=UNSET_DESCRIPTION)

    if period == PERIOD_ALL:
        return TripReport(period=period, trips=trips, description=_DESCRIPTIONS[period])

    if period == PERIOD_THIS_MONTH:
        start, end = month_bounds(today or date.today())
        description = _DESCRIPTIONS[period]
    elif period == PERIOD_CUSTOM:
        start, end = _as_date(date_from), _as_date(date_to)
        if start is None or end is None:
            return TripReport(period=period, description=UNSET_DESCRIPTION,
                              date_from=start, date_to=end)
        description = describe_range(start, end)
    else:
        raise ValueError(f"Unknown report period '{period}' (expected one of {', '.join(PERIODS)})")

    selected = [t for t in trips if start <= t.trip_date <= end]
    logger.debug("Report %s %s..%s: %d of %d trips", period, start, end, len(selected), len(trips))
    return TripReport(period=period, trips=selected, description=description,
                      date_from=start, date_to=end)
