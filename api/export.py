"""
Data export for kmtrack: CSV trip reports and the full JSON backup.

Provides:
  - CSV export of a report's trips (every field quoted, ``\\n`` row
    separator) named ``km-report-YYYY-MM-DD.csv``
  - Full JSON backup of a user's trips, favorites and home address named
    ``business-tracker-backup-YYYY-MM-DD.json``
  - Route registration for both downloads on the FastAPI app

Writers return bytes; the HTTP layer and the terminal client decide where
the bytes go.
"""

import csv
import io
import json
import logging
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, Query, Request
from fastapi.responses import Response

from core.errors import BackendOperationFailure
from tools.mileage.address_book import AddressBook, FavoriteLocation
from tools.mileage.reports import build_report
from tools.mileage.trip_log import Trip, TripLogManager

logger = logging.getLogger("kmtrack.export")

CSV_HEADERS = ["Date", "Start Address", "End Address", "KM", "Duration", "Purpose", "Notes"]
BACKUP_VERSION = "1.0"


# ── Formatting ──────────────────────────────────────────────────────

def format_km(km: float) -> str:
    """12.0 → "12", 12.3 → "12.3"."""
    text = f"{km:.1f}"
    return text[:-2] if text.endswith(".0") else text


def trips_to_csv(trips: Iterable[Trip]) -> bytes:
    """Report CSV for ``trips`` in the order given."""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for t in trips:
        writer.writerow([
            t.date,
            t.start_address,
            t.end_address,
            format_km(t.km),
            t.duration or "",
            t.purpose or "",
            t.notes or "",
        ])
    # no trailing newline after the last row
    return output.getvalue().rstrip("\n").encode("utf-8")


def csv_filename(today: Optional[date] = None) -> str:
    return f"km-report-{(today or date.today()).isoformat()}.csv"


def backup_filename(today: Optional[date] = None) -> str:
    return f"business-tracker-backup-{(today or date.today()).isoformat()}.json"


def build_backup(
    trips: list[Trip],
    favorites: list[FavoriteLocation],
    home_address: Optional[str],
    now: Optional[datetime] = None,
) -> dict:
    """Backup document for one user."""
    now = now or datetime.now(timezone.utc)
    return {
        "exportDate": now.isoformat().replace("+00:00", "Z"),
        "version": BACKUP_VERSION,
        "data": {
            "trips": [t.to_dict() for t in trips],
            "favorites": [f.to_dict() for f in favorites],
            "homeAddress": home_address,
        },
        "summary": {
            "totalTrips": len(trips),
            "totalDistance": sum(t.km for t in trips),
            "totalFavorites": len(favorites),
        },
    }


# ── ExportManager ───────────────────────────────────────────────────

class ExportManager:
    """Builds export files from the trip log and address book."""

    def __init__(self, trip_log: TripLogManager, address_book: AddressBook):
        self._trip_log = trip_log
        self._address_book = address_book
        logger.info("ExportManager initialized")

    def report_csv(
        self,
        user_id: str,
        period: str = "all",
        date_from: str = "",
        date_to: str = "",
        today: Optional[date] = None,
    ) -> tuple[bytes, str, int]:
        """Returns (bytes, filename, row_count)."""
        report = build_report(
            self._trip_log.list_trips(user_id), period,
            date_from or None, date_to or None, today=today,
        )
        data = trips_to_csv(report.trips)
        logger.info("CSV export for %s: %d trip(s), period=%s",
                    user_id, report.total_trips, period or "all")
        return data, csv_filename(today), report.total_trips

    def backup(self, user_id: str, today: Optional[date] = None) -> tuple[bytes, str]:
        """Returns (bytes, filename)."""
        doc = build_backup(
            self._trip_log.list_trips(user_id),
            self._address_book.list_favorites(user_id),
            self._address_book.get_home_address(user_id),
        )
        data = json.dumps(doc, indent=2, default=str).encode("utf-8")
        logger.info("Backup for %s: %d trip(s), %d favorite(s)", user_id,
                    doc["summary"]["totalTrips"], doc["summary"]["totalFavorites"])
        return data, backup_filename(today)


# ── Route registration ──────────────────────────────────────────────

def register_routes(router, user_dependency, on_backend_failure) -> None:
    """Register the download endpoints on ``router``.

    The manager is looked up per request on ``app.state.exporter``.
    ``on_backend_failure(request, error, user_id)`` records a storage
    failure and returns the HTTPException to raise.
    """

    @router.get("/reports/export.csv")
    async def export_report_csv(
        request: Request,
        user_id: str = Depends(user_dependency),
        period: str = Query("all", description="all, this-month or custom"),
        date_from: str = Query("", description="Start date YYYY-MM-DD"),
        date_to: str = Query("", description="End date YYYY-MM-DD"),
    ):
        exporter: ExportManager = request.app.state.exporter
        try:
            data, filename, count = exporter.report_csv(user_id, period, date_from, date_to)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except BackendOperationFailure as e:
            raise on_backend_failure(request, e, user_id)
        request.app.state.event_logger.info(
            "export", f"CSV report exported ({count} trips)", user_id=user_id,
        )
        return Response(
            content=data,
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.get("/backup")
    async def export_backup(request: Request, user_id: str = Depends(user_dependency)):
        exporter: ExportManager = request.app.state.exporter
        try:
            data, filename = exporter.backup(user_id)
        except BackendOperationFailure as e:
            raise on_backend_failure(request, e, user_id)
        request.app.state.event_logger.info("export", "Backup downloaded", user_id=user_id)
        return Response(
            content=data,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
