"""
Trip log for kmtrack.

Every business trip a user records: date, start and end address, distance
in kilometres, travel time label, purpose and notes.  Distances come from
the mapping SDK or, when that is unavailable, from the fallback estimator;
estimated rows are flagged so reports can show them as such.

Trips are owned by a user id.  Every read and every delete is filtered by
owner, so one user can never see or remove another user's rows.  Trips
are never edited in place: delete and re-add instead.

SQLite-backed, single-file module.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date as date_cls, datetime, timezone
from pathlib import Path
from typing import Any, Optional

from core.errors import BackendOperationFailure

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dataclass
# ---------------------------------------------------------------------------

@dataclass
class Trip:
    """A single recorded journey."""
    trip_id: str = ""
    user_id: str = ""
    date: str = ""            # YYYY-MM-DD
    start_address: str = ""
    end_address: str = ""
    km: float = 0.0
    duration: str = ""
    purpose: str = ""
    notes: str = ""
    estimated: bool = False
    created_at: str = ""

    @property
    def short_id(self) -> str:
        return self.trip_id[:8] if self.trip_id else ""

    @property
    def trip_date(self) -> date_cls:
        return date_cls.fromisoformat(self.date)

    def to_dict(self) -> dict:
        return {
            "id": self.trip_id,
            "short_id": self.short_id,
            "date": self.date,
            "start_address": self.start_address,
            "end_address": self.end_address,
            "km": self.km,
            "duration": self.duration,
            "purpose": self.purpose,
            "notes": self.notes,
            "estimated": self.estimated,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "Trip":
        """Build a Trip from a sqlite3.Row."""
        r = dict(row)
        return Trip(
            trip_id=r["trip_id"],
            user_id=r["user_id"],
            date=r.get("date", ""),
            start_address=r.get("start_address", ""),
            end_address=r.get("end_address", ""),
            km=float(r.get("km", 0)),
            duration=r.get("duration") or "",
            purpose=r.get("purpose") or "",
            notes=r.get("notes") or "",
            estimated=bool(r.get("estimated", 0)),
            created_at=r.get("created_at", ""),
        )


def rollback(conn: sqlite3.Connection):
    """Undo a failed write; a connection that is already gone is only logged."""
    try:
        conn.rollback()
    except sqlite3.Error as e:
        logger.warning("Rollback skipped: %s", e)


def parse_trip_date(value: str) -> str:
    """Validate a YYYY-MM-DD string and return it normalised."""
    try:
        return date_cls.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        raise ValueError(f"Invalid trip date '{value}', expected YYYY-MM-DD")


# ---------------------------------------------------------------------------
# TripLogManager
# ---------------------------------------------------------------------------

class TripLogManager:
    """SQLite-backed, per-user trip log.

    Args:
        db_path: Path to the SQLite database file (":memory:" for tests).
    """

    def __init__(self, db_path: str = "data/kmtrack.db"):
        self._db_path = db_path

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.info("TripLogManager initialized (db=%s)", db_path)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS trips (
                trip_id        TEXT PRIMARY KEY,
                user_id        TEXT NOT NULL,
                date           TEXT NOT NULL,
                start_address  TEXT NOT NULL,
                end_address    TEXT NOT NULL,
                km             REAL NOT NULL CHECK (km > 0),
                duration       TEXT DEFAULT '',
                purpose        TEXT DEFAULT '',
                notes          TEXT DEFAULT '',
                estimated      INTEGER DEFAULT 0,
                created_at     TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_trips_user_date ON trips(user_id, date);
        """)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    def add_trip(
        self,
        user_id: str,
        date: str,
        start_address: str,
        end_address: str,
        km: float,
        duration: str = "",
        purpose: str = "",
        notes: str = "",
        estimated: bool = False,
    ) -> Trip:
        """Insert a new trip for ``user_id``.

        Args:
            user_id:        Owner of the trip.
            date:           YYYY-MM-DD.
            start_address:  Where the trip started.
            end_address:    Destination.
            km:             Distance, already rounded to 0.1 km.  Must be > 0.
            duration:       Display label such as "23 mins".
            purpose:        Optional free text.
            notes:          Optional free text.
            estimated:      True when km came from the fallback estimator.

        Returns:
            The stored Trip.

        Raises:
            ValueError: bad date, blank address, non-positive km.
            BackendOperationFailure: the insert was rejected.
        """
        if not user_id:
            raise ValueError("user_id is required")
        date = parse_trip_date(date)
        start_address = (start_address or "").strip()
        end_address = (end_address or "").strip()
        if not start_address or not end_address:
            raise ValueError("Both start and end address are required")
        if km is None or float(km) <= 0:
            raise ValueError("km must be a positive number")

        entry = Trip(
            trip_id=str(uuid.uuid4()),
            user_id=user_id,
            date=date,
            start_address=start_address,
            end_address=end_address,
            km=float(km),
            duration=duration or "",
            purpose=(purpose or "").strip(),
            notes=(notes or "").strip(),
            estimated=bool(estimated),
            created_at=self._now(),
        )

        try:
            self._conn.execute(
                """INSERT INTO trips
                   (trip_id, user_id, date, start_address, end_address, km,
                    duration, purpose, notes, estimated, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.trip_id, entry.user_id, entry.date,
                    entry.start_address, entry.end_address, entry.km,
                    entry.duration, entry.purpose, entry.notes,
                    int(entry.estimated), entry.created_at,
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            rollback(self._conn)
            logger.error("Trip insert failed for user %s: %s", user_id, e)
            raise BackendOperationFailure("insert trip", e) from e

        logger.info("Trip logged: %s — %s, %.1f km%s",
                    entry.short_id, entry.date, entry.km,
                    " (estimated)" if entry.estimated else "")
        return entry

    def delete_trip(self, user_id: str, trip_id: str) -> bool:
        """Delete a trip owned by ``user_id``.

        Returns:
            True if a row was deleted, False if no trip with that id belongs
            to this user.
        """
        try:
            cur = self._conn.execute(
                "DELETE FROM trips WHERE trip_id = ? AND user_id = ?",
                (trip_id, user_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            rollback(self._conn)
            logger.error("Trip delete failed for user %s: %s", user_id, e)
            raise BackendOperationFailure("delete trip", e) from e

        deleted = cur.rowcount > 0
        if deleted:
            logger.info("Trip deleted: %s", trip_id[:8])
        return deleted

    def get_trip(self, user_id: str, trip_id: str) -> Optional[Trip]:
        try:
            row = self._conn.execute(
                "SELECT * FROM trips WHERE trip_id = ? AND user_id = ?",
                (trip_id, user_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise BackendOperationFailure("load trip", e) from e
        return Trip.from_row(row) if row else None

    def list_trips(
        self,
        user_id: str,
        date_from: str = "",
        date_to: str = "",
        limit: int = 0,
    ) -> list[Trip]:
        """List a user's trips, newest first.

        Args:
            user_id:   Owner.
            date_from: Inclusive lower bound, YYYY-MM-DD (optional).
            date_to:   Inclusive upper bound, YYYY-MM-DD (optional).
            limit:     Max rows; 0 means no limit.
        """
        query = "SELECT * FROM trips WHERE user_id = ?"
        params: list[Any] = [user_id]

        if date_from:
            query += " AND date >= ?"
            params.append(parse_trip_date(date_from))
        if date_to:
            query += " AND date <= ?"
            params.append(parse_trip_date(date_to))

        query += " ORDER BY date DESC, created_at DESC"
        if limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        try:
            rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise BackendOperationFailure("load trips", e) from e
        return [Trip.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Dashboard integration
    # ------------------------------------------------------------------

    def get_status(self, user_id: str, today: Optional[date_cls] = None) -> dict:
        """Header-card numbers for one user.

        "This month" is the calendar month containing ``today`` (local date),
        both ends inclusive, matching the this-month report.
        """
        from tools.mileage.reports import month_bounds

        month_start, month_end = month_bounds(today or date_cls.today())
        try:
            row = self._conn.execute(
                """SELECT COUNT(*), COALESCE(SUM(km), 0),
                          COALESCE(SUM(CASE WHEN estimated = 1 THEN 1 ELSE 0 END), 0)
                   FROM trips WHERE user_id = ?""",
                (user_id,),
            ).fetchone()
            month = self._conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(km), 0) FROM trips "
                "WHERE user_id = ? AND date BETWEEN ? AND ?",
                (user_id, month_start.isoformat(), month_end.isoformat()),
            ).fetchone()
        except sqlite3.Error as e:
            raise BackendOperationFailure("load trip status", e) from e

        return {
            "total_trips": row[0],
            "total_km": round(row[1], 1),
            "estimated_trips": row[2],
            "trips_this_month": month[0],
            "km_this_month": round(month[1], 1),
        }

    def close(self):
        """Close the SQLite connection. Call on shutdown."""
        self._conn.close()
        logger.info("TripLogManager database closed")
