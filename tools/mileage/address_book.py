"""
Address book for kmtrack: favorite locations and the home address.

Favorites are label/address pairs a user picks from when entering a trip.
An address can be saved once per user: the duplicate check compares the
trimmed, case-folded address.

The home address is the user's default trip origin.  It is stored as the
default-flagged ``home`` row of ``user_addresses`` and written with upsert
semantics.  Anything that shows the home address (the trip form, the
WebSocket push in the server) subscribes to changes instead of polling:

    book = AddressBook(db_path="data/kmtrack.db")
    unsubscribe = book.subscribe(lambda user_id, address: ...)
    book.set_home_address("u1", "1 George St, Sydney NSW")
"""

import asyncio
import inspect
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from core.errors import BackendOperationFailure, DuplicateFavorite
from tools.mileage.trip_log import rollback

logger = logging.getLogger(__name__)

HOME_ADDRESS_TYPE = "home"

HomeListener = Callable[[str, str], Any]


# ---------------------------------------------------------------------------
# Dataclass
# ---------------------------------------------------------------------------

@dataclass
class FavoriteLocation:
    """A saved address with a short label."""
    favorite_id: str = ""
    user_id: str = ""
    label: str = ""
    address: str = ""
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.favorite_id,
            "label": self.label,
            "address": self.address,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "FavoriteLocation":
        return FavoriteLocation(
            favorite_id=row["favorite_id"],
            user_id=row["user_id"],
            label=row["label"],
            address=row["address"],
            created_at=row["created_at"],
        )


def normalize_address(address: str) -> str:
    """Comparison key for duplicate detection."""
    return (address or "").strip().casefold()


def default_label(address: str) -> str:
    """Label suggested for a new favorite: the part before the first comma."""
    address = (address or "").strip()
    return address.split(",")[0].strip() or address[:30]


# ---------------------------------------------------------------------------
# AddressBook
# ---------------------------------------------------------------------------

class AddressBook:
    """SQLite-backed favorites and home address, scoped per user.

    Args:
        db_path: Path to the SQLite database file (":memory:" for tests).
    """

    def __init__(self, db_path: str = "data/kmtrack.db"):
        self._db_path = db_path
        self._listeners: list[HomeListener] = []
        self._pushes: set[asyncio.Task] = set()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.info("AddressBook initialized (db=%s)", db_path)

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS favorites (
                favorite_id  TEXT PRIMARY KEY,
                user_id      TEXT NOT NULL,
                label        TEXT NOT NULL,
                address      TEXT NOT NULL,
                created_at   TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_favorites_user ON favorites(user_id);

            CREATE TABLE IF NOT EXISTS user_addresses (
                address_id    TEXT PRIMARY KEY,
                user_id       TEXT NOT NULL,
                address_type  TEXT NOT NULL,
                address       TEXT NOT NULL,
                is_default    INTEGER DEFAULT 0,
                updated_at    TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_user_addresses_user
                ON user_addresses(user_id, address_type);
        """)
        self._conn.commit()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")

    def _write(self, operation: str, sql: str, params: tuple) -> sqlite3.Cursor:
        """Run one write statement, mapping SQLite errors to the taxonomy."""
        try:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur
        except sqlite3.Error as e:
            rollback(self._conn)
            logger.error("AddressBook %s failed: %s", operation, e)
            raise BackendOperationFailure(operation, e) from e

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    def list_favorites(self, user_id: str) -> list[FavoriteLocation]:
        """A user's favorites, newest first."""
        try:
            rows = self._conn.execute(
                "SELECT * FROM favorites WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        except sqlite3.Error as e:
            raise BackendOperationFailure("load favorites", e) from e
        return [FavoriteLocation.from_row(r) for r in rows]

    def is_favorite(self, user_id: str, address: str) -> bool:
        key = normalize_address(address)
        return any(normalize_address(f.address) == key for f in self.list_favorites(user_id))

    def add_favorite(self, user_id: str, address: str, label: str = "") -> FavoriteLocation:
        """Save ``address`` as a favorite.

        Raises:
            ValueError: blank address.
            DuplicateFavorite: the user already saved this address.
            BackendOperationFailure: the insert was rejected.
        """
        address = (address or "").strip()
        if not address:
            raise ValueError("Address is required")
        if self.is_favorite(user_id, address):
            raise DuplicateFavorite(address)

        favorite = FavoriteLocation(
            favorite_id=str(uuid.uuid4()),
            user_id=user_id,
            label=(label or "").strip() or default_label(address),
            address=address,
            created_at=self._now(),
        )
        self._write(
            "insert favorite",
            """INSERT INTO favorites (favorite_id, user_id, label, address, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (favorite.favorite_id, user_id, favorite.label, favorite.address, favorite.created_at),
        )
        logger.info("Favorite saved for %s: %s", user_id, favorite.label)
        return favorite

    def delete_favorite(self, user_id: str, favorite_id: str) -> bool:
        """Delete a favorite owned by ``user_id``.  False when nothing matched."""
        cur = self._write(
            "delete favorite",
            "DELETE FROM favorites WHERE favorite_id = ? AND user_id = ?",
            (favorite_id, user_id),
        )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Home address
    # ------------------------------------------------------------------

    def get_home_address(self, user_id: str) -> Optional[str]:
        try:
            row = self._conn.execute(
                """SELECT address FROM user_addresses
                   WHERE user_id = ? AND address_type = ? AND is_default = 1
                   ORDER BY updated_at DESC LIMIT 1""",
                (user_id, HOME_ADDRESS_TYPE),
            ).fetchone()
        except sqlite3.Error as e:
            raise BackendOperationFailure("load home address", e) from e
        return row["address"] if row else None

    def set_home_address(self, user_id: str, address: str) -> str:
        """Upsert the user's home address and notify subscribers.

        Raises:
            ValueError: blank address.
            BackendOperationFailure: the write was rejected.
        """
        address = (address or "").strip()
        if not address:
            raise ValueError("Home address is required")

        now = self._now()
        cur = self._write(
            "update home address",
            """UPDATE user_addresses SET address = ?, updated_at = ?
               WHERE user_id = ? AND address_type = ? AND is_default = 1""",
            (address, now, user_id, HOME_ADDRESS_TYPE),
        )
        if cur.rowcount == 0:
            self._write(
                "insert home address",
                """INSERT INTO user_addresses
                   (address_id, user_id, address_type, address, is_default, updated_at)
                   VALUES (?, ?, ?, ?, 1, ?)""",
                (str(uuid.uuid4()), user_id, HOME_ADDRESS_TYPE, address, now),
            )

        logger.info("Home address set for %s", user_id)
        self._notify_home_changed(user_id, address)
        return address

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: HomeListener) -> Callable[[], None]:
        """Register ``listener(user_id, address)`` for home-address changes.

        Listeners may be plain functions or coroutine functions.  Returns a
        callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_home_changed(self, user_id: str, address: str):
        for listener in list(self._listeners):
            try:
                result = listener(user_id, address)
            except Exception:
                logger.exception("Home address listener failed")
                continue
            if inspect.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()  # no running loop, drop the push
                    continue
                task = loop.create_task(result)
                self._pushes.add(task)
                task.add_done_callback(self._pushes.discard)

    def close(self):
        self._conn.close()
        logger.info("AddressBook database closed")
