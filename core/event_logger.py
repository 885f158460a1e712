"""
kmtrack activity log.

Keeps a short history of what happened to each user's data so it can be
shown in the dashboard: trips saved or removed, estimated distances, maps
loader trouble, favorite and home-address changes, storage failures.

History lives in a fixed-size deque; every record is mirrored to the
``kmtrack.events`` Python logger so the server log has the same lines.

    log = EventLogger(max_events=500)
    log.info("trip", "Trip added", user_id="u1", km=12.3)
    log.warn("maps", "Using fallback estimate", user_id="u1")
    log.get_recent(20, user_id="u1")
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


logger = logging.getLogger("kmtrack.events")

# Severity label -> stdlib logging level
LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass
class ActivityRecord:
    """One entry in the activity history.

    ``details`` carries free-form context such as ``user_id`` or
    ``trip_id``; records without a ``user_id`` belong to nobody in
    particular and are shown to everyone.
    """
    when: datetime
    level: str
    category: str
    text: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def owner(self) -> str:
        return str(self.details.get("user_id", ""))

    def visible_to(self, user_id: str) -> bool:
        return self.owner in ("", user_id)

    def as_json(self) -> dict[str, Any]:
        return {
            "timestamp": self.when.isoformat(),
            "severity": self.level,
            "category": self.category,
            "message": self.text,
            "details": dict(self.details),
        }

    def log_line(self) -> str:
        line = f"[{self.category}] {self.text}"
        if self.details:
            extras = " ".join(f"{key}={value!r}" for key, value in self.details.items())
            line = f"{line} | {extras}"
        return line


class EventLogger:
    """Bounded activity history, oldest records fall off the front."""

    def __init__(self, max_events: int = 1000):
        self._history: deque[ActivityRecord] = deque(maxlen=max(1, max_events))
        logger.debug("Activity history capacity: %d", self._history.maxlen)

    def info(self, category: str, message: str, **details):
        self.record("INFO", category, message, **details)

    def warn(self, category: str, message: str, **details):
        self.record("WARN", category, message, **details)

    def error(self, category: str, message: str, **details):
        self.record("ERROR", category, message, **details)

    def record(self, level: str, category: str, message: str, **details) -> ActivityRecord:
        if level not in LEVELS:
            raise ValueError(f"Unknown severity: {level}")
        entry = ActivityRecord(datetime.now(timezone.utc), level, category, message, details)
        self._history.append(entry)
        logger.log(LEVELS[level], entry.log_line())
        return entry

    def get_recent(self, count: int = 100, user_id: str | None = None) -> list[dict]:
        """Newest ``count`` records as dicts, in chronological order.

        With ``user_id`` set, other users' records are left out.
        """
        if count <= 0:
            return []
        picked: list[ActivityRecord] = []
        for entry in reversed(self._history):
            if user_id is not None and not entry.visible_to(user_id):
                continue
            picked.append(entry)
            if len(picked) == count:
                break
        picked.reverse()
        return [entry.as_json() for entry in picked]

    def __len__(self) -> int:
        return len(self._history)

    @property
    def count(self) -> int:
        return len(self._history)
