"""
kmtrack configuration.

Settings come from three layers, later ones winning:

1. built-in defaults (the server starts with no settings file at all)
2. ``config/settings.toml``, read with stdlib ``tomllib``
3. ``KMTRACK_*`` environment variables

Code that builds its own config (tests, the terminal client) can pass an
``overrides`` dict that is applied on top of everything.

    config = get_config()
    config.server.port
    config.maps.api_key
    config.has_maps_key
"""

import copy
import logging
import os
import threading
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("kmtrack.config")

DEFAULT_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.toml"

# Sections whose ``api_key`` is masked in to_dict()
SECRET_SECTIONS = ("maps", "api")

DEFAULTS: dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "log_level": "info",
        "public_origin": "http://localhost:8080",
    },
    "database": {
        "db_path": "data/kmtrack.db",
    },
    "maps": {
        # No key: every distance is a fallback estimate
        "api_key": "",
        "base_url": "https://maps.googleapis.com/maps/api",
        "request_timeout": 10.0,
        "country": "au",
        "probe_query": "Sydney",
        "rearm_after_failure": True,
        "primary_retry_seconds": 0,
        "fallback_latency": 1.0,
    },
    "events": {
        "max_events": 1000,
    },
    "api": {
        "api_key": "",
    },
}


def _flag(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


ENV_VARS: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "KMTRACK_SERVER_HOST":         ("server", "host", str),
    "KMTRACK_SERVER_PORT":         ("server", "port", int),
    "KMTRACK_LOG_LEVEL":           ("server", "log_level", str),
    "KMTRACK_PUBLIC_ORIGIN":       ("server", "public_origin", str),
    "KMTRACK_DB_PATH":             ("database", "db_path", str),
    "KMTRACK_GOOGLE_MAPS_API_KEY": ("maps", "api_key", str),
    "KMTRACK_FALLBACK_LATENCY":    ("maps", "fallback_latency", float),
    "KMTRACK_REARM_AFTER_FAILURE": ("maps", "rearm_after_failure", _flag),
    "KMTRACK_API_KEY":             ("api", "api_key", str),
}


class ConfigSection:
    """Read-only attribute view over one table of settings."""

    def __init__(self, data: dict[str, Any], name: str = ""):
        self._data = data
        self._name = name

    def __getattr__(self, key: str) -> Any:
        if key.startswith("_"):
            raise AttributeError(key)
        if key not in self._data:
            where = f"[{self._name}]" if self._name else "config"
            raise AttributeError(f"{where} has no setting {key!r}")
        value = self._data[key]
        if isinstance(value, dict):
            return ConfigSection(value, f"{self._name}.{key}" if self._name else key)
        return value

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __repr__(self) -> str:
        return f"<ConfigSection {self._name or 'root'}: {sorted(self._data)}>"

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class KmTrackConfig:
    """Layered settings with attribute access per TOML table.

    Args:
        config_path: TOML file to read; ``config/settings.toml`` by default.
        overrides:   Nested dict applied after environment variables.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        self._lock = threading.Lock()
        self._path = Path(config_path) if config_path is not None else DEFAULT_PATH
        self._overrides = copy.deepcopy(overrides or {})
        self._data: dict[str, Any] = self._build()
        self.last_loaded = datetime.now(timezone.utc).isoformat()

    @property
    def path(self) -> Path:
        return self._path

    def _read_file(self) -> dict[str, Any]:
        if not self._path.is_file():
            logger.warning("No settings file at %s, running on defaults", self._path)
            return {}
        try:
            with self._path.open("rb") as fh:
                parsed = tomllib.load(fh)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        logger.info("Settings read from %s", self._path)
        return parsed

    @staticmethod
    def _read_env() -> dict[str, Any]:
        found: dict[str, Any] = {}
        for var, (section, key, convert) in ENV_VARS.items():
            raw = os.environ.get(var)
            if raw is None:
                continue
            try:
                value = convert(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring %s: %s", var, exc)
                continue
            found.setdefault(section, {})[key] = value
            logger.info("%s applied%s", var, "" if key != "api_key" else " (value hidden)")
        return found

    def _build(self) -> dict[str, Any]:
        merged = copy.deepcopy(DEFAULTS)
        for layer in (self._read_file(), self._read_env(), self._overrides):
            _merge_into(merged, copy.deepcopy(layer))
        return merged

    def reload(self) -> dict[str, Any]:
        """Re-read file and environment.

        Returns ``{"section.key": {"old": ..., "new": ...}}`` for each value
        that moved. Managers take their settings when they are built, so a
        reload only affects them after a restart.
        """
        with self._lock:
            before = _flatten(self._data)
            self._data = self._build()
            self.last_loaded = datetime.now(timezone.utc).isoformat()
            after = _flatten(self._data)
        changes = {
            key: {"old": before.get(key), "new": after.get(key)}
            for key in sorted(before.keys() | after.keys())
            if before.get(key) != after.get(key)
        }
        logger.info("Settings reloaded, %d value(s) changed", len(changes))
        return changes

    @property
    def has_maps_key(self) -> bool:
        return bool(self._data["maps"].get("api_key"))

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        data = self.__dict__.get("_data", {})
        if name not in data:
            raise AttributeError(f"Unknown settings section {name!r}; have {sorted(data)}")
        value = data[name]
        return ConfigSection(value, name) if isinstance(value, dict) else value

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        """Deep copy of every setting, API keys masked unless ``redact`` is False."""
        snapshot = copy.deepcopy(self._data)
        if redact:
            for section in SECRET_SECTIONS:
                table = snapshot.get(section) or {}
                if table.get("api_key"):
                    table["api_key"] = "***"
        return snapshot


_instance: KmTrackConfig | None = None
_instance_lock = threading.Lock()


def get_config(config_path: str | Path | None = None) -> KmTrackConfig:
    """Process-wide config, created on first use.

    ``config_path`` only matters on the first call.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = KmTrackConfig(config_path=config_path)
        return _instance


def _merge_into(target: dict, layer: dict):
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            target[key] = value


def _flatten(data: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{path}."))
        else:
            flat[path] = value
    return flat
