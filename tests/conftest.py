"""Shared fixtures for the kmtrack pytest suite."""

import asyncio
import os
import tempfile
from pathlib import Path

import pytest

# Importing the server builds a module-level app from get_config(); keep
# its database out of the working tree.
os.environ.setdefault("KMTRACK_DB_PATH", str(Path(tempfile.mkdtemp()) / "kmtrack.db"))

from core.config import KmTrackConfig  # noqa: E402
from core.errors import AuthRestrictionFailure  # noqa: E402

_ENV_VARS = (
    "KMTRACK_SERVER_HOST",
    "KMTRACK_SERVER_PORT",
    "KMTRACK_LOG_LEVEL",
    "KMTRACK_PUBLIC_ORIGIN",
    "KMTRACK_GOOGLE_MAPS_API_KEY",
    "KMTRACK_FALLBACK_LATENCY",
    "KMTRACK_REARM_AFTER_FAILURE",
    "KMTRACK_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_config(tmp_path):
    """Config with no settings file, a scratch database and no fallback delay."""

    def _make(**sections):
        overrides = {
            "database": {"db_path": str(tmp_path / "kmtrack.db")},
            "maps": {"fallback_latency": 0},
        }
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        return KmTrackConfig(config_path=tmp_path / "missing.toml", overrides=overrides)

    return _make


class FakeAdapter:
    """Scriptable MapsAdapter stand-in.

    Args:
        load_error:  Exception raised by load(), or None for success.
        meters:      Distance returned by distance_matrix().
        matrix:      Full payload override for distance_matrix().
        delay:       Seconds load() takes, so concurrent callers overlap.
    """

    def __init__(self, load_error=None, meters=12345, matrix=None, delay=0.01,
                 predictions=None):
        self.load_error = load_error
        self.meters = meters
        self.matrix = matrix
        self.delay = delay
        self.predictions = predictions or []
        self.load_calls = 0
        self.matrix_calls = 0

    async def load(self):
        self.load_calls += 1
        await asyncio.sleep(self.delay)
        if self.load_error is not None:
            raise self.load_error

    async def distance_matrix(self, origin, destination):
        self.matrix_calls += 1
        if self.matrix is not None:
            return self.matrix
        return {
            "status": "OK",
            "rows": [{"elements": [{
                "status": "OK",
                "distance": {"value": self.meters, "text": f"{self.meters / 1000:.1f} km"},
                "duration": {"value": 1380, "text": "23 mins"},
            }]}],
        }

    async def autocomplete(self, text):
        return self.predictions

    async def close(self):
        pass


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def denied_adapter():
    return FakeAdapter(load_error=AuthRestrictionFailure(
        "RefererNotAllowedMapError: this referer is not allowed"))


@pytest.fixture
def adapter_factory():
    return FakeAdapter
