"""Single-flight loader for the mapping SDK.

Several parts of the app (trip creation, autocomplete, the status endpoint)
need the SDK at roughly the same time.  ``MapsLoader.ensure_loaded()``
guarantees one physical ``adapter.load()`` per attempt: the first caller
starts it, every concurrent caller awaits the same task and sees the same
success or the same exception.

State machine::

    not_loaded ──► loading ──► loaded
                      │
                      └──────► failed ──► (re-armed on next call, if allowed)

One instance per application; the server keeps it on ``app.state``.
"""

import asyncio
import logging

from core.errors import AuthRestrictionFailure, MapsError, ScriptLoadFailure
from tools.maps.adapter import MapsAdapter

logger = logging.getLogger("kmtrack.maps")

STATE_NOT_LOADED = "not_loaded"
STATE_LOADING = "loading"
STATE_LOADED = "loaded"
STATE_FAILED = "failed"

GENERIC_LOAD_ERROR = "Failed to load Google Maps API script."
GENERIC_AUTH_ERROR = "Google Maps API authentication failed."
API_RESTRICTION_ERROR = (
    "ApiTargetBlockedMapError: Your API key has incorrect API restrictions. "
    "Please configure API restrictions to allow Maps JavaScript API, "
    "Places API, and Distance Matrix API."
)
SCRIPT_API_RESTRICTION_ERROR = (
    "ApiTargetBlockedMapError: Your API key has incorrect API restrictions configured."
)

_API_RESTRICTION_MARKERS = (
    "apitargetblockedmaperror",
    "api restriction",
    "project is not authorized",
    "blocked",
)
_DOMAIN_RESTRICTION_MARKERS = (
    "referernotallowedmaperror",
    "referer",
    "referrer",
    "not authorized to use this api key",
)


def domain_error_message(origin: str) -> str:
    return (
        f'Google Maps API domain error. Add "{origin}/*" to your API key '
        "restrictions in Google Cloud Console."
    )


def classify_load_error(exc: Exception, origin: str) -> MapsError:
    """Turn a raw adapter failure into the diagnostic shown to the user.

    Matching is by substring on the provider's message, API restrictions
    checked before domain restrictions.
    """
    payload = str(exc).lower()

    if isinstance(exc, AuthRestrictionFailure):
        if any(marker in payload for marker in _API_RESTRICTION_MARKERS):
            return AuthRestrictionFailure(API_RESTRICTION_ERROR, kind="api")
        if any(marker in payload for marker in _DOMAIN_RESTRICTION_MARKERS):
            return AuthRestrictionFailure(domain_error_message(origin), kind="domain")
        return AuthRestrictionFailure(GENERIC_AUTH_ERROR, kind="auth")

    # Transport-level failure; only the blocked-target marker is detectable
    if "apitargetblockedmaperror" in payload:
        return AuthRestrictionFailure(SCRIPT_API_RESTRICTION_ERROR, kind="api")
    return ScriptLoadFailure(GENERIC_LOAD_ERROR)


class MapsLoader:
    """Load-once, notify-all wrapper around ``MapsAdapter.load()``.

    Args:
        adapter:              The provider adapter.
        public_origin:        Origin quoted in domain-restriction diagnostics.
        rearm_after_failure:  When True a call after a failed attempt starts a
                              fresh attempt.  When False the first failure is
                              replayed to every later caller.
    """

    def __init__(
        self,
        adapter: MapsAdapter,
        public_origin: str = "http://localhost:8080",
        rearm_after_failure: bool = True,
    ):
        self._adapter = adapter
        self._public_origin = public_origin
        self._rearm = rearm_after_failure
        self._state = STATE_NOT_LOADED
        self._pending: asyncio.Task | None = None
        self._error: MapsError | None = None
        self._attempts = 0

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state == STATE_LOADED

    @property
    def attempts(self) -> int:
        """Number of physical load attempts made so far."""
        return self._attempts

    @property
    def last_error(self) -> str | None:
        return str(self._error) if self._error else None

    async def ensure_loaded(self) -> None:
        """Wait until the SDK is loaded.

        Raises:
            ScriptLoadFailure:       generic load failure.
            AuthRestrictionFailure:  key/domain/API restriction.
        """
        if self._state == STATE_LOADED:
            return
        if self._state == STATE_FAILED and not self._rearm:
            raise self._replay_error()

        if self._pending is None:
            self._state = STATE_LOADING
            self._attempts += 1
            logger.info("Loading Google Maps API (attempt %d)", self._attempts)
            self._pending = asyncio.ensure_future(self._load_once())

        # shield: one caller giving up must not cancel the load for the rest
        await asyncio.shield(self._pending)

    async def _load_once(self) -> None:
        try:
            await self._adapter.load()
        except asyncio.CancelledError:
            self._state = STATE_NOT_LOADED
            raise
        except Exception as e:
            error = classify_load_error(e, self._public_origin)
            self._state = STATE_FAILED
            self._error = error
            logger.warning("Google Maps API load failed: %s (raw: %s)", error, e)
            raise error from e
        else:
            self._state = STATE_LOADED
            self._error = None
            logger.info("Google Maps API loaded")
        finally:
            self._pending = None

    def _replay_error(self) -> MapsError:
        """A fresh copy of the stored failure, so tracebacks do not pile up."""
        error = self._error
        if isinstance(error, AuthRestrictionFailure):
            return AuthRestrictionFailure(str(error), kind=error.kind)
        return type(error)(str(error))

    def reset(self) -> None:
        """Forget a failed attempt so the next caller loads again."""
        if self._state == STATE_FAILED:
            self._state = STATE_NOT_LOADED
            self._error = None
            logger.info("Google Maps loader reset after failure")

    def to_dict(self) -> dict:
        return {
            "state": self._state,
            "attempts": self._attempts,
            "last_error": self.last_error,
            "rearm_after_failure": self._rearm,
        }
