"""
kmtrack error taxonomy.

Mapping failures (ScriptLoadFailure, AuthRestrictionFailure,
DistanceUnavailable) are recoverable: callers degrade to the fallback
estimator and surface a warning.  BackendOperationFailure aborts the user
action in progress; nothing is retried automatically.
"""


class KmTrackError(Exception):
    """Base class for all kmtrack errors."""


# ---------------------------------------------------------------------------
# Mapping SDK
# ---------------------------------------------------------------------------

class MapsError(KmTrackError):
    """Anything that went wrong talking to the mapping SDK."""


class ScriptLoadFailure(MapsError):
    """The SDK could not be loaded (network error, bad response, no key)."""


class AuthRestrictionFailure(MapsError):
    """The SDK rejected the API key.

    Attributes:
        kind: "domain" for referrer/domain restrictions, "api" for API
              restrictions, "auth" for any other denial.
    """

    def __init__(self, message: str, kind: str = "auth"):
        super().__init__(message)
        self.kind = kind


class DistanceUnavailable(MapsError):
    """The distance matrix did not return a usable element."""


# ---------------------------------------------------------------------------
# Data backend
# ---------------------------------------------------------------------------

class BackendOperationFailure(KmTrackError):
    """An insert/select/delete was rejected by the data backend.

    Attributes:
        operation: Short name of the failed operation (e.g. "insert trip").
    """

    def __init__(self, operation: str, cause: Exception | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to {operation}{detail}")
        self.operation = operation


class DuplicateFavorite(KmTrackError):
    """The address is already saved as a favorite for this user."""

    def __init__(self, address: str):
        super().__init__("This address is already saved as a favorite.")
        self.address = address
