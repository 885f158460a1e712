"""
kmtrack REST API: /api/v1/

Endpoints for the web client, the terminal client and scripts.  Mounted on
the FastAPI app created in ``interfaces.dashboard.server``; reaches shared
managers through ``request.app.state`` to avoid circular imports.

Auth: optional API key via ``X-API-Key`` header.  Set ``api.api_key`` in
config/settings.toml or the ``KMTRACK_API_KEY`` env var.  Empty key = open
access.

Identity: every call names its user in the ``X-User-Id`` header; all reads
and deletes are scoped to that user.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from api.export import register_routes as register_export_routes
from core.errors import BackendOperationFailure, DuplicateFavorite, MapsError
from tools.mileage.distance_service import SHORT_TRIP_ERROR
from tools.mileage.reports import build_report
from tools.mileage.trip_log import parse_trip_date

logger = logging.getLogger("kmtrack.api")

# ---------------------------------------------------------------------------
# Auth / identity dependencies
# ---------------------------------------------------------------------------

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    request: Request,
    api_key: Optional[str] = Depends(_api_key_header),
):
    """Check X-API-Key against the configured key.

    If the configured key is empty (default), auth is disabled and all
    requests are allowed through.  When a key is set, requests without
    a matching header receive 403.
    """
    configured_key: str = request.app.state.config.api.api_key
    if not configured_key:
        return  # open access
    if api_key != configured_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


async def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller's user id from ``X-User-Id``; 401 when absent."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def _backend_failure(request: Request, e: BackendOperationFailure, user_id: str):
    request.app.state.event_logger.error(
        "backend", str(e), user_id=user_id, operation=e.operation,
    )
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

router = APIRouter(
    prefix="/api/v1",
    dependencies=[Depends(verify_api_key)],
)


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class TripCreate(BaseModel):
    date: str
    start_address: str
    end_address: str
    purpose: str = ""
    notes: str = ""


class FavoriteCreate(BaseModel):
    address: str
    label: str = ""


class HomeAddressUpdate(BaseModel):
    address: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

# -- Trips -------------------------------------------------------------------

@router.get("/trips")
async def list_trips(
    request: Request,
    user_id: str = Depends(current_user),
    date_from: str = "",
    date_to: str = "",
    limit: int = 0,
):
    """Return the caller's trips, newest first."""
    trip_log = request.app.state.trip_log
    try:
        trips = trip_log.list_trips(user_id, date_from, date_to, limit)
        status = trip_log.get_status(user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    return {"trips": [t.to_dict() for t in trips], "status": status}


@router.post("/trips")
async def create_trip(body: TripCreate, request: Request, user_id: str = Depends(current_user)):
    """Resolve the distance for a trip and store it.

    Mapping problems never fail the request: the distance falls back to an
    estimate and ``warning`` says so.
    """
    trip_log = request.app.state.trip_log
    distance_service = request.app.state.distance_service
    event_logger = request.app.state.event_logger

    start = body.start_address.strip()
    end = body.end_address.strip()
    if not start or not end:
        raise HTTPException(status_code=422, detail="Both start and end address are required")
    try:
        trip_date = parse_trip_date(body.date)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    outcome = await distance_service.calculate(start, end, user_id=user_id)
    result = outcome.result
    if result.distance_km <= 0:
        raise HTTPException(status_code=422, detail=SHORT_TRIP_ERROR)

    try:
        trip = trip_log.add_trip(
            user_id=user_id,
            date=trip_date,
            start_address=start,
            end_address=end,
            km=result.distance_km,
            duration=result.duration,
            purpose=body.purpose,
            notes=body.notes,
            estimated=result.estimated,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)

    event_logger.info(
        "trip", f"Trip {trip.short_id} added: {trip.km} km",
        user_id=user_id, trip_id=trip.short_id, estimated=trip.estimated,
    )
    return {
        "ok": True,
        "trip": trip.to_dict(),
        "estimated": result.estimated,
        "warning": outcome.warning,
    }


@router.delete("/trips/{trip_id}")
async def delete_trip(trip_id: str, request: Request, user_id: str = Depends(current_user)):
    """Delete one of the caller's trips. 404 if not found or not owned."""
    try:
        deleted = request.app.state.trip_log.delete_trip(user_id, trip_id)
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Trip '{trip_id}' not found")
    request.app.state.event_logger.info(
        "trip", f"Trip {trip_id[:8]} deleted", user_id=user_id, trip_id=trip_id[:8],
    )
    return {"ok": True}


# -- Reports -----------------------------------------------------------------

@router.get("/reports")
async def get_report(
    request: Request,
    user_id: str = Depends(current_user),
    period: str = "all",
    date_from: str = "",
    date_to: str = "",
):
    """Aggregate the caller's trips over a period."""
    try:
        trips = request.app.state.trip_log.list_trips(user_id)
        report = build_report(trips, period, date_from or None, date_to or None)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    return {"report": report.to_dict()}


# -- Favorites ---------------------------------------------------------------

@router.get("/favorites")
async def list_favorites(request: Request, user_id: str = Depends(current_user)):
    try:
        favorites = request.app.state.address_book.list_favorites(user_id)
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    return {"favorites": [f.to_dict() for f in favorites]}


@router.get("/favorites/check")
async def check_favorite(address: str, request: Request, user_id: str = Depends(current_user)):
    """Whether ``address`` is already saved (drives the star toggle)."""
    try:
        saved = request.app.state.address_book.is_favorite(user_id, address)
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    return {"address": address, "is_favorite": saved}


@router.post("/favorites")
async def add_favorite(body: FavoriteCreate, request: Request, user_id: str = Depends(current_user)):
    """Save a favorite. 409 when the address is already saved."""
    try:
        favorite = request.app.state.address_book.add_favorite(user_id, body.address, body.label)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except DuplicateFavorite as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    request.app.state.event_logger.info(
        "favorite", f"Favorite saved: {favorite.label}", user_id=user_id,
    )
    return {"ok": True, "favorite": favorite.to_dict()}


@router.delete("/favorites/{favorite_id}")
async def delete_favorite(favorite_id: str, request: Request, user_id: str = Depends(current_user)):
    try:
        deleted = request.app.state.address_book.delete_favorite(user_id, favorite_id)
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Favorite '{favorite_id}' not found")
    request.app.state.event_logger.info("favorite", "Favorite removed", user_id=user_id)
    return {"ok": True}


# -- Home address ------------------------------------------------------------

@router.get("/home-address")
async def get_home_address(request: Request, user_id: str = Depends(current_user)):
    try:
        address = request.app.state.address_book.get_home_address(user_id)
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    return {"address": address}


@router.put("/home-address")
async def set_home_address(body: HomeAddressUpdate, request: Request, user_id: str = Depends(current_user)):
    """Upsert the caller's home address; connected clients get a push."""
    try:
        address = request.app.state.address_book.set_home_address(user_id, body.address)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BackendOperationFailure as e:
        raise _backend_failure(request, e, user_id)
    request.app.state.event_logger.info("home", "Home address updated", user_id=user_id)
    return {"ok": True, "address": address}


# -- Maps --------------------------------------------------------------------

@router.get("/maps/status")
async def maps_status(request: Request):
    """Key presence, loader state and the banner error, if any."""
    loader = request.app.state.maps_loader
    distance_service = request.app.state.distance_service
    return {
        "has_api_key": distance_service.has_api_key,
        "api_error": distance_service.api_error or loader.last_error,
        "loader": loader.to_dict(),
        "distance": distance_service.to_dict(),
    }


@router.post("/maps/load")
async def maps_load(request: Request):
    """Trigger the SDK load and report the outcome."""
    loader = request.app.state.maps_loader
    try:
        await loader.ensure_loaded()
    except MapsError as e:
        return {"ok": False, "state": loader.state, "error": str(e)}
    return {"ok": True, "state": loader.state}


@router.post("/maps/reset")
async def maps_reset(request: Request):
    """Clear the broken-API flag and any failed load so the next trip tries Google again."""
    request.app.state.distance_service.reset()
    request.app.state.maps_loader.reset()
    logger.info("Maps broken-API flag and loader failure cleared via REST API")
    return {"ok": True}


@router.get("/places/autocomplete")
async def places_autocomplete(input: str, request: Request):
    """Address suggestions; an empty list when the SDK is unavailable."""
    place_search = request.app.state.place_search
    try:
        suggestions = await place_search.suggest(input)
    except MapsError as e:
        return {"suggestions": [], "error": str(e)}
    return {"suggestions": [s.to_dict() for s in suggestions]}


# -- Events ------------------------------------------------------------------

@router.get("/events")
async def get_events(request: Request, user_id: str = Depends(current_user), count: int = 200):
    """Return the caller's recent events plus system events."""
    event_logger = request.app.state.event_logger
    return {"events": event_logger.get_recent(count, user_id=user_id)}


# -- Self-test ---------------------------------------------------------------

@router.post("/self-test")
async def run_self_test(request: Request):
    """Run the subsystem probes against a scratch database."""
    from tests.self_test import SelfTest

    state = request.app.state
    tester = SelfTest(
        config=state.config,
        event_logger=state.event_logger,
        trip_log=state.trip_log,
        address_book=state.address_book,
        port=state.config.server.port,
    )
    return await tester.run_all()


# -- Export ------------------------------------------------------------------

register_export_routes(router, current_user, _backend_failure)
