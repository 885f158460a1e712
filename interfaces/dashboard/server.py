"""
kmtrack Server

FastAPI backend for the kilometre tracker.  Serves the /api/v1 REST API and
a WebSocket channel that pushes home-address changes to every open client
of the same user.

Run with:
    uvicorn interfaces.dashboard.server:app --host 0.0.0.0 --port 8080 --reload
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from core.config import KmTrackConfig, get_config
from core.event_logger import EventLogger
from api.export import ExportManager
from tools.maps.adapter import GoogleMapsAdapter
from tools.maps.distance import DistanceResolver, FallbackEstimator
from tools.maps.loader import MapsLoader
from tools.maps.places import PlaceSearch
from tools.mileage.address_book import AddressBook
from tools.mileage.distance_service import DistanceService
from tools.mileage.trip_log import TripLogManager


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("kmtrack.server")


# ---------------------------------------------------------------------------
# Home-address push
# ---------------------------------------------------------------------------

class HomeAddressBroadcaster:
    """Fans home-address changes out to the user's open WebSockets."""

    def __init__(self):
        self._clients: dict[str, list[WebSocket]] = {}

    def add(self, user_id: str, websocket: WebSocket):
        self._clients.setdefault(user_id, []).append(websocket)

    def remove(self, user_id: str, websocket: WebSocket):
        sockets = self._clients.get(user_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self._clients.pop(user_id, None)

    def client_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._clients.get(user_id, []))
        return sum(len(s) for s in self._clients.values())

    async def on_home_changed(self, user_id: str, address: str):
        """AddressBook subscriber.  Drops sockets that fail to send."""
        disconnected = []
        for ws in list(self._clients.get(user_id, [])):
            try:
                await ws.send_json({"type": "home_address", "address": address})
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            self.remove(user_id, ws)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(config: Optional[KmTrackConfig] = None) -> FastAPI:
    """Build the app and its shared managers.

    Everything lives on ``app.state`` so the REST router (and tests) reach
    the same instances without module-level globals.
    """
    config = config or get_config()

    event_logger = EventLogger(max_events=config.events.max_events)
    trip_log = TripLogManager(db_path=config.database.db_path)
    address_book = AddressBook(db_path=config.database.db_path)
    exporter = ExportManager(trip_log, address_book)

    adapter = GoogleMapsAdapter(
        api_key=config.maps.api_key,
        base_url=config.maps.base_url,
        timeout=config.maps.request_timeout,
        country=config.maps.country,
        probe_query=config.maps.probe_query,
    )
    maps_loader = MapsLoader(
        adapter,
        public_origin=config.server.public_origin,
        rearm_after_failure=config.maps.rearm_after_failure,
    )
    distance_service = DistanceService(
        resolver=DistanceResolver(maps_loader, adapter),
        estimator=FallbackEstimator(latency=config.maps.fallback_latency),
        has_api_key=config.has_maps_key,
        primary_retry_seconds=config.maps.primary_retry_seconds,
        event_logger=event_logger,
    )
    place_search = PlaceSearch(maps_loader, adapter)

    broadcaster = HomeAddressBroadcaster()
    unsubscribe = address_book.subscribe(broadcaster.on_home_changed)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Warm the maps loader on startup, close everything on shutdown."""
        logger.info("kmtrack server starting up")
        event_logger.info("system", "kmtrack server starting up",
                          maps_key=config.has_maps_key)
        warmup = None
        if config.has_maps_key:
            warmup = asyncio.create_task(_warm_maps(maps_loader))
        yield
        if warmup is not None and not warmup.done():
            warmup.cancel()
        unsubscribe()
        await adapter.close()
        trip_log.close()
        address_book.close()
        logger.info("kmtrack server shutting down")

    app = FastAPI(title="kmtrack", lifespan=lifespan)

    app.state.config = config
    app.state.event_logger = event_logger
    app.state.trip_log = trip_log
    app.state.address_book = address_book
    app.state.exporter = exporter
    app.state.maps_adapter = adapter
    app.state.maps_loader = maps_loader
    app.state.distance_service = distance_service
    app.state.place_search = place_search
    app.state.broadcaster = broadcaster

    # Mount versioned REST API
    from interfaces.api.routes import router as api_router
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Service info."""
        return {
            "name": "kmtrack",
            "api": "/api/v1",
            "maps": "google" if config.has_maps_key else "estimated",
        }

    @app.websocket("/ws")
    async def home_address_websocket(websocket: WebSocket):
        """Per-user push channel.

        The user id comes from the ``user_id`` query parameter.  On connect
        the current home address is sent; afterwards every change is pushed
        as ``{"type": "home_address", "address": ...}``.
        """
        user_id = (websocket.query_params.get("user_id") or "").strip()
        if not user_id:
            await websocket.close(code=4401)
            return

        await websocket.accept()
        broadcaster.add(user_id, websocket)
        logger.info("WebSocket client connected for %s from %s", user_id,
                    websocket.client.host if websocket.client else "unknown")
        try:
            await websocket.send_json({
                "type": "home_address",
                "address": address_book.get_home_address(user_id),
            })
            while True:
                # Clients only listen; drain anything they send
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected for %s", user_id)
        finally:
            broadcaster.remove(user_id, websocket)

    return app


async def _warm_maps(loader: MapsLoader):
    """Start the SDK load early so the first trip does not wait for it."""
    try:
        await loader.ensure_loaded()
    except Exception as e:
        logger.warning("Maps warm-up failed: %s", e)


app = create_app()


# ---------------------------------------------------------------------------
# Direct execution
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
