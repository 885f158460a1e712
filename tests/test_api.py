import pytest
from fastapi.testclient import TestClient

from interfaces.dashboard.server import create_app
from tools.mileage.distance_service import NO_API_WARNING

U1 = {"X-User-Id": "u1"}
U2 = {"X-User-Id": "u2"}


@pytest.fixture
def client(make_config):
    app = create_app(make_config())
    with TestClient(app) as test_client:
        yield test_client


def _add_trip(client, headers=U1, day="2024-01-15", start="1 A St", end="2 B St"):
    resp = client.post("/api/v1/trips", headers=headers, json={
        "date": day, "start_address": start, "end_address": end, "purpose": "Client visit",
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_root(client):
    assert client.get("/").json()["maps"] == "estimated"


def test_missing_user_id_is_401(client):
    assert client.get("/api/v1/trips").status_code == 401


def test_api_key_enforced_when_configured(make_config):
    app = create_app(make_config(api={"api_key": "s3cret"}))
    with TestClient(app) as client:
        assert client.get("/api/v1/trips", headers=U1).status_code == 403
        ok = client.get("/api/v1/trips", headers={**U1, "X-API-Key": "s3cret"})
        assert ok.status_code == 200


def test_create_trip_without_maps_key_is_estimated(client):
    body = _add_trip(client)
    assert body["estimated"] is True
    assert body["warning"] == NO_API_WARNING
    trip = body["trip"]
    assert 5.0 <= trip["km"] < 55.0
    assert trip["duration"] == f"{round(trip['km'] * 2)} mins"

    listed = client.get("/api/v1/trips", headers=U1).json()
    assert [t["id"] for t in listed["trips"]] == [trip["id"]]
    assert listed["status"]["estimated_trips"] == 1


def test_create_trip_validation(client):
    resp = client.post("/api/v1/trips", headers=U1, json={
        "date": "not-a-date", "start_address": "A", "end_address": "B"})
    assert resp.status_code == 422
    resp = client.post("/api/v1/trips", headers=U1, json={
        "date": "2024-01-15", "start_address": " ", "end_address": "B"})
    assert resp.status_code == 422
    resp = client.post("/api/v1/trips", headers=U1, json={"date": "2024-01-15"})
    assert resp.status_code == 422


def test_delete_is_owner_scoped(client):
    trip_id = _add_trip(client)["trip"]["id"]

    assert client.delete(f"/api/v1/trips/{trip_id}", headers=U2).status_code == 404
    assert len(client.get("/api/v1/trips", headers=U1).json()["trips"]) == 1

    assert client.delete(f"/api/v1/trips/{trip_id}", headers=U1).status_code == 200
    assert client.get("/api/v1/trips", headers=U1).json()["trips"] == []


def test_reports(client):
    _add_trip(client, day="2024-01-15")
    _add_trip(client, day="2024-02-15")
    _add_trip(client, headers=U2, day="2024-01-20")

    report = client.get("/api/v1/reports", headers=U1).json()["report"]
    assert report["total_trips"] == 2

    custom = client.get("/api/v1/reports", headers=U1, params={
        "period": "custom", "date_from": "2024-01-01", "date_to": "2024-01-31"}).json()["report"]
    assert custom["total_trips"] == 1
    assert custom["description"] == "Jan 01, 2024 - Jan 31, 2024"

    missing = client.get("/api/v1/reports", headers=U1, params={
        "period": "custom", "date_from": "2024-01-01"}).json()["report"]
    assert missing["total_trips"] == 0

    assert client.get("/api/v1/reports", headers=U1,
                      params={"period": "fortnight"}).status_code == 422


def test_csv_export_download(client):
    _add_trip(client, start='Unit 2, "The Mill"')
    resp = client.get("/api/v1/reports/export.csv", headers=U1)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="km-report-' in resp.headers["content-disposition"]
    lines = resp.text.split("\n")
    assert lines[0] == '"Date","Start Address","End Address","KM","Duration","Purpose","Notes"'
    assert lines[1].startswith('"2024-01-15","Unit 2, ""The Mill""","2 B St",')


def test_backup_download(client):
    _add_trip(client)
    client.put("/api/v1/home-address", headers=U1, json={"address": "1 Home Rd"})
    resp = client.get("/api/v1/backup", headers=U1)
    assert resp.status_code == 200
    doc = resp.json()
    assert doc["version"] == "1.0"
    assert doc["summary"]["totalTrips"] == 1
    assert doc["data"]["homeAddress"] == "1 Home Rd"


def test_favorites_flow(client):
    resp = client.post("/api/v1/favorites", headers=U1,
                       json={"address": "1 George St, Sydney", "label": ""})
    assert resp.status_code == 200
    favorite = resp.json()["favorite"]
    assert favorite["label"] == "1 George St"

    dup = client.post("/api/v1/favorites", headers=U1, json={"address": "1 george st, sydney"})
    assert dup.status_code == 409
    assert dup.json()["detail"] == "This address is already saved as a favorite."

    check = client.get("/api/v1/favorites/check", headers=U1,
                       params={"address": "1 George St, Sydney"}).json()
    assert check["is_favorite"] is True

    assert client.delete(f"/api/v1/favorites/{favorite['id']}", headers=U2).status_code == 404
    assert client.delete(f"/api/v1/favorites/{favorite['id']}", headers=U1).status_code == 200
    assert client.get("/api/v1/favorites", headers=U1).json()["favorites"] == []


def test_home_address_and_websocket_push(client):
    assert client.get("/api/v1/home-address", headers=U1).json()["address"] is None
    assert client.put("/api/v1/home-address", headers=U1,
                      json={"address": "  "}).status_code == 422

    with client.websocket_connect("/ws?user_id=u1") as ws:
        assert ws.receive_json() == {"type": "home_address", "address": None}
        resp = client.put("/api/v1/home-address", headers=U1, json={"address": "1 Home Rd"})
        assert resp.json() == {"ok": True, "address": "1 Home Rd"}
        assert ws.receive_json() == {"type": "home_address", "address": "1 Home Rd"}

    assert client.get("/api/v1/home-address", headers=U1).json()["address"] == "1 Home Rd"


def test_maps_status_without_key(client):
    status = client.get("/api/v1/maps/status").json()
    assert status["has_api_key"] is False
    assert status["loader"]["state"] == "not_loaded"

    load = client.post("/api/v1/maps/load").json()
    assert load["ok"] is False
    assert load["error"] == "Failed to load Google Maps API script."

    assert client.post("/api/v1/maps/reset").json() == {"ok": True}


def test_autocomplete_without_key_is_empty(client):
    body = client.get("/api/v1/places/autocomplete", params={"input": "Sydney"}).json()
    assert body["suggestions"] == []
    assert body["error"]


def test_events_are_scoped(client):
    _add_trip(client)
    events = client.get("/api/v1/events", headers=U2).json()["events"]
    assert all(e["details"].get("user_id", "") in ("", "u2") for e in events)
    mine = client.get("/api/v1/events", headers=U1).json()["events"]
    assert any(e["category"] == "trip" for e in mine)


def test_self_test_endpoint(client):
    body = client.post("/api/v1/self-test").json()
    names = {r["name"]: r["passed"] for r in body["results"]}
    assert names["Trip Store"] is True
    assert names["CSV Export"] is True
    assert names["Maps Loader"] is True
    assert body["total"] == len(body["results"])


# -- Storage failures ---------------------------------------------------------

def _backend_events(client, headers=U1):
    events = client.get("/api/v1/events", headers=headers).json()["events"]
    return [e for e in events if e["category"] == "backend"]


def test_trip_store_failure_is_500_and_logged(client):
    trip_id = _add_trip(client)["trip"]["id"]
    client.app.state.trip_log._conn.close()

    resp = client.post("/api/v1/trips", headers=U1, json={
        "date": "2024-01-16", "start_address": "A", "end_address": "B"})
    assert resp.status_code == 500
    assert resp.json()["detail"].startswith("Failed to insert trip")

    assert client.delete(f"/api/v1/trips/{trip_id}", headers=U1).status_code == 500
    assert client.get("/api/v1/trips", headers=U1).status_code == 500

    operations = [e["details"]["operation"] for e in _backend_events(client)]
    assert operations == ["insert trip", "delete trip", "load trips"]


def test_export_failure_is_500_and_logged(client):
    client.app.state.trip_log._conn.close()

    assert client.get("/api/v1/reports/export.csv", headers=U1).status_code == 500
    assert client.get("/api/v1/backup", headers=U1).status_code == 500

    events = _backend_events(client)
    assert len(events) == 2
    assert all(e["details"]["user_id"] == "u1" for e in events)


def test_favorite_failure_leaves_book_unchanged(client):
    client.post("/api/v1/favorites", headers=U1, json={"address": "1 George St"})
    book = client.app.state.address_book
    book._conn.close()

    resp = client.post("/api/v1/favorites", headers=U1, json={"address": "2 Pitt St"})
    assert resp.status_code == 500
    assert client.put("/api/v1/home-address", headers=U1,
                      json={"address": "1 Home Rd"}).status_code == 500
    assert len(_backend_events(client)) == 2

    # Reopen on the same file: only the first favorite was stored
    from tools.mileage.address_book import AddressBook
    reopened = AddressBook(db_path=client.app.state.config.database.db_path)
    try:
        assert [f.address for f in reopened.list_favorites("u1")] == ["1 George St"]
        assert reopened.get_home_address("u1") is None
    finally:
        reopened.close()


# -- Distance edge cases ------------------------------------------------------

def test_sub_100m_lookup_is_rejected_clearly(client, adapter_factory):
    from tools.maps.distance import DistanceResolver, FallbackEstimator
    from tools.maps.loader import MapsLoader
    from tools.mileage.distance_service import SHORT_TRIP_ERROR, DistanceService

    adapter = adapter_factory(meters=40)
    client.app.state.distance_service = DistanceService(
        resolver=DistanceResolver(MapsLoader(adapter), adapter),
        estimator=FallbackEstimator(latency=0),
        has_api_key=True,
        event_logger=client.app.state.event_logger,
    )

    resp = client.post("/api/v1/trips", headers=U1, json={
        "date": "2024-01-15", "start_address": "1 A St", "end_address": "3 A St"})
    assert resp.status_code == 422
    assert resp.json()["detail"] == SHORT_TRIP_ERROR
    assert client.get("/api/v1/trips", headers=U1).json()["trips"] == []

    adapter.meters = 60
    body = _add_trip(client)
    assert body["trip"]["km"] == 0.1
    assert body["estimated"] is False


# -- WebSocket registration ---------------------------------------------------

def test_websocket_unregisters_on_disconnect(client):
    broadcaster = client.app.state.broadcaster
    with client.websocket_connect("/ws?user_id=u1") as ws:
        ws.receive_json()
        assert broadcaster.client_count("u1") == 1
    assert broadcaster.client_count("u1") == 0


def test_websocket_unregisters_when_initial_send_fails(client, monkeypatch):
    broadcaster = client.app.state.broadcaster

    def broken(user_id):
        raise RuntimeError("home lookup failed")

    monkeypatch.setattr(client.app.state.address_book, "get_home_address", broken)
    with pytest.raises(RuntimeError, match="home lookup failed"):
        with client.websocket_connect("/ws?user_id=u1") as ws:
            ws.receive_json()
    assert broadcaster.client_count("u1") == 0
