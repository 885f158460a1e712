import asyncio

import httpx
import pytest

from core.errors import AuthRestrictionFailure, DistanceUnavailable, MapsError, ScriptLoadFailure
from tools.maps.adapter import GoogleMapsAdapter
from tools.maps.loader import API_RESTRICTION_ERROR, MapsLoader
from tools.maps.places import PlaceSearch, PlaceSuggestion, format_place_address

DENIED_DOMAIN = {
    "status": "REQUEST_DENIED",
    "error_message": "API keys with referer restrictions cannot be used with this API.",
}
DENIED_API = {
    "status": "REQUEST_DENIED",
    "error_message": "This API project is not authorized to use this API.",
}


def _adapter(handler, api_key="test-key"):
    return GoogleMapsAdapter(api_key=api_key, transport=httpx.MockTransport(handler))


def _run(coro_fn):
    return asyncio.run(coro_fn())


def test_load_probe_accepts_ok():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "OK", "predictions": []})

    adapter = _adapter(handler)

    async def scenario():
        await adapter.load()
        await adapter.close()

    _run(scenario)
    assert seen[0].url.path.endswith("/place/autocomplete/json")
    assert seen[0].url.params["key"] == "test-key"
    assert seen[0].url.params["components"] == "country:au"


def test_load_without_key_fails_fast():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ScriptLoadFailure, match="not configured"):
        _run(_adapter(handler, api_key="").load)


def test_load_request_denied_carries_provider_message():
    adapter = _adapter(lambda request: httpx.Response(200, json=DENIED_DOMAIN))
    with pytest.raises(AuthRestrictionFailure, match="referer restrictions"):
        _run(adapter.load)


def test_load_network_error_is_script_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ScriptLoadFailure, match="ConnectError"):
        _run(_adapter(handler).load)


def test_load_http_error_is_script_failure():
    with pytest.raises(ScriptLoadFailure):
        _run(_adapter(lambda request: httpx.Response(500, text="oops")).load)


def test_loader_classifies_api_restriction():
    loader = MapsLoader(_adapter(lambda request: httpx.Response(200, json=DENIED_API)))
    with pytest.raises(AuthRestrictionFailure) as exc_info:
        _run(loader.ensure_loaded)
    assert str(exc_info.value) == API_RESTRICTION_ERROR
    assert exc_info.value.kind == "api"


def test_loader_classifies_referer_restriction():
    loader = MapsLoader(_adapter(lambda request: httpx.Response(200, json=DENIED_DOMAIN)),
                        public_origin="https://km.example.com")
    with pytest.raises(AuthRestrictionFailure, match=r'Add "https://km.example.com/\*"'):
        _run(loader.ensure_loaded)


def test_distance_matrix_request_parameters():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "OK", "rows": []})

    payload = _run(lambda: _adapter(handler).distance_matrix("1 A St", "2 B St"))
    params = seen[0].url.params
    assert seen[0].url.path.endswith("/distancematrix/json")
    assert params["origins"] == "1 A St"
    assert params["destinations"] == "2 B St"
    assert params["mode"] == "driving"
    assert params["units"] == "metric"
    assert payload == {"status": "OK", "rows": []}


def test_distance_matrix_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out")

    with pytest.raises(DistanceUnavailable):
        _run(lambda: _adapter(handler).distance_matrix("A", "B"))


def test_autocomplete_errors():
    with pytest.raises(AuthRestrictionFailure):
        _run(lambda: _adapter(lambda r: httpx.Response(200, json=DENIED_API)).autocomplete("Syd"))
    with pytest.raises(MapsError, match="INVALID_REQUEST"):
        _run(lambda: _adapter(lambda r: httpx.Response(
            200, json={"status": "INVALID_REQUEST"})).autocomplete("Syd"))


# ---------------------------------------------------------------------------
# Places
# ---------------------------------------------------------------------------

BUSINESS = {
    "place_id": "p1",
    "description": "Westfield Parramatta, Church Street, Parramatta NSW, Australia",
    "types": ["shopping_mall", "point_of_interest", "establishment"],
    "structured_formatting": {
        "main_text": "Westfield Parramatta",
        "secondary_text": "Church Street, Parramatta NSW, Australia",
    },
}
STREET = {
    "place_id": "p2",
    "description": "1 George Street, Sydney NSW, Australia",
    "types": ["street_address", "geocode"],
    "structured_formatting": {"main_text": "1 George Street", "secondary_text": "Sydney NSW, Australia"},
}


def test_format_place_address():
    assert format_place_address("Cafe Sydney", "31 Alfred St, Sydney", ["restaurant"]) == \
        "Cafe Sydney, 31 Alfred St, Sydney"
    assert format_place_address("1 George St", "1 George St, Sydney", ["street_address"]) == \
        "1 George St, Sydney"
    assert format_place_address("", "1 George St, Sydney", None) == "1 George St, Sydney"


def test_suggestion_from_predictions():
    business = PlaceSuggestion.from_prediction(BUSINESS)
    street = PlaceSuggestion.from_prediction(STREET)
    assert business.address == "Westfield Parramatta, Church Street, Parramatta NSW, Australia"
    assert street.address == "1 George Street, Sydney NSW, Australia"
    assert street.to_dict()["place_id"] == "p2"


def test_place_search_limits_and_skips_blank(fake_adapter):
    fake_adapter.predictions = [BUSINESS, STREET] * 5
    search = PlaceSearch(MapsLoader(fake_adapter), fake_adapter, limit=3)

    assert _run(lambda: search.suggest("   ")) == []
    assert fake_adapter.load_calls == 0

    suggestions = _run(lambda: search.suggest("Parra"))
    assert len(suggestions) == 3
    assert fake_adapter.load_calls == 1
