import asyncio

import pytest

from core.errors import AuthRestrictionFailure, ScriptLoadFailure
from tools.maps.loader import (
    API_RESTRICTION_ERROR,
    GENERIC_AUTH_ERROR,
    GENERIC_LOAD_ERROR,
    STATE_FAILED,
    STATE_LOADED,
    STATE_NOT_LOADED,
    MapsLoader,
    classify_load_error,
    domain_error_message,
)

ORIGIN = "https://kmtrack.example.com"


async def _gather_loads(loader, n=5):
    return await asyncio.gather(*(loader.ensure_loaded() for _ in range(n)),
                                return_exceptions=True)


def test_concurrent_callers_share_one_attempt(fake_adapter):
    loader = MapsLoader(fake_adapter, ORIGIN)
    assert loader.state == STATE_NOT_LOADED

    results = asyncio.run(_gather_loads(loader))

    assert results == [None] * 5
    assert fake_adapter.load_calls == 1
    assert loader.attempts == 1
    assert loader.state == STATE_LOADED


def test_loaded_loader_does_not_reload(fake_adapter):
    loader = MapsLoader(fake_adapter, ORIGIN)

    async def scenario():
        await loader.ensure_loaded()
        await loader.ensure_loaded()

    asyncio.run(scenario())
    assert fake_adapter.load_calls == 1


def test_concurrent_callers_see_the_same_failure(denied_adapter):
    loader = MapsLoader(denied_adapter, ORIGIN)

    results = asyncio.run(_gather_loads(loader))

    assert denied_adapter.load_calls == 1
    assert all(isinstance(r, AuthRestrictionFailure) for r in results)
    assert {str(r) for r in results} == {domain_error_message(ORIGIN)}
    assert loader.state == STATE_FAILED
    assert loader.last_error == domain_error_message(ORIGIN)


def test_failed_load_is_rearmed(adapter_factory):
    adapter = adapter_factory(load_error=ScriptLoadFailure("ConnectError"))
    loader = MapsLoader(adapter, ORIGIN, rearm_after_failure=True)

    async def scenario():
        with pytest.raises(ScriptLoadFailure):
            await loader.ensure_loaded()
        adapter.load_error = None
        await loader.ensure_loaded()

    asyncio.run(scenario())
    assert adapter.load_calls == 2
    assert loader.state == STATE_LOADED
    assert loader.last_error is None


def test_failed_load_is_replayed_without_rearm(adapter_factory):
    adapter = adapter_factory(load_error=ScriptLoadFailure("ConnectError"))
    loader = MapsLoader(adapter, ORIGIN, rearm_after_failure=False)

    async def scenario():
        for _ in range(3):
            with pytest.raises(ScriptLoadFailure, match="Failed to load Google Maps API script"):
                await loader.ensure_loaded()

    asyncio.run(scenario())
    assert adapter.load_calls == 1
    assert loader.attempts == 1

    loader.reset()
    assert loader.state == "not_loaded"
    assert loader.last_error is None
    with pytest.raises(ScriptLoadFailure):
        asyncio.run(loader.ensure_loaded())
    assert adapter.load_calls == 2


def test_domain_diagnostic_quotes_origin():
    error = classify_load_error(
        AuthRestrictionFailure("RefererNotAllowedMapError"), ORIGIN)
    assert error.kind == "domain"
    assert str(error) == (
        'Google Maps API domain error. Add "https://kmtrack.example.com/*" '
        "to your API key restrictions in Google Cloud Console."
    )


def test_api_restriction_checked_before_domain():
    # Mentions both a blocked API and "not authorized to use this api key"
    error = classify_load_error(
        AuthRestrictionFailure("ApiTargetBlockedMapError: project is not authorized "
                               "to use this API key"), ORIGIN)
    assert error.kind == "api"
    assert str(error) == API_RESTRICTION_ERROR


def test_other_denial_is_generic_auth():
    error = classify_load_error(AuthRestrictionFailure("The provided API key is invalid."), ORIGIN)
    assert isinstance(error, AuthRestrictionFailure)
    assert error.kind == "auth"
    assert str(error) == GENERIC_AUTH_ERROR


def test_transport_failure_is_generic_load_error():
    error = classify_load_error(ScriptLoadFailure("ConnectTimeout: timed out"), ORIGIN)
    assert type(error) is ScriptLoadFailure
    assert str(error) == GENERIC_LOAD_ERROR


def test_to_dict(fake_adapter):
    loader = MapsLoader(fake_adapter, ORIGIN, rearm_after_failure=False)
    assert loader.to_dict() == {
        "state": STATE_NOT_LOADED,
        "attempts": 0,
        "last_error": None,
        "rearm_after_failure": False,
    }


def test_replayed_failure_is_a_fresh_exception(adapter_factory):
    adapter = adapter_factory(load_error=AuthRestrictionFailure("RefererNotAllowedMapError"))
    loader = MapsLoader(adapter, ORIGIN, rearm_after_failure=False)

    async def scenario():
        caught = []
        for _ in range(3):
            try:
                await loader.ensure_loaded()
            except AuthRestrictionFailure as e:
                caught.append(e)
        return caught

    first, second, third = asyncio.run(scenario())
    assert second is not third
    assert str(second) == str(third) == str(first) == domain_error_message(ORIGIN)
    assert second.kind == third.kind == "domain"
    assert adapter.load_calls == 1
