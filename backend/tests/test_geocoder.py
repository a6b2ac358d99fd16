import os
import sys

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from repairmatch.services.geocoder import NominatimGeocoder


def _geocoder(handler, **kwargs):
    return NominatimGeocoder(
        base_url="https://geo.test/",
        user_agent="RepairMatchTests/1.0",
        transport=httpx.MockTransport(handler),
        enabled=kwargs.pop("enabled", True),
        **kwargs,
    )


def test_returns_first_result_and_sends_user_agent():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"lat": "-34.5889", "lon": "-58.4306", "display_name": "Palermo, Buenos Aires"},
                {"lat": "0", "lon": "0", "display_name": "ignored"},
            ],
        )

    result = _geocoder(handler).geocode_first_result("  Av. Santa Fe 3200, Buenos Aires ")

    assert result is not None
    assert (result.lat, result.lng) == (-34.5889, -58.4306)
    assert result.display_name == "Palermo, Buenos Aires"
    assert seen[0].url.path == "/search"
    assert seen[0].url.params["q"] == "Av. Santa Fe 3200, Buenos Aires"
    assert seen[0].url.params["limit"] == "1"
    assert seen[0].headers["user-agent"] == "RepairMatchTests/1.0"


def test_empty_or_invalid_payloads_return_none():
    assert _geocoder(lambda request: httpx.Response(200, json=[])).geocode_first_result("x") is None
    assert _geocoder(lambda request: httpx.Response(200, json={"error": "nope"})).geocode_first_result("x") is None
    assert _geocoder(lambda request: httpx.Response(200, json=[{"lat": "north"}])).geocode_first_result("x") is None
    assert _geocoder(lambda request: httpx.Response(200, text="<html>")).geocode_first_result("x") is None


def test_upstream_errors_return_none():
    assert _geocoder(lambda request: httpx.Response(503, text="busy")).geocode_first_result("x") is None

    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert _geocoder(broken).geocode_first_result("x") is None


def test_disabled_or_blank_query_skips_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=[])

    assert _geocoder(handler, enabled=False).geocode_first_result("Palermo") is None
    assert _geocoder(handler).geocode_first_result("   ") is None
    assert calls == []
