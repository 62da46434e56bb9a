"""
Tests for reverse geocoding and its coordinate fallback.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.app.core.errors import UpstreamUnavailableError
from backend.app.sos import geocoding
from backend.app.sos.geocoding import (
    CoordinateGeocoder,
    MapboxGeocoder,
    coordinate_address,
    resolve_address,
)


def _mapbox(handler, **kwargs) -> MapboxGeocoder:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MapboxGeocoder("pk.test", client=client, **kwargs)


def test_coordinate_address_format():
    assert coordinate_address(28.7041, 77.1025) == "Lat: 28.7041, Lng: 77.1025"


def test_coordinate_geocoder():
    assert asyncio.run(CoordinateGeocoder().reverse(1.5, 2.5)) == "Lat: 1.5, Lng: 2.5"


class TestMapbox:

    def test_place_name_returned(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"features": [
                {"place_name": "Connaught Place, New Delhi, Delhi 110001, India"},
            ]})

        address = asyncio.run(_mapbox(handler).reverse(28.6315, 77.2167))

        assert address == "Connaught Place, New Delhi, Delhi 110001, India"
        assert seen["url"].path == "/geocoding/v5/mapbox.places/77.2167,28.6315.json"
        assert seen["url"].params["access_token"] == "pk.test"
        assert seen["url"].params["limit"] == "1"

    def test_no_features(self):
        geocoder = _mapbox(lambda request: httpx.Response(200, json={"features": []}))
        assert asyncio.run(geocoder.reverse(0.0, 0.0)) is None

    def test_http_error_raises_upstream(self):
        geocoder = _mapbox(lambda request: httpx.Response(401, json={"message": "Not Authorized"}))
        with pytest.raises(UpstreamUnavailableError):
            asyncio.run(geocoder.reverse(28.7, 77.1))

    def test_cache_hit_skips_request(self, monkeypatch):
        calls = []

        async def fake_cache_get(key):
            calls.append(key)
            return {"address": "Cached Street"}

        def handler(request):
            raise AssertionError("should not be called")

        monkeypatch.setattr(geocoding, "cache_get", fake_cache_get)
        address = asyncio.run(_mapbox(handler, cache_ttl=60).reverse(28.70001, 77.10001))

        assert address == "Cached Street"
        assert calls == ["geocode:28.7000:77.1000"]

    def test_successful_lookup_cached(self, monkeypatch):
        stored = {}

        async def fake_cache_get(key):
            return None

        async def fake_cache_set(key, value, ttl=None):
            stored[key] = (value, ttl)
            return True

        monkeypatch.setattr(geocoding, "cache_get", fake_cache_get)
        monkeypatch.setattr(geocoding, "cache_set", fake_cache_set)
        geocoder = _mapbox(
            lambda request: httpx.Response(200, json={"features": [{"place_name": "Gate 3"}]}),
            cache_ttl=60,
        )

        asyncio.run(geocoder.reverse(28.7, 77.1))
        assert stored == {"geocode:28.7000:77.1000": ({"address": "Gate 3"}, 60)}

    def test_requires_token(self):
        with pytest.raises(ValueError):
            MapboxGeocoder("")


class TestResolveAddress:

    def test_fallback_on_upstream_error(self):
        geocoder = _mapbox(lambda request: httpx.Response(500))
        assert asyncio.run(resolve_address(geocoder, 28.7, 77.1)) == "Lat: 28.7, Lng: 77.1"

    def test_fallback_on_empty_result(self):
        geocoder = _mapbox(lambda request: httpx.Response(200, json={"features": []}))
        assert asyncio.run(resolve_address(geocoder, 28.7, 77.1)) == "Lat: 28.7, Lng: 77.1"

    def test_provider_address_used(self):
        geocoder = _mapbox(lambda request: httpx.Response(200, json={"features": [{"place_name": "Gate 3"}]}))
        assert asyncio.run(resolve_address(geocoder, 28.7, 77.1)) == "Gate 3"
