"""
Reverse geocoding — coordinates → human-readable address.

Providers:
    coordinates — no lookup; the formatted coordinate string is the address
    mapbox      — Mapbox Geocoding v5 (`mapbox.places/{lon},{lat}.json`)

Geocoding never blocks report creation: any provider failure falls back
to "Lat: {lat}, Lng: {lon}". Successful Mapbox lookups are cached in Redis
by coordinates rounded to 4 decimals (~11 m).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from backend.app.core.cache import cache_get, cache_set
from backend.app.core.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

MAPBOX_REVERSE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{lon},{lat}.json"


def coordinate_address(latitude: float, longitude: float) -> str:
    return f"Lat: {latitude}, Lng: {longitude}"


class ReverseGeocoder(ABC):

    @abstractmethod
    async def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        """
        Address for the point, or None when the provider knows no place there.

        Raises UpstreamUnavailableError when the provider cannot be reached.
        """
        ...

    async def aclose(self) -> None:
        return None


class CoordinateGeocoder(ReverseGeocoder):
    """Offline fallback: always answers with the coordinates themselves."""

    async def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        return coordinate_address(latitude, longitude)


class MapboxGeocoder(ReverseGeocoder):

    def __init__(
        self,
        token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 5.0,
        cache_ttl: Optional[int] = None,
    ) -> None:
        if not token:
            raise ValueError("Mapbox geocoder requires an access token")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.cache_ttl = cache_ttl  # None disables caching
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    @staticmethod
    def _cache_key(latitude: float, longitude: float) -> str:
        return f"geocode:{latitude:.4f}:{longitude:.4f}"

    async def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        key = self._cache_key(latitude, longitude)
        if self.cache_ttl:
            cached = await cache_get(key)
            if cached is not None:
                logger.debug("Cache HIT: %s", key)
                return cached.get("address")

        url = MAPBOX_REVERSE_URL.format(lon=longitude, lat=latitude)
        try:
            client = await self._get_client()
            response = await client.get(
                url,
                params={"access_token": self.token, "limit": 1},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailableError(
                "mapbox", f"HTTP {e.response.status_code}",
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailableError("mapbox", str(e) or type(e).__name__) from e

        features = data.get("features") or []
        address = features[0].get("place_name") if features else None

        if self.cache_ttl and address:
            await cache_set(key, {"address": address}, ttl=self.cache_ttl)
        return address


async def resolve_address(
    geocoder: ReverseGeocoder, latitude: float, longitude: float,
) -> str:
    """Best-effort address; never raises for provider problems."""
    try:
        address = await geocoder.reverse(latitude, longitude)
    except UpstreamUnavailableError as e:
        logger.warning("Geocoding failed for (%s, %s): %s", latitude, longitude, e.message)
        address = None
    return address or coordinate_address(latitude, longitude)
