"""
Geocoding collaborator.

Trip creation calls ``geocode`` only when an inbound request carries an
address without coordinates.  ``GoogleGeocoder`` talks to the Google
Geocoding API; ``StaticGeocoder`` serves fixed answers for tests and
offline seeding.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from taxi_dispatch.config import settings
from taxi_dispatch.domain.errors import GeocodingFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    formatted_address: Optional[str] = None
    place_id: Optional[str] = None


class Geocoder(ABC):
    @abstractmethod
    async def geocode(
        self, address: str, language_hint: Optional[str] = None
    ) -> GeocodeResult:
        """Resolve *address* or raise ``GeocodingFailed``."""


class StaticGeocoder(Geocoder):
    def __init__(self, known: Optional[dict[str, tuple[float, float]]] = None):
        self.known = dict(known or {})
        self.calls: list[str] = []

    async def geocode(
        self, address: str, language_hint: Optional[str] = None
    ) -> GeocodeResult:
        self.calls.append(address)
        try:
            lat, lng = self.known[address]
        except KeyError:
            raise GeocodingFailed(f"Address not found: {address}") from None
        return GeocodeResult(lat=lat, lng=lng, formatted_address=address)


class GoogleGeocoder(Geocoder):
    def __init__(
        self,
        api_key: str,
        *,
        url: str = settings.geocoding_url,
        region: str = settings.geocoding_region,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.geocoding_timeout_seconds,
    ):
        self.api_key = api_key
        self.url = url
        self.region = region
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def geocode(
        self, address: str, language_hint: Optional[str] = None
    ) -> GeocodeResult:
        if not self.api_key:
            raise GeocodingFailed("Geocoding API key is not configured")

        params = {
            "address": address,
            "key": self.api_key,
            "language": language_hint or settings.geocoding_language,
            "region": self.region,
        }
        try:
            response = await self.client.get(self.url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Geocoding request failed for %r: %s", address, exc)
            raise GeocodingFailed(f"Geocoding API error: {exc}") from exc

        status = data.get("status")
        if status == "ZERO_RESULTS" or not data.get("results"):
            raise GeocodingFailed(f"Address not found: {address}")
        if status != "OK":
            raise GeocodingFailed(
                f"Geocoding failed: {status} {data.get('error_message', '')}".strip()
            )

        first = data["results"][0]
        location = first["geometry"]["location"]
        return GeocodeResult(
            lat=float(location["lat"]),
            lng=float(location["lng"]),
            formatted_address=first.get("formatted_address"),
            place_id=first.get("place_id"),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def default_geocoder() -> Geocoder:
    return GoogleGeocoder(settings.geocoding_api_key)
