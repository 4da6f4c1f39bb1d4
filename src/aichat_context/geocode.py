"""Reverse geocoding via a Nominatim-compatible HTTP service."""

import logging

import httpx

from .config import get_geocoder_url

logger = logging.getLogger(__name__)

USER_AGENT = "aichat-context/0.1.0"


class GeocodingError(Exception):
    """Raised when coordinates cannot be resolved to a place name."""


def format_address(address: dict) -> str:
    """Join city (or town, or village), state and country into one display string."""
    parts = []
    place = address.get("city") or address.get("town") or address.get("village")
    if place:
        parts.append(place)
    if address.get("state"):
        parts.append(address["state"])
    if address.get("country"):
        parts.append(address["country"])
    return ", ".join(parts)


class NominatimGeocoder:
    """Resolve ``(lat, lng)`` to a human-readable place name."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or get_geocoder_url()).rstrip("/")
        self.timeout = timeout
        self._client = client

    async def reverse(self, lat: float, lng: float) -> str:
        params = {
            "format": "json",
            "lat": lat,
            "lon": lng,
            "zoom": 10,
            "accept-language": "en",
        }
        try:
            if self._client is not None:
                response = await self._client.get(f"{self.base_url}/reverse", params=params)
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout, headers={"User-Agent": USER_AGENT}
                ) as client:
                    response = await client.get(f"{self.base_url}/reverse", params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeocodingError(f"Reverse geocoding failed for {lat}, {lng}: {e}") from e

        name = format_address(data.get("address") or {}) if isinstance(data, dict) else ""
        if not name:
            raise GeocodingError(f"No address found for {lat}, {lng}")
        logger.debug("Resolved %s, %s to %s", lat, lng, name)
        return name
