"""Address to coordinates resolution via an OpenStreetMap Nominatim endpoint.

Nominatim usage policy requires a User-Agent with contact details and a low
request rate. Callers persist whatever this returns so each address is
resolved at most once.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from repairmatch.env import env_flag, env_float

logger = logging.getLogger(__name__)

NOMINATIM_BASE_URL = os.getenv("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org").rstrip("/")
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "RepairMatch/1.0 (soporte@repairmatch.local)")
GEOCODER_ENABLED = env_flag("GEOCODER_ENABLED", True)
GEOCODER_TIMEOUT_SECONDS = env_float("GEOCODER_TIMEOUT_SECONDS", 8.0, minimum=0.1)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    display_name: str


class NominatimGeocoder:
    def __init__(
        self,
        base_url: str = NOMINATIM_BASE_URL,
        user_agent: str = NOMINATIM_USER_AGENT,
        timeout: float = GEOCODER_TIMEOUT_SECONDS,
        enabled: bool = GEOCODER_ENABLED,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport

    def geocode_first_result(self, query: str) -> Optional[GeocodeResult]:
        trimmed = (query or "").strip()
        if not trimmed or not self.enabled:
            return None

        params = {"q": trimmed, "format": "json", "limit": "1", "addressdetails": 1}
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.get(f"{self.base_url}/search", params=params, headers=headers)
        except httpx.HTTPError:
            logger.warning("Geocoding request failed for %r", trimmed, exc_info=True)
            return None
        if resp.status_code >= 400:
            logger.warning("Nominatim error %s: %s", resp.status_code, resp.text[:200])
            return None

        try:
            rows = resp.json()
        except ValueError:
            logger.warning("Nominatim returned a non-JSON body for %r", trimmed)
            return None
        if not isinstance(rows, list) or not rows:
            return None
        first = rows[0] if isinstance(rows[0], dict) else {}
        try:
            lat = float(first.get("lat"))
            lng = float(first.get("lon"))
        except (TypeError, ValueError):
            return None
        if not (math.isfinite(lat) and math.isfinite(lng)):
            return None
        return GeocodeResult(lat=lat, lng=lng, display_name=str(first.get("display_name") or trimmed))


geocoder = NominatimGeocoder()
