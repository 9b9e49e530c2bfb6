"""
Guardian — Reverse Geocoding Client

Turns a coordinate into a human-readable place name for alert records.
Best effort: any network or parsing failure yields None and the alert goes
out with a generic location label instead.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from guardian.common.schemas import GeoPoint
from guardian.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class ReverseGeocoder:
    """Nominatim-compatible reverse lookup."""

    def __init__(self, endpoint: str | None = None, timeout_s: float | None = None) -> None:
        self._endpoint = endpoint or settings.geocoder_reverse_url
        self._timeout = timeout_s or settings.geocoder_timeout_s

    def place_name(self, point: GeoPoint) -> Optional[str]:
        params = {
            "lat": point.latitude,
            "lon": point.longitude,
            "format": "jsonv2",
        }
        try:
            resp = requests.get(
                self._endpoint,
                params=params,
                headers={"User-Agent": settings.geocoder_user_agent},
                timeout=self._timeout,
            )
            if resp.status_code != 200:
                logger.warning(f"Reverse geocode returned HTTP {resp.status_code}")
                return None
            data = resp.json()
            if not isinstance(data, dict):
                logger.warning(f"Reverse geocode returned a non-object body ({type(data).__name__})")
                return None
            name = data.get("display_name")
            return name if isinstance(name, str) and name else None
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Reverse geocode failed: {exc}")
            return None


# Global singleton
reverse_geocoder = ReverseGeocoder()
