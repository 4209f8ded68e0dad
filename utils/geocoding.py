"""Optional reverse geocoding used to fill in a report address."""
from __future__ import annotations

from typing import Optional

import requests
from flask import current_app


class GeocodingError(Exception):
    """Raised when the geocoder cannot resolve coordinates."""


def reverse_geocode(latitude: float, longitude: float) -> dict:
    url = current_app.config.get("GEOCODER_URL")
    if not url:
        raise GeocodingError("Geocoder URL not configured")
    try:
        response = requests.get(
            url,
            params={"lat": latitude, "lon": longitude, "format": "jsonv2", "zoom": 18},
            headers={"User-Agent": current_app.config.get("GEOCODER_USER_AGENT", "traffic-alert-api")},
            timeout=float(current_app.config.get("GEOCODER_TIMEOUT", 5)),
        )
    except requests.RequestException as exc:
        raise GeocodingError(f"Reverse geocoding request failed: {exc}") from exc

    if response.status_code != 200:
        raise GeocodingError(f"Reverse geocoding failed: HTTP {response.status_code}")
    try:
        body = response.json()
    except ValueError as exc:
        raise GeocodingError("Reverse geocoding returned invalid JSON") from exc
    if not isinstance(body, dict) or not body.get("display_name"):
        raise GeocodingError("Reverse geocoding returned no result")
    return {
        "formatted_address": body["display_name"],
        "place_id": body.get("place_id"),
        "components": body.get("address") or {},
    }


def address_for(latitude: float, longitude: float, max_length: int = 200) -> Optional[str]:
    """Best-effort address lookup; returns None when disabled or on any geocoder failure."""
    if not current_app.config.get("GEOCODING_ENABLED"):
        return None
    try:
        result = reverse_geocode(latitude, longitude)
    except GeocodingError as exc:
        current_app.logger.warning("Reverse geocoding skipped", extra={"error": str(exc)})
        return None
    return result["formatted_address"][:max_length]
