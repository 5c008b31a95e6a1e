"""Client for the geo.api.gouv.fr commune endpoint."""

import logging
from typing import Optional

import requests

from spe_cantines.core.config import get_settings
from spe_cantines.models import GeocodeResult

logger = logging.getLogger(__name__)
_SESSION = requests.Session()


class GeoApiError(RuntimeError):
    """Raised when a commune lookup fails for a transient reason."""


class GeoApiRateLimited(GeoApiError):
    """Raised on HTTP 429."""


def commune_centroid(insee_code: str) -> Optional[GeocodeResult]:
    """Centroid of the commune, or None when the code is unknown."""
    settings = get_settings()
    url = f"{settings.geo_api_url}/communes/{insee_code}"
    try:
        response = _SESSION.get(url, params={"fields": "centre,nom"}, timeout=settings.http_timeout)
    except requests.RequestException as exc:
        raise GeoApiError(f"commune lookup failed for {insee_code}: {exc}") from exc

    if response.status_code == 404:
        logger.debug("Unknown INSEE code %s", insee_code)
        return None
    if response.status_code == 429:
        raise GeoApiRateLimited(f"rate limited while looking up commune {insee_code}")
    if not 200 <= response.status_code < 300:
        raise GeoApiError(f"commune lookup for {insee_code} returned status {response.status_code}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise GeoApiError(f"malformed response for commune {insee_code}: {exc}") from exc
    if not isinstance(payload, dict):
        raise GeoApiError(f"unexpected response shape for commune {insee_code}")

    centre = payload.get("centre") or {}
    coordinates = centre.get("coordinates") if isinstance(centre, dict) else None
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) < 2:
        return None
    try:
        # GeoJSON order is [lon, lat].
        latitude, longitude = float(coordinates[1]), float(coordinates[0])
    except (TypeError, ValueError) as exc:
        raise GeoApiError(f"unexpected centroid for commune {insee_code}: {coordinates!r}") from exc
    return GeocodeResult(
        latitude=latitude,
        longitude=longitude,
        precision="municipality",
        commune_name=payload.get("nom"),
    )
