"""Client for the Recherche d'entreprises business registry API."""

import logging
from typing import Any, Dict, Optional

import requests

from spe_cantines.core.config import get_settings
from spe_cantines.models import GeocodeResult, RegistryRecord

logger = logging.getLogger(__name__)
_SESSION = requests.Session()


class RegistryError(RuntimeError):
    """Raised when a registry lookup fails for a transient reason."""


class RegistryRateLimited(RegistryError):
    """Raised on HTTP 429."""


def lookup_siret(siret: str) -> Optional[RegistryRecord]:
    """Return legal category and coordinates for siret, or None when unknown."""
    settings = get_settings()
    params = {"q": siret, "mtm_campaign": "spe-dashboard"}
    try:
        response = _SESSION.get(f"{settings.recherche_entreprises_url}/search", params=params, timeout=settings.http_timeout)
    except requests.RequestException as exc:
        raise RegistryError(f"lookup failed for {siret}: {exc}") from exc

    if response.status_code == 429:
        raise RegistryRateLimited(f"rate limited while looking up {siret}")
    if not 200 <= response.status_code < 300:
        raise RegistryError(f"lookup for {siret} returned status {response.status_code}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise RegistryError(f"malformed response for {siret}: {exc}") from exc
    if not isinstance(payload, dict):
        raise RegistryError(f"unexpected response shape for {siret}")

    results = payload.get("results") or []
    if not results:
        logger.debug("No registry result for %s", siret)
        return None
    if not isinstance(results[0], dict):
        raise RegistryError(f"unexpected result shape for {siret}")
    return parse_registry_result(siret, results[0])


def parse_registry_result(siret: str, result: Dict[str, Any]) -> RegistryRecord:
    """Pick coordinates for siret out of one search result.

    Precedence: the head office when it carries the same SIRET, then the
    matching establishment with that SIRET, then the head office of the same
    legal unit as an approximation.
    """
    legal_category = _strip_or_none(result.get("nature_juridique") or result.get("categorie_juridique"))
    siege = result.get("siege") or {}

    geocode = None
    if siege.get("siret") == siret:
        geocode = _geocode_from(siege, precision="address")
    if geocode is None:
        for match in result.get("matching_etablissements") or []:
            if match.get("siret") == siret:
                geocode = _geocode_from(match, precision="address")
                break
    if geocode is None and siege.get("siret") != siret:
        geocode = _geocode_from(siege, precision="municipality")

    return RegistryRecord(siret=siret, legal_category=legal_category, geocode=geocode)


def _geocode_from(entry: Dict[str, Any], precision: str) -> Optional[GeocodeResult]:
    latitude = _safe_float(entry.get("latitude"))
    longitude = _safe_float(entry.get("longitude"))
    if latitude is None or longitude is None:
        return None
    return GeocodeResult(
        latitude=latitude,
        longitude=longitude,
        precision=precision,
        source_address=_strip_or_none(entry.get("geo_adresse") or entry.get("adresse")),
        commune_name=_strip_or_none(entry.get("libelle_commune")),
    )


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None
