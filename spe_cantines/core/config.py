"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Registre national des cantines (XLSX resource, refreshed daily).
CANTINES_RESOURCE_ID = "408dca92-9028-4f66-93bf-f671111393ec"

# Télédéclaration resources keyed by data year (campaign N+1 publishes year N).
TD_RESOURCES: Dict[str, str] = {
    "2024": "078cbd12-b553-4d0b-b74c-e79b19f7f61f",
    "2023": "25570c1c-9288-4fed-9d82-0f42444e12ab",
    "2022": "84a09799-0845-4055-9101-e3a1a00fac2f",
    "2021": "efe63a1a-c307-4238-81b0-ffa8536163c7",
}

AVAILABLE_TD_YEARS: Tuple[str, ...] = ("2021", "2022", "2023", "2024", "2025")

# Upstream tabular API refuses page_size above 50.
MAX_PAGE_SIZE = 50


@dataclass(frozen=True)
class Settings:
    tabular_api_url: str = "https://tabular-api.data.gouv.fr/api/resources"
    cantines_resource_id: str = CANTINES_RESOURCE_ID
    cantines_fallback_resource_id: str = ""
    recherche_entreprises_url: str = "https://recherche-entreprises.api.gouv.fr"
    geo_api_url: str = "https://geo.api.gouv.fr"
    http_timeout: float = 10.0
    page_size: int = MAX_PAGE_SIZE
    max_establishment_pages: int = 100
    max_declaration_pages: int = 50
    geocode_cache_capacity: int = 5000
    geocode_cache_path: Optional[str] = None
    geocode_retry_backoff: float = 2.0
    out_of_scope_codes: Tuple[str, ...] = ()
    default_year: str = "2024"
    port: int = 8080
    td_resources: Dict[str, str] = field(default_factory=lambda: dict(TD_RESOURCES))

    @property
    def establishment_resource_ids(self) -> Tuple[str, ...]:
        """Preferred resource first, then the fallback when one is configured."""
        ids = [self.cantines_resource_id, self.cantines_fallback_resource_id]
        return tuple(rid for rid in ids if rid)


def _parse_codes(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(code.strip() for code in raw.split(",") if code.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    page_size = int(os.getenv("API_PAGE_SIZE", str(MAX_PAGE_SIZE)))
    if page_size > MAX_PAGE_SIZE:
        logger.warning("API_PAGE_SIZE=%d exceeds the upstream limit; using %d.", page_size, MAX_PAGE_SIZE)
        page_size = MAX_PAGE_SIZE

    default_year = os.getenv("DEFAULT_TD_YEAR", "2024").strip()
    if default_year not in TD_RESOURCES:
        logger.warning("DEFAULT_TD_YEAR=%s has no télédéclaration resource; EGalim stats will be empty.", default_year)

    out_of_scope_codes = _parse_codes(os.getenv("SPE_OUT_OF_SCOPE_CODES"))
    if out_of_scope_codes:
        logger.info("Out-of-scope legal categories enabled: %s", ", ".join(out_of_scope_codes))

    return Settings(
        tabular_api_url=os.getenv("TABULAR_API_URL", "https://tabular-api.data.gouv.fr/api/resources").rstrip("/"),
        cantines_resource_id=os.getenv("CANTINES_RESOURCE_ID", CANTINES_RESOURCE_ID),
        cantines_fallback_resource_id=os.getenv("CANTINES_FALLBACK_RESOURCE_ID", ""),
        recherche_entreprises_url=os.getenv(
            "RECHERCHE_ENTREPRISES_URL", "https://recherche-entreprises.api.gouv.fr"
        ).rstrip("/"),
        geo_api_url=os.getenv("GEO_API_URL", "https://geo.api.gouv.fr").rstrip("/"),
        http_timeout=float(os.getenv("HTTP_TIMEOUT", "10")),
        page_size=page_size,
        max_establishment_pages=int(os.getenv("MAX_ESTABLISHMENT_PAGES", "100")),
        max_declaration_pages=int(os.getenv("MAX_DECLARATION_PAGES", "50")),
        geocode_cache_capacity=int(os.getenv("GEOCODE_CACHE_CAPACITY", "5000")),
        geocode_cache_path=os.getenv("GEOCODE_CACHE_PATH") or None,
        geocode_retry_backoff=float(os.getenv("GEOCODE_RETRY_BACKOFF", "2.0")),
        out_of_scope_codes=out_of_scope_codes,
        default_year=default_year,
        port=int(os.getenv("PORT", "8080")),
    )
