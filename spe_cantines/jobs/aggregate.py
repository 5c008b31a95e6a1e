"""Cohort aggregation job: fetch, enrich, rank and summarise establishments."""

from __future__ import annotations

import argparse
import json
import logging
import re
import threading
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from spe_cantines.core.cache import BoundedCache, JsonFileCache
from spe_cantines.core.cancellation import CancellationToken
from spe_cantines.core.config import AVAILABLE_TD_YEARS, Settings, get_settings
from spe_cantines.core.geo_resolver import GeocodeBatch, GeoResolver
from spe_cantines.core.page_fetcher import PageFetcher
from spe_cantines.etl import transform
from spe_cantines.etl.classify import SpeClassifier
from spe_cantines.etl.quality import audit
from spe_cantines.etl.ranking import priority, rank
from spe_cantines.etl.stats import build_statistics
from spe_cantines.models import (
    AggregationResult,
    Cohort,
    Declaration,
    EnrichedEstablishment,
    Establishment,
    GeocodeResult,
    RegistryRecord,
)
from spe_cantines.vendors import tabular_api
from spe_cantines.vendors.tabular_api import TabularApiError

logger = logging.getLogger(__name__)

MINISTRIES = (
    "Enseignement supérieur et Recherche",
    "Intérieur et Outre-mer",
    "Économie et finances",
    "Agriculture, Alimentation et Forêts",
    "Services du Premier Ministre",
    "Justice",
    "Sport",
    "Environnement",
    "Éducation et Jeunesse",
    "Affaires étrangères",
    "Travail",
    "Culture",
    "Fonction Publiques",
    "Santé et Solidarités",
    "Présidence de la république - Autorités indépendantes (AAI, API)",
    "Cohésion des territoires - Relations avec les collectivités territoriales",
    "Mer",
)

REGIONS = (
    "Île-de-France",
    "Auvergne-Rhône-Alpes",
    "Nouvelle-Aquitaine",
    "Occitanie",
    "Provence-Alpes-Côte d'Azur",
    "Hauts-de-France",
    "Pays de la Loire",
    "Bretagne",
    "Bourgogne-Franche-Comté",
    "Grand Est",
    "Normandie",
    "Centre-Val de Loire",
    "La Réunion",
    "Corse",
    "Martinique",
    "Guadeloupe",
    "Guyane",
    "Mayotte",
)


def normalize_filename(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"_+", "_", re.sub(r"[^a-zA-Z0-9]", "_", ascii_only)).strip("_")


def _record_to_json(record: RegistryRecord) -> Dict[str, Any]:
    return asdict(record)


def _record_from_json(data: Dict[str, Any]) -> RegistryRecord:
    geocode = data.get("geocode")
    return RegistryRecord(
        siret=data["siret"],
        legal_category=data.get("legal_category"),
        geocode=GeocodeResult(**geocode) if geocode else None,
    )


def build_resolver(settings: Settings) -> GeoResolver:
    """Resolver with in-memory caches, or file-backed ones when a path is configured."""
    capacity = settings.geocode_cache_capacity
    if settings.geocode_cache_path:
        base = Path(settings.geocode_cache_path)
        siret_cache = JsonFileCache(base / "siret_coords.json", _record_to_json, _record_from_json, capacity)
        insee_cache = JsonFileCache(base / "communes_coords.json", asdict, lambda data: GeocodeResult(**data), capacity)
    else:
        siret_cache = BoundedCache(capacity)
        insee_cache = BoundedCache(capacity)
    return GeoResolver(
        siret_cache=siret_cache,
        insee_cache=insee_cache,
        retry_backoff=settings.geocode_retry_backoff,
    )


def _log_progress(fetched: int, total: int, page: int) -> None:
    logger.info("%d / %d rows (page %d)", fetched, total, page)


class AggregationOrchestrator:
    """Turns a (cohort, year) selection into a ranked, enriched result."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher: Optional[PageFetcher] = None,
        resolver: Optional[GeoResolver] = None,
        classifier: Optional[SpeClassifier] = None,
        geocode: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.fetcher = fetcher or PageFetcher()
        self.resolver = resolver or build_resolver(self.settings)
        self.classifier = classifier or SpeClassifier(self.settings.out_of_scope_codes)
        self.geocode = geocode

    def aggregate(
        self,
        cohort: Cohort,
        year: str,
        token: Optional[CancellationToken] = None,
        progress=None,
    ) -> AggregationResult:
        token = token or CancellationToken()
        logger.info("Aggregating cohort=%s mode=%s year=%s", cohort.label, cohort.mode, year)

        fetched = self.fetcher.fetch_all(
            self.settings.establishment_resource_ids,
            cohort.establishment_filters(),
            page_size=self.settings.page_size,
            max_pages=self.settings.max_establishment_pages,
            progress=progress or _log_progress,
            token=token,
        )
        establishments = transform.to_establishments(fetched.records)
        declarations, declarations_available = self._fetch_declarations(cohort, year, token)
        token.raise_if_cancelled()

        if self.geocode and establishments:
            batch = self.resolver.resolve_batch(establishments, token)
        else:
            batch = GeocodeBatch()
            batch.stats.unresolved = len(establishments)

        rows = [self._enrich(est, batch, declarations, year) for est in establishments]
        ranked = rank(rows)
        statistics = build_statistics(
            cohort, year, ranked, fetched.total_count, AVAILABLE_TD_YEARS, declarations_available
        )
        token.raise_if_cancelled()

        return AggregationResult(
            cohort=cohort,
            year=year,
            establishments=ranked,
            total_count=fetched.total_count,
            statistics=statistics,
            geocode_stats=batch.stats,
            exports=export_links(cohort, year, self.settings, fetched.resource_id),
            partial=fetched.partial,
        )

    def _fetch_declarations(
        self, cohort: Cohort, year: str, token: CancellationToken
    ) -> Tuple[Dict[str, Declaration], bool]:
        resource_id = self.settings.td_resources.get(year)
        if not resource_id:
            logger.warning("No télédéclaration resource for year %s; skipping declarations", year)
            return {}, False
        try:
            fetched = self.fetcher.fetch_all(
                [resource_id],
                cohort.declaration_filters(),
                page_size=self.settings.page_size,
                max_pages=self.settings.max_declaration_pages,
                token=token,
            )
        except TabularApiError as exc:
            logger.warning("Declarations for %s unavailable: %s", year, exc)
            return {}, False
        return transform.index_declarations(fetched.records, year), True

    def _enrich(
        self,
        establishment: Establishment,
        batch: GeocodeBatch,
        declarations: Dict[str, Declaration],
        year: str,
    ) -> EnrichedEstablishment:
        record = batch.registry.get(establishment.well_formed_siret) if establishment.well_formed_siret else None
        classification = self.classifier.classify(establishment, record.legal_category if record else None)
        flags = audit(establishment)
        declaration = declarations.get(establishment.siret) if establishment.siret else None
        has_declaration = declaration is not None or year in establishment.declared_years
        return EnrichedEstablishment(
            establishment=establishment,
            classification=classification,
            flags=flags,
            geocode=batch.results.get(establishment.id),
            declaration=declaration,
            has_declaration=has_declaration,
            priority=priority(classification, flags, has_declaration),
        )

    def compare_ministries(self, year: str, ministries: Sequence[str] = MINISTRIES) -> List[Dict[str, Any]]:
        """Declaration rate per ministry, best first."""
        resource_id = self.settings.td_resources.get(year)

        def _count(ministry: str) -> Optional[Dict[str, Any]]:
            cohort = Cohort.for_ministry(ministry)
            try:
                total = tabular_api.count_rows(self.settings.cantines_resource_id, cohort.establishment_filters())
            except TabularApiError as exc:
                logger.warning("Count failed for %s: %s", ministry, exc)
                return None
            if total == 0:
                return None
            declared = 0
            if resource_id:
                try:
                    declared = tabular_api.count_rows(resource_id, cohort.declaration_filters())
                except TabularApiError as exc:
                    logger.warning("Declaration count failed for %s: %s", ministry, exc)
            return {"ministry": ministry, "total": total, "declared": declared, "rate": round(declared / total * 100, 1)}

        with ThreadPoolExecutor(max_workers=4) as executor:
            results = [row for row in executor.map(_count, ministries) if row is not None]
        return sorted(results, key=lambda row: -row["rate"])


def export_links(
    cohort: Cohort, year: str, settings: Settings, resource_id: Optional[str] = None
) -> Dict[str, Dict[str, str]]:
    """CSV downloads built from the same filters as the JSON fetch."""
    slug = normalize_filename(cohort.label)
    links = {
        "establishments": {
            "url": tabular_api.csv_export_url(resource_id or settings.cantines_resource_id, cohort.establishment_filters()),
            "filename": f"etablissements_{slug}.csv",
        }
    }
    td_resource = settings.td_resources.get(year)
    if td_resource:
        links["declarations"] = {
            "url": tabular_api.csv_export_url(td_resource, cohort.declaration_filters()),
            "filename": f"teledeclarations_campagne{int(year) + 1}_{slug}.csv",
        }
    return links


class CohortLoader:
    """Runs one load at a time; a new selection cancels the one in flight."""

    def __init__(self, orchestrator: AggregationOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._lock = threading.Lock()
        self._inflight: Optional[CancellationToken] = None

    def load(self, cohort: Cohort, year: str) -> AggregationResult:
        token = CancellationToken()
        with self._lock:
            if self._inflight is not None:
                logger.info("Cancelling in-flight load superseded by cohort=%s", cohort.label)
                self._inflight.cancel()
            self._inflight = token
        try:
            return self.orchestrator.aggregate(cohort, year, token)
        finally:
            with self._lock:
                if self._inflight is token:
                    self._inflight = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Aggregate SPE canteen establishments for one cohort")
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--ministry", dest="ministry", help="Line ministry to analyse")
    scope.add_argument("--region", dest="region", help="Region whose ATE establishments to analyse")
    parser.add_argument(
        "--year",
        dest="year",
        default=get_settings().default_year,
        help="Télédéclaration data year",
    )
    parser.add_argument("--skip-geocoding", dest="skip_geocoding", action="store_true", help="Do not geocode")
    parser.add_argument("--limit", dest="limit", type=int, help="Maximum establishments written to the output")
    parser.add_argument("--output", dest="output", help="Write the JSON result to this file")
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    cohort = Cohort.for_ministry(args.ministry) if args.ministry else Cohort.for_region(args.region)
    orchestrator = AggregationOrchestrator(geocode=not args.skip_geocoding)
    try:
        result = orchestrator.aggregate(cohort, args.year)
    except TabularApiError as exc:
        logger.error("Cohort load failed (status=%s): %s", exc.status_code, exc)
        raise SystemExit(1) from exc

    quality = result.statistics["quality"]
    logger.info(
        "cohort=%s establishments=%d declared=%s quality_score=%d%%",
        cohort.label, len(result.establishments), result.statistics["declarations"]["count"], quality["quality_score"],
    )
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            json.dump(result.to_dict(limit=args.limit), fh, ensure_ascii=False, indent=2)
        logger.info("Wrote %s", args.output)


if __name__ == "__main__":
    main()
