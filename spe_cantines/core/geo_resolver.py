"""Two-tier geocoding of establishments.

Tier 1 asks the business registry for the establishment's own SIRET and
yields address precision. Tier 2 falls back to the centroid of the commune
identified by the INSEE code. Successful answers are written to injected
caches, which are flushed once per batch; failed lookups are retried in a single pass after a backoff and are
never cached, so a later call looks them up again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from spe_cantines.core.cache import BoundedCache
from spe_cantines.core.cancellation import CancellationToken
from spe_cantines.models import Establishment, GeocodeResult, GeocodeStats, RegistryRecord
from spe_cantines.vendors import geo_api, recherche_entreprises
from spe_cantines.vendors.geo_api import GeoApiError
from spe_cantines.vendors.recherche_entreprises import RegistryError

logger = logging.getLogger(__name__)

SIRET_BATCH_SIZE = 10
SIRET_BATCH_DELAY = 0.2
INSEE_BATCH_SIZE = 50
INSEE_BATCH_DELAY = 0.1
RETRY_BACKOFF_SECONDS = 2.0

_TRANSIENT_ERRORS = (RegistryError, GeoApiError)


@dataclass(slots=True)
class GeocodeBatch:
    results: Dict[str, Optional[GeocodeResult]] = field(default_factory=dict)
    registry: Dict[str, RegistryRecord] = field(default_factory=dict)
    stats: GeocodeStats = field(default_factory=GeocodeStats)


@dataclass(frozen=True)
class _Tier:
    label: str
    lookup: Callable[[str], Any]
    cache: Any
    batch_size: int
    batch_delay: float


class GeoResolver:
    def __init__(
        self,
        registry_lookup: Optional[Callable[[str], Optional[RegistryRecord]]] = None,
        commune_lookup: Optional[Callable[[str], Optional[GeocodeResult]]] = None,
        siret_cache: Optional[Any] = None,
        insee_cache: Optional[Any] = None,
        *,
        siret_batch_size: int = SIRET_BATCH_SIZE,
        siret_batch_delay: float = SIRET_BATCH_DELAY,
        insee_batch_size: int = INSEE_BATCH_SIZE,
        insee_batch_delay: float = INSEE_BATCH_DELAY,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.siret_cache = siret_cache if siret_cache is not None else BoundedCache()
        self.insee_cache = insee_cache if insee_cache is not None else BoundedCache()
        self._siret_tier = _Tier(
            "SIRET",
            registry_lookup or recherche_entreprises.lookup_siret,
            self.siret_cache,
            siret_batch_size,
            siret_batch_delay,
        )
        self._insee_tier = _Tier(
            "INSEE",
            commune_lookup or geo_api.commune_centroid,
            self.insee_cache,
            insee_batch_size,
            insee_batch_delay,
        )
        self.retry_backoff = retry_backoff
        self.stats = GeocodeStats()
        self._lock = threading.Lock()
        self._inflight: Optional[CancellationToken] = None

    def registry_record(self, siret: Optional[str]) -> Optional[RegistryRecord]:
        if not siret:
            return None
        return self.siret_cache.get(siret)

    def cancel_inflight(self) -> None:
        with self._lock:
            if self._inflight is not None:
                self._inflight.cancel()

    def resolve_batch(
        self,
        establishments: Sequence[Establishment],
        token: Optional[CancellationToken] = None,
    ) -> GeocodeBatch:
        """Geocode every establishment; cancels any resolution already in flight."""
        token = token or CancellationToken()
        with self._lock:
            if self._inflight is not None and self._inflight is not token:
                self._inflight.cancel()
            self._inflight = token

        try:
            sirets = _unique(est.well_formed_siret for est in establishments)
            self._resolve_tier(self._siret_tier, [s for s in sirets if s not in self.siret_cache], token)

            insee_codes = _unique(
                _insee_code(est) for est in establishments if self._tier1_geocode(est) is None
            )
            self._resolve_tier(self._insee_tier, [c for c in insee_codes if c not in self.insee_cache], token)

            batch = self._assemble(establishments)
            token.raise_if_cancelled()
        finally:
            self.siret_cache.flush()
            self.insee_cache.flush()
            with self._lock:
                if self._inflight is token:
                    self._inflight = None

        with self._lock:
            self.stats.add(batch.stats)
        logger.info(
            "Geocoded %d establishments: address=%d municipality=%d unresolved=%d",
            len(establishments), batch.stats.by_address, batch.stats.by_municipality, batch.stats.unresolved,
        )
        return batch

    def _tier1_geocode(self, establishment: Establishment) -> Optional[GeocodeResult]:
        record = self.registry_record(establishment.well_formed_siret)
        return record.geocode if record else None

    def _assemble(self, establishments: Iterable[Establishment]) -> GeocodeBatch:
        batch = GeocodeBatch()
        for est in establishments:
            siret = est.well_formed_siret
            record = self.registry_record(siret)
            if record is not None:
                batch.registry[siret] = record
            geocode = record.geocode if record else None
            insee = _insee_code(est)
            if geocode is None and insee:
                geocode = self.insee_cache.get(insee)

            batch.results[est.id] = geocode
            if geocode is None:
                batch.stats.unresolved += 1
            elif geocode.precision == "address":
                batch.stats.by_address += 1
            else:
                batch.stats.by_municipality += 1
        return batch

    def _resolve_tier(self, tier: _Tier, keys: List[str], token: CancellationToken) -> None:
        if not keys:
            return
        failed = self._run_pass(tier, keys, token)
        if not failed:
            return
        logger.info("Retrying %d %s lookups after %.1fs backoff", len(failed), tier.label, self.retry_backoff)
        token.wait(self.retry_backoff)
        token.raise_if_cancelled()
        failed = self._run_pass(tier, failed, token)
        if failed:
            logger.warning("%d %s lookups still failing; leaving them unresolved", len(failed), tier.label)

    def _run_pass(self, tier: _Tier, keys: List[str], token: CancellationToken) -> List[str]:
        failed: List[str] = []
        for start in range(0, len(keys), tier.batch_size):
            token.raise_if_cancelled()
            chunk = keys[start:start + tier.batch_size]
            logger.debug("%s lookups %d/%d", tier.label, min(start + tier.batch_size, len(keys)), len(keys))
            with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
                outcomes = list(executor.map(lambda key: _attempt(tier, key), chunk))
            token.raise_if_cancelled()

            for key, (ok, value) in zip(chunk, outcomes):
                if not ok:
                    failed.append(key)
                elif value is not None:
                    tier.cache.put(key, value)

            if start + tier.batch_size < len(keys):
                token.wait(tier.batch_delay)
        return failed


def _attempt(tier: _Tier, key: str) -> Tuple[bool, Any]:
    try:
        return True, tier.lookup(key)
    except _TRANSIENT_ERRORS as exc:
        logger.debug("%s lookup for %s failed: %s", tier.label, key, exc)
        return False, None


def _insee_code(establishment: Establishment) -> Optional[str]:
    code = establishment.city_insee_code
    if code is None:
        return None
    code = str(code).strip()
    return code or None


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)
