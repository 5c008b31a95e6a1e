"""Core data models shared by the canteen aggregation pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

ATE_MINISTRY = "Préfecture - Administration Territoriale de l'État (ATE)"


class Classification(str, enum.Enum):
    CONFIRMED_IN_SCOPE = "CONFIRMED_IN_SCOPE"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    CONFIRMED_OUT_OF_SCOPE = "CONFIRMED_OUT_OF_SCOPE"


class QualityFlag(str, enum.Enum):
    INACTIVE_ACCOUNT = "inactive_account"
    MISSING_SIRET = "missing_siret"
    MISSING_NAME = "missing_name"
    MISSING_MEAL_COUNT = "missing_meal_count"
    MISSING_PRODUCTION_TYPE = "missing_production_type"
    MISSING_MANAGEMENT_TYPE = "missing_management_type"
    MISSING_ECONOMIC_MODEL = "missing_economic_model"
    NON_PUBLIC_ECONOMIC_MODEL = "non_public_economic_model"
    MULTIPLE_SECTORS = "multiple_sectors"


@dataclass(slots=True)
class Establishment:
    """Normalized snapshot of one row of the national canteen registry."""

    id: str
    siret: Optional[str] = None
    name: Optional[str] = None
    city: Optional[str] = None
    city_insee_code: Optional[str] = None
    department: Optional[str] = None
    region_lib: Optional[str] = None
    line_ministry: Optional[str] = None
    sector_list: Optional[str] = None
    management_type: Optional[str] = None
    production_type: Optional[str] = None
    economic_model: Optional[str] = None
    active_on_ma_cantine: Any = None
    daily_meal_count: Optional[float] = None
    yearly_meal_count: Optional[float] = None
    declared_years: FrozenSet[str] = frozenset()
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def well_formed_siret(self) -> Optional[str]:
        """The SIRET when it is exactly 14 digits, otherwise None."""
        if self.siret is None:
            return None
        value = str(self.siret).strip()
        if len(value) == 14 and value.isdigit():
            return value
        return None


@dataclass(slots=True)
class Declaration:
    """One télédéclaration for a canteen and a reporting year."""

    canteen_siret: str
    year: str
    ratio_bio: Optional[float] = None
    ratio_egalim_non_bio: Optional[float] = None
    declaration_type: Optional[str] = None

    @property
    def has_ratios(self) -> bool:
        return self.ratio_bio is not None or self.ratio_egalim_non_bio is not None


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    precision: str  # "address" or "municipality"
    source_address: Optional[str] = None
    commune_name: Optional[str] = None

    @property
    def coordinates(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class RegistryRecord:
    """Business registry answer for one SIRET: legal category and location."""

    siret: str
    legal_category: Optional[str] = None
    geocode: Optional[GeocodeResult] = None


@dataclass(slots=True)
class GeocodeStats:
    by_address: int = 0
    by_municipality: int = 0
    unresolved: int = 0

    def add(self, other: "GeocodeStats") -> None:
        self.by_address += other.by_address
        self.by_municipality += other.by_municipality
        self.unresolved += other.unresolved


@dataclass(slots=True)
class FetchResult:
    records: List[Dict[str, Any]]
    total_count: int
    pages_fetched: int
    partial: bool = False
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class Cohort:
    """Selection of establishments: one line ministry, or one region's ATE."""

    mode: str
    ministry: Optional[str] = None
    region: Optional[str] = None

    def __post_init__(self) -> None:
        if self.mode not in {"ministry", "region"}:
            raise ValueError(f"unknown cohort mode: {self.mode}")
        if self.mode == "ministry" and not self.ministry:
            raise ValueError("ministry cohorts require a ministry")
        if self.mode == "region" and not self.region:
            raise ValueError("region cohorts require a region")

    @classmethod
    def for_ministry(cls, ministry: str) -> "Cohort":
        return cls(mode="ministry", ministry=ministry)

    @classmethod
    def for_region(cls, region: str) -> "Cohort":
        return cls(mode="region", region=region)

    @property
    def label(self) -> str:
        return self.ministry if self.mode == "ministry" else self.region

    def establishment_filters(self) -> List[Tuple[str, str]]:
        if self.mode == "ministry":
            return [("line_ministry__exact", self.ministry)]
        return [("line_ministry__exact", ATE_MINISTRY), ("region_lib__exact", self.region)]

    def declaration_filters(self) -> List[Tuple[str, str]]:
        if self.mode == "ministry":
            return [("canteen_line_ministry__exact", self.ministry)]
        return [
            ("canteen_line_ministry__exact", ATE_MINISTRY),
            ("canteen_region_lib__exact", self.region),
        ]


@dataclass(slots=True)
class EnrichedEstablishment:
    establishment: Establishment
    classification: Classification
    flags: FrozenSet[QualityFlag]
    geocode: Optional[GeocodeResult] = None
    declaration: Optional[Declaration] = None
    has_declaration: bool = False
    priority: int = 0

    def to_dict(self) -> Dict[str, Any]:
        est = self.establishment
        return {
            "id": est.id,
            "siret": est.siret,
            "name": est.name,
            "city": est.city,
            "city_insee_code": est.city_insee_code,
            "department": est.department,
            "region_lib": est.region_lib,
            "line_ministry": est.line_ministry,
            "sector_list": est.sector_list,
            "management_type": est.management_type,
            "production_type": est.production_type,
            "economic_model": est.economic_model,
            "daily_meal_count": est.daily_meal_count,
            "yearly_meal_count": est.yearly_meal_count,
            "declared_years": sorted(est.declared_years),
            "classification": self.classification.value,
            "flags": sorted(flag.value for flag in self.flags),
            "geocode": asdict(self.geocode) if self.geocode else None,
            "declaration": asdict(self.declaration) if self.declaration else None,
            "has_declaration": self.has_declaration,
            "priority": self.priority,
        }


@dataclass(slots=True)
class AggregationResult:
    cohort: Cohort
    year: str
    establishments: List[EnrichedEstablishment]
    total_count: int
    statistics: Dict[str, Any]
    geocode_stats: GeocodeStats
    exports: Dict[str, Dict[str, str]] = field(default_factory=dict)
    partial: bool = False

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        rows = self.establishments if limit is None else self.establishments[:limit]
        return {
            "cohort": asdict(self.cohort),
            "year": self.year,
            "total_count": self.total_count,
            "partial": self.partial,
            "statistics": self.statistics,
            "geocode_stats": asdict(self.geocode_stats),
            "exports": self.exports,
            "establishments": [row.to_dict() for row in rows],
        }
