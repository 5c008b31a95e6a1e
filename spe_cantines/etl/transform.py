"""Utilities for turning tabular API rows into pipeline models."""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from spe_cantines.core.config import AVAILABLE_TD_YEARS
from spe_cantines.models import Declaration, Establishment

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"True", "true", "1"}
_YEAR_IN_COLUMN = re.compile(r"(\d{4})")


def is_true_value(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value in TRUE_STRINGS)


def is_missing(value: Any) -> bool:
    return value is None or value == "" or value == "-"


def detect_declared_years(row: Dict[str, Any]) -> frozenset:
    """Years whose registry column (e.g. `declaration_donnees_2023`) is true."""
    years = set()
    for key, value in row.items():
        match = _YEAR_IN_COLUMN.search(str(key))
        if match and match.group(1) in AVAILABLE_TD_YEARS and is_true_value(value):
            years.add(match.group(1))
    return frozenset(years)


def to_establishment(row: Dict[str, Any], position: int) -> Establishment:
    identifier = row.get("id") or row.get("__id") or position
    return Establishment(
        id=str(identifier),
        siret=_siret_or_none(row.get("siret")),
        name=_strip_or_none(row.get("name")),
        city=_strip_or_none(row.get("city")),
        city_insee_code=_strip_or_none(row.get("city_insee_code")),
        department=_strip_or_none(row.get("department")),
        region_lib=_strip_or_none(row.get("region_lib")),
        line_ministry=_strip_or_none(row.get("line_ministry")),
        sector_list=_strip_or_none(row.get("sector_list")),
        management_type=_strip_or_none(row.get("management_type")),
        production_type=_strip_or_none(row.get("production_type")),
        economic_model=_strip_or_none(row.get("economic_model")),
        active_on_ma_cantine=row.get("active_on_ma_cantine"),
        daily_meal_count=_safe_float(row.get("daily_meal_count")),
        yearly_meal_count=_safe_float(row.get("yearly_meal_count")),
        declared_years=detect_declared_years(row),
        raw_snapshot=row,
    )


def to_establishments(rows: Iterable[Dict[str, Any]]) -> List[Establishment]:
    return [to_establishment(row, position) for position, row in enumerate(rows)]


def to_declaration(row: Dict[str, Any], year: str) -> Optional[Declaration]:
    siret = _siret_or_none(row.get("canteen_siret"))
    if not siret:
        return None
    return Declaration(
        canteen_siret=siret,
        year=year,
        ratio_bio=_safe_float(row.get("teledeclaration_ratio_bio")),
        ratio_egalim_non_bio=_safe_float(row.get("teledeclaration_ratio_egalim_hors_bio")),
        declaration_type=_strip_or_none(row.get("teledeclaration_type")),
    )


def index_declarations(rows: Iterable[Dict[str, Any]], year: str) -> Dict[str, Declaration]:
    """Map canteen SIRET to its declaration; later rows win on duplicates."""
    indexed: Dict[str, Declaration] = {}
    skipped = 0
    for row in rows:
        declaration = to_declaration(row, year)
        if declaration is None:
            skipped += 1
            continue
        indexed[declaration.canteen_siret] = declaration
    if skipped:
        logger.debug("Skipped %d declarations without canteen SIRET", skipped)
    return indexed


def _siret_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return _strip_or_none(value)


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "" or value == "-":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None
