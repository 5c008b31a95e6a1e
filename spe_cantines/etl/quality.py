"""Data-quality flags for registry rows."""

from typing import Dict, FrozenSet, Iterable

from spe_cantines.etl.transform import is_missing, is_true_value
from spe_cantines.models import Establishment, QualityFlag


_MULTI_SECTOR_DELIMITERS = (",", ";", "|")


def has_multiple_sectors(sector_list) -> bool:
    if not sector_list:
        return False
    return any(delimiter in sector_list for delimiter in _MULTI_SECTOR_DELIMITERS)


def audit(establishment: Establishment) -> FrozenSet[QualityFlag]:
    flags = set()
    if not is_true_value(establishment.active_on_ma_cantine):
        flags.add(QualityFlag.INACTIVE_ACCOUNT)
    if is_missing(establishment.siret):
        flags.add(QualityFlag.MISSING_SIRET)
    if is_missing(establishment.name):
        flags.add(QualityFlag.MISSING_NAME)
    if is_missing(establishment.daily_meal_count):
        flags.add(QualityFlag.MISSING_MEAL_COUNT)
    if is_missing(establishment.production_type):
        flags.add(QualityFlag.MISSING_PRODUCTION_TYPE)
    if is_missing(establishment.management_type):
        flags.add(QualityFlag.MISSING_MANAGEMENT_TYPE)
    if is_missing(establishment.economic_model):
        flags.add(QualityFlag.MISSING_ECONOMIC_MODEL)
    elif establishment.economic_model != "public":
        flags.add(QualityFlag.NON_PUBLIC_ECONOMIC_MODEL)
    if has_multiple_sectors(establishment.sector_list):
        flags.add(QualityFlag.MULTIPLE_SECTORS)
    return frozenset(flags)


def round_half_up(value: float) -> int:
    return int(value + 0.5)


def quality_score(flagged: int, total: int) -> int:
    """Share of the cohort with at least one flag, as a rounded percentage."""
    if total <= 0:
        return 0
    return round_half_up(100 * flagged / total)


def error_stats(flag_sets: Iterable[FrozenSet[QualityFlag]]) -> Dict[str, object]:
    """Per-flag counts, number of flagged records and the cohort quality score."""
    counts = {flag.value: 0 for flag in QualityFlag}
    flagged = 0
    audited = 0
    for flags in flag_sets:
        audited += 1
        if flags:
            flagged += 1
        for flag in flags:
            counts[flag.value] += 1
    return {
        "errors": counts,
        "total": flagged,
        "audited": audited,
        "quality_score": quality_score(flagged, audited),
    }
