"""Cohort-level statistics computed from enriched establishments."""

from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence

from spe_cantines.etl.classify import INTER_ADMINISTRATIVE_TERMS, contains_term, normalize
from spe_cantines.etl.quality import error_stats, round_half_up
from spe_cantines.etl.transform import is_true_value
from spe_cantines.models import Classification, Cohort, EnrichedEstablishment

# Loi EGalim art. 24 minimum shares (percent) for public collective catering.
EGALIM_BIO_OBJECTIVE = 20
EGALIM_DURABLE_OBJECTIVE = 50

# Yearly meals estimated from daily meals when the yearly count is missing.
DAYS_PER_YEAR_ESTIMATE = 200

# Inter-administrative restaurant targets set by the DGAFP per region.
RIA_TARGETS = {
    "Auvergne-Rhône-Alpes": 12,
    "Bourgogne-Franche-Comté": 4,
    "Bretagne": 5,
    "Centre-Val de Loire": 6,
    "Corse": 1,
    "Grand Est": 12,
    "Hauts-de-France": 4,
    "Île-de-France": 7,
    "Normandie": 7,
    "Nouvelle-Aquitaine": 12,
    "Occitanie": 9,
    "Provence-Alpes-Côte d'Azur": 4,
    "Pays de la Loire": 10,
}

MANAGEMENT_LABELS = {"direct": "Gestion directe", "conceded": "Gestion concédée"}
UNKNOWN_LABEL = "Non renseigné"


def _pct(count: int, total: int, digits: int = 1) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, digits)


def has_declaration_for(row: EnrichedEstablishment, year: str, selected_year: str) -> bool:
    if year == selected_year and row.has_declaration:
        return True
    return year in row.establishment.declared_years


def declaration_stats(rows: Sequence[EnrichedEstablishment], years: Iterable[str], selected_year: str) -> Dict[str, Any]:
    total = len(rows)
    history = []
    for year in years:
        count = sum(1 for row in rows if has_declaration_for(row, year, selected_year))
        history.append({"year": year, "count": count, "pct": _pct(count, total)})
    selected = sum(1 for row in rows if row.has_declaration)
    return {
        "selected_year": selected_year,
        "count": selected,
        "pct": _pct(selected, total),
        "history": history,
    }


def active_stats(rows: Sequence[EnrichedEstablishment]) -> Dict[str, Any]:
    count = sum(1 for row in rows if is_true_value(row.establishment.active_on_ma_cantine))
    return {"count": count, "pct": _pct(count, len(rows))}


def egalim_objectives(rows: Sequence[EnrichedEstablishment]) -> Dict[str, Any]:
    """How many declaring establishments meet the bio and durable objectives."""
    with_data = 0
    meets_bio = 0
    meets_durable = 0
    for row in rows:
        declaration = row.declaration
        if declaration is None or not declaration.has_ratios:
            continue
        with_data += 1
        bio = (declaration.ratio_bio or 0) * 100
        egalim = (declaration.ratio_egalim_non_bio or 0) * 100
        if bio >= EGALIM_BIO_OBJECTIVE:
            meets_bio += 1
        if bio + egalim >= EGALIM_DURABLE_OBJECTIVE:
            meets_durable += 1
    return {
        "total_with_data": with_data,
        "bio": {"objective": EGALIM_BIO_OBJECTIVE, "count": meets_bio, "pct": _pct(meets_bio, with_data, 0)},
        "durable": {"objective": EGALIM_DURABLE_OBJECTIVE, "count": meets_durable, "pct": _pct(meets_durable, with_data, 0)},
    }


def egalim_weighted_averages(rows: Sequence[EnrichedEstablishment]) -> Dict[str, Any]:
    """Meal-weighted bio and durable shares over declaring establishments."""
    sum_bio = 0.0
    sum_egalim = 0.0
    total_meals = 0.0
    count = 0
    for row in rows:
        declaration = row.declaration
        if declaration is None or declaration.ratio_bio is None:
            continue
        est = row.establishment
        meals = est.yearly_meal_count or ((est.daily_meal_count or 0) * DAYS_PER_YEAR_ESTIMATE)
        if meals <= 0:
            continue
        sum_bio += declaration.ratio_bio * meals
        sum_egalim += (declaration.ratio_egalim_non_bio or 0) * meals
        total_meals += meals
        count += 1

    if total_meals == 0:
        return {"bio": None, "egalim_non_bio": None, "durable": None, "count": 0, "total_meals": 0}
    bio = sum_bio / total_meals * 100
    egalim = sum_egalim / total_meals * 100
    return {
        "bio": round(bio, 1),
        "egalim_non_bio": round(egalim, 1),
        "durable": round(bio + egalim, 1),
        "count": count,
        "total_meals": int(total_meals),
    }


def _breakdown(labels: Iterable[str]) -> List[Dict[str, Any]]:
    counts = Counter(labels)
    # Counter keeps first-seen order, so ties stay in upstream order.
    return [{"label": label, "value": value} for label, value in sorted(counts.items(), key=lambda item: -item[1])]


def management_breakdown(rows: Sequence[EnrichedEstablishment]) -> List[Dict[str, Any]]:
    labels = []
    for row in rows:
        value = row.establishment.management_type
        labels.append(MANAGEMENT_LABELS.get(value, value) if value else UNKNOWN_LABEL)
    return _breakdown(labels)


def region_breakdown(rows: Sequence[EnrichedEstablishment]) -> List[Dict[str, Any]]:
    return _breakdown(row.establishment.region_lib or UNKNOWN_LABEL for row in rows)


def classification_breakdown(rows: Sequence[EnrichedEstablishment]) -> Dict[str, int]:
    counts = {label.value: 0 for label in Classification}
    for row in rows:
        counts[row.classification.value] += 1
    return counts


def meal_averages(rows: Sequence[EnrichedEstablishment]) -> Dict[str, int]:
    daily = [row.establishment.daily_meal_count for row in rows if row.establishment.daily_meal_count]
    yearly = [row.establishment.yearly_meal_count for row in rows if row.establishment.yearly_meal_count]
    return {
        "avg_daily": round_half_up(sum(daily) / len(daily)) if daily else 0,
        "avg_yearly": round_half_up(sum(yearly) / len(yearly)) if yearly else 0,
    }


def is_inter_administrative(sector_list: Optional[str]) -> bool:
    sectors = normalize(sector_list)
    return any(contains_term(sectors, term) for term in INTER_ADMINISTRATIVE_TERMS)


def ria_stats(rows: Sequence[EnrichedEstablishment], region: str) -> Dict[str, Any]:
    count = sum(1 for row in rows if is_inter_administrative(row.establishment.sector_list))
    target = RIA_TARGETS.get(region, 0)
    return {"count": count, "target": target, "pct": _pct(count, target)}


def build_statistics(
    cohort: Cohort,
    year: str,
    rows: Sequence[EnrichedEstablishment],
    total_count: int,
    years: Iterable[str],
    declarations_available: bool,
) -> Dict[str, Any]:
    statistics: Dict[str, Any] = {
        "total_api": total_count if total_count > 0 else len(rows),
        "total": len(rows),
        "declarations": declaration_stats(rows, years, year),
        "declarations_available": declarations_available,
        "active_accounts": active_stats(rows),
        "quality": error_stats(row.flags for row in rows),
        "classification": classification_breakdown(rows),
        "management_types": management_breakdown(rows),
        "meals": meal_averages(rows),
    }
    if declarations_available:
        statistics["egalim"] = egalim_objectives(rows)
        statistics["egalim_weighted"] = egalim_weighted_averages(rows)
    if cohort.mode == "ministry":
        statistics["regions"] = region_breakdown(rows)
    else:
        statistics["ria"] = ria_stats(rows, cohort.region)
    return statistics
