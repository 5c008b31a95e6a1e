"""Free-text and sector filtering over an enriched cohort."""

from typing import Iterable, List, Optional, Sequence

from spe_cantines.etl.classify import split_sectors
from spe_cantines.models import EnrichedEstablishment


def available_sectors(rows: Iterable[EnrichedEstablishment]) -> List[str]:
    sectors = set()
    for row in rows:
        sectors.update(split_sectors(row.establishment.sector_list))
    return sorted(sectors)


def matches_query(row: EnrichedEstablishment, query: str) -> bool:
    """Case-insensitive match on name or city, substring match on SIRET."""
    est = row.establishment
    needle = query.lower()
    return (
        (est.name is not None and needle in est.name.lower())
        or (est.siret is not None and query in est.siret)
        or (est.city is not None and needle in est.city.lower())
    )


def filter_establishments(
    rows: Sequence[EnrichedEstablishment],
    query: Optional[str] = None,
    sectors: Sequence[str] = (),
) -> List[EnrichedEstablishment]:
    """Keep rows matching the query and any of the sectors, in their current order."""
    filtered = list(rows)
    query = (query or "").strip()
    if query:
        filtered = [row for row in filtered if matches_query(row, query)]
    if sectors:
        filtered = [
            row for row in filtered
            if row.establishment.sector_list and any(sector in row.establishment.sector_list for sector in sectors)
        ]
    return filtered
