"""Display ordering: problems first, compliant establishments last."""

from typing import AbstractSet, List, Sequence

from spe_cantines.models import Classification, EnrichedEstablishment, QualityFlag

PRIORITY_OUT_OF_SCOPE = 0
PRIORITY_NEEDS_REVIEW = 1
PRIORITY_DATA_ERRORS = 2
PRIORITY_MISSING_DECLARATION = 3
PRIORITY_COMPLIANT = 4


def priority(classification: Classification, flags: AbstractSet[QualityFlag], has_declaration: bool) -> int:
    if classification is Classification.CONFIRMED_OUT_OF_SCOPE:
        return PRIORITY_OUT_OF_SCOPE
    if classification is Classification.NEEDS_REVIEW:
        return PRIORITY_NEEDS_REVIEW
    if flags:
        return PRIORITY_DATA_ERRORS
    if not has_declaration:
        return PRIORITY_MISSING_DECLARATION
    return PRIORITY_COMPLIANT


def rank(rows: Sequence[EnrichedEstablishment]) -> List[EnrichedEstablishment]:
    """Stable sort on priority; equal priorities keep upstream order."""
    return sorted(rows, key=lambda row: row.priority)
