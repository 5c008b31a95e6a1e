"""Rule-based membership test for the Services Publics de l'État (SPE) perimeter.

Rules are evaluated in order and the first match decides the label. The
collectivity override comes first: territorial collectivities are never
confirmed, whatever else the record says. Every other rule can only confirm
a record, so adding evidence moves a record from review to confirmed and
never the other way round.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Tuple

from spe_cantines.models import Classification, Establishment

logger = logging.getLogger(__name__)

COLLECTIVITY_PREFIX = "72"

STATE_OPERATOR_ALIASES = (
    "afpa",
    "agence nationale pour la formation professionnelle",
)

STATE_OPERATORS = (
    "insee", "dgfip", "dgddi", "douane", "ddfip", "drfip",
    "dreal", "draaf", "ddt", "ddtm", "drac", "direccte",
    "dreets", "ddets", "ars", "dgac", "aviation civile",
    "gendarmerie", "police nationale", "crs",
)

JUSTICE_MINISTRY = "justice"
JUSTICE_FACILITY_PATTERNS = (
    re.compile(r"centre penitentiaire"),
    re.compile(r"centre de detention"),
    re.compile(r"maison\s*d'?\s*arret"),
    re.compile(r"etablissement penitentiaire"),
    re.compile(r"maison centrale"),
    re.compile(r"centre de semi-liberte"),
    re.compile(r"etablissement pour mineurs"),
    re.compile(r"\bmess\b"),
)
JUSTICE_ACRONYMS = ("cp", "cd", "ma", "mc", "csl", "epm")

INTER_ADMINISTRATIVE_TERMS = ("ria", "inter-administratif", "interadministratif")

STATE_ADMINISTRATION_SECTORS = (
    "administration centrale",
    "administration de l'etat",
    "ministere",
    "prefecture",
    "sous-prefecture",
    "etat",
)

STATE_SIRET_PREFIXES = ("11", "17", "18", "19")

# 71xx State and national public bodies, 73xx scientific, 74xx other national.
NATIONAL_PUBLIC_PREFIXES = ("71", "73", "74")
NATIONAL_PUBLIC_CODES = frozenset({
    "4110", "4120", "4130", "4140", "4150", "4160",
    "8411", "8412", "8413",
    "7112", "7120", "7150", "7160",
})

_SECTOR_DELIMITERS = re.compile(r"[,;|]")


def normalize(text: Optional[str]) -> str:
    """Lower-case, accent-free, typographic apostrophes folded."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", str(text).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.replace("’", "'").strip()


def contains_term(text: str, term: str) -> bool:
    """Whole-word match for acronyms, substring match for longer phrases."""
    if not text or not term:
        return False
    if " " not in term and len(term) <= 5:
        return re.search(rf"(?<![a-z0-9]){re.escape(term)}(?![a-z0-9])", text) is not None
    return term in text


def split_sectors(sector_list: Optional[str]) -> Tuple[str, ...]:
    if not sector_list:
        return ()
    return tuple(part.strip() for part in _SECTOR_DELIMITERS.split(sector_list) if part.strip())


@dataclass(frozen=True)
class Subject:
    """Normalized view of the fields the rules look at."""

    name: str
    sectors: str
    ministry: str
    siret: str
    legal_category: str

    @classmethod
    def build(cls, establishment: Establishment, legal_category: Optional[str]) -> "Subject":
        sectors = " | ".join(normalize(part) for part in split_sectors(establishment.sector_list))
        return cls(
            name=normalize(establishment.name),
            sectors=sectors,
            ministry=normalize(establishment.line_ministry),
            siret=str(establishment.siret or "").strip(),
            legal_category=str(legal_category or "").strip(),
        )


@dataclass(frozen=True)
class Rule:
    name: str
    label: Classification
    predicate: Callable[[Subject], bool]


def _any_term(text: str, terms: Iterable[str]) -> bool:
    return any(contains_term(text, term) for term in terms)


def is_collectivity(subject: Subject) -> bool:
    return subject.legal_category.startswith(COLLECTIVITY_PREFIX)


def has_operator_name(subject: Subject) -> bool:
    return _any_term(subject.name, STATE_OPERATOR_ALIASES + STATE_OPERATORS)


def is_justice_facility(subject: Subject) -> bool:
    if subject.ministry != JUSTICE_MINISTRY:
        return False
    if any(pattern.search(subject.name) for pattern in JUSTICE_FACILITY_PATTERNS):
        return True
    return _any_term(subject.name, JUSTICE_ACRONYMS)


def has_operator_sector(subject: Subject) -> bool:
    return _any_term(subject.sectors, STATE_OPERATORS)


def is_inter_administrative(subject: Subject) -> bool:
    return _any_term(subject.sectors, INTER_ADMINISTRATIVE_TERMS)


def has_state_siret(subject: Subject) -> bool:
    return subject.siret.startswith(STATE_SIRET_PREFIXES)


def has_state_administration_sector(subject: Subject) -> bool:
    return _any_term(subject.sectors, STATE_ADMINISTRATION_SECTORS)


def is_national_public_body(subject: Subject) -> bool:
    code = subject.legal_category
    return code.startswith(NATIONAL_PUBLIC_PREFIXES) or code in NATIONAL_PUBLIC_CODES


DEFAULT_RULES: Tuple[Rule, ...] = (
    Rule("collectivity_override", Classification.NEEDS_REVIEW, is_collectivity),
    Rule("operator_name", Classification.CONFIRMED_IN_SCOPE, has_operator_name),
    Rule("justice_facility", Classification.CONFIRMED_IN_SCOPE, is_justice_facility),
    Rule("operator_sector", Classification.CONFIRMED_IN_SCOPE, has_operator_sector),
    Rule("inter_administrative_restaurant", Classification.CONFIRMED_IN_SCOPE, is_inter_administrative),
    Rule("state_siret_prefix", Classification.CONFIRMED_IN_SCOPE, has_state_siret),
    Rule("state_administration_sector", Classification.CONFIRMED_IN_SCOPE, has_state_administration_sector),
    Rule("national_public_body", Classification.CONFIRMED_IN_SCOPE, is_national_public_body),
)

FALLBACK_RULE = "no_match"


class SpeClassifier:
    """Ordered rule list; optional out-of-scope legal categories.

    `out_of_scope_codes` holds legal-category prefixes or exact codes. When it
    is empty, only the in-scope and needs-review labels are ever produced.
    """

    def __init__(self, out_of_scope_codes: Sequence[str] = (), rules: Sequence[Rule] = DEFAULT_RULES) -> None:
        self.out_of_scope_codes = tuple(code.strip() for code in out_of_scope_codes if code and code.strip())
        rules = tuple(rules)
        if self.out_of_scope_codes:
            rules += (Rule("out_of_scope_legal_category", Classification.CONFIRMED_OUT_OF_SCOPE, self._is_out_of_scope),)
        self.rules = rules

    def _is_out_of_scope(self, subject: Subject) -> bool:
        return bool(subject.legal_category) and subject.legal_category.startswith(self.out_of_scope_codes)

    def explain(self, establishment: Establishment, legal_category: Optional[str] = None) -> Tuple[Classification, str]:
        """Return the label and the name of the rule that produced it."""
        subject = Subject.build(establishment, legal_category)
        for rule in self.rules:
            if rule.predicate(subject):
                return rule.label, rule.name
        return Classification.NEEDS_REVIEW, FALLBACK_RULE

    def classify(self, establishment: Establishment, legal_category: Optional[str] = None) -> Classification:
        label, rule_name = self.explain(establishment, legal_category)
        logger.debug("Classified %s as %s (%s)", establishment.id, label.value, rule_name)
        return label


_DEFAULT = SpeClassifier()


def classify(establishment: Establishment, legal_category: Optional[str] = None) -> Classification:
    return _DEFAULT.classify(establishment, legal_category)
