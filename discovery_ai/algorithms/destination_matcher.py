"""
Destination Matcher
Picks a Brazilian destination for a complete travel profile when the
assistant did not name one itself.

Algorithm Components:
1. Activity Match (60%) - share of the user's activities the destination offers
2. Purpose Match (25%) - destination suits the trip purpose
3. Budget Fit (15%) - budget covers the typical trip cost

The user's own origin is never recommended. Ties keep catalog order.
"""

from typing import List, NamedTuple, Sequence

from loguru import logger

from ..schemas.chat_schemas import CollectedData, Destination
from ..utils.chat_helpers import strip_accents


class CatalogEntry(NamedTuple):
    name: str
    iata: str
    activities: Sequence[str]
    purposes: Sequence[str]
    typical_cost_brl: int  # reais per person, flights + 5 nights


CATALOG: List[CatalogEntry] = [
    CatalogEntry("Florianópolis", "FLN", ("praia", "trilhas", "natureza", "vida noturna", "gastronomia"), ("lazer", "lua de mel", "família"), 2500),
    CatalogEntry("Rio de Janeiro", "GIG", ("praia", "trilhas", "vida noturna", "cultura", "compras"), ("lazer", "trabalho", "família"), 2800),
    CatalogEntry("Foz do Iguaçu", "IGU", ("natureza", "aventura", "trilhas", "compras"), ("lazer", "família"), 2200),
    CatalogEntry("Salvador", "SSA", ("praia", "cultura", "gastronomia", "vida noturna"), ("lazer", "família"), 2300),
    CatalogEntry("Natal", "NAT", ("praia", "aventura", "relaxamento"), ("lazer", "família", "lua de mel"), 2400),
    CatalogEntry("Maceió", "MCZ", ("praia", "mergulho", "relaxamento"), ("lazer", "lua de mel", "família"), 2600),
    CatalogEntry("Fortaleza", "FOR", ("praia", "aventura", "vida noturna"), ("lazer", "família"), 2300),
    CatalogEntry("Recife", "REC", ("praia", "cultura", "mergulho", "gastronomia"), ("lazer", "trabalho"), 2300),
    CatalogEntry("Manaus", "MAO", ("natureza", "aventura", "cultura"), ("lazer", "estudos"), 3200),
    CatalogEntry("Porto Seguro", "BPS", ("praia", "vida noturna", "relaxamento"), ("lazer", "família"), 2100),
    CatalogEntry("São Paulo", "GRU", ("gastronomia", "cultura", "compras", "vida noturna"), ("trabalho", "estudos", "lazer"), 1800),
    CatalogEntry("Brasília", "BSB", ("cultura",), ("trabalho", "estudos"), 1700),
    CatalogEntry("Belo Horizonte", "CNF", ("gastronomia", "cultura", "trilhas"), ("trabalho", "lazer"), 1600),
    CatalogEntry("Porto Alegre", "POA", ("gastronomia", "cultura"), ("trabalho", "família"), 1700),
]

DEFAULT_DESTINATION = Destination(name="Florianópolis", iata="FLN")


class DestinationScore(NamedTuple):
    entry: CatalogEntry
    activity_score: float  # 0.0-0.6
    purpose_score: float   # 0.0-0.25
    budget_score: float    # 0.0-0.15
    total: float


def _fold(values: Sequence[str]) -> List[str]:
    return [strip_accents(v) for v in values]


def score_destination(entry: CatalogEntry, profile: CollectedData) -> DestinationScore:
    wanted = set(_fold(profile.activities))
    offered = set(_fold(entry.activities))
    activity_score = 0.6 * (len(wanted & offered) / len(wanted)) if wanted else 0.0

    purpose_score = 0.0
    if profile.purpose and strip_accents(profile.purpose) in _fold(entry.purposes):
        purpose_score = 0.25

    budget_score = 0.0
    if profile.budget_in_brl:
        budget_reais = profile.budget_in_brl / 100
        budget_score = 0.15 * min(1.0, budget_reais / entry.typical_cost_brl)

    total = round(activity_score + purpose_score + budget_score, 4)
    return DestinationScore(entry, activity_score, purpose_score, budget_score, total)


def rank_destinations(profile: CollectedData) -> List[DestinationScore]:
    """All catalog destinations except the origin, best first"""
    candidates = [e for e in CATALOG if e.iata != profile.origin_iata]
    scored = [score_destination(entry, profile) for entry in candidates]
    # sorted() is stable, so equal totals keep catalog order
    return sorted(scored, key=lambda s: s.total, reverse=True)


def match_destination(profile: CollectedData) -> Destination:
    """
    Choose the best destination for a profile

    Args:
        profile: Collected travel profile (normally complete)

    Returns:
        Destination: Best catalog match

    Example:
        >>> profile = CollectedData(origin_iata="GRU", budget_in_brl=300000,
        ...                         activities=["trilhas"], purpose="lazer")
        >>> match_destination(profile).iata
        'FLN'
    """
    ranked = rank_destinations(profile)
    if not ranked:
        return DEFAULT_DESTINATION
    best = ranked[0]
    logger.info(
        f"Matched destination {best.entry.iata} (score={best.total:.2f}) "
        f"for activities={profile.activities} purpose={profile.purpose}"
    )
    return Destination(name=best.entry.name, iata=best.entry.iata)
