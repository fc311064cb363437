"""
Profile Accumulator
Merges partial travel profiles extracted turn by turn and decides
when the interview has enough information for a recommendation.

Merge rules:
1. Scalars (origin, budget, purpose) - incoming wins only when present
2. Set fields (activities, hobbies) - case-normalized union

Readiness gate (all four required):
origin_iata, budget_in_brl > 0, at least one activity, purpose
"""

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

from loguru import logger

from ..schemas.chat_schemas import CollectedData, ConversationStage, normalize_tags

SCALAR_FIELDS = ("origin_name", "origin_iata", "budget_in_brl", "purpose")
SET_FIELDS = ("activities", "hobbies")

# Required fields in the order the interview asks for them
REQUIRED_FIELDS = ("origin_iata", "budget_in_brl", "activities", "purpose")

QUESTION_KEYS = {
    "origin_iata": "origin",
    "budget_in_brl": "budget",
    "activities": "activities",
    "purpose": "purpose",
}

STAGE_BY_QUESTION = {
    "origin": ConversationStage.COLLECTING_ORIGIN,
    "budget": ConversationStage.COLLECTING_BUDGET,
    "activities": ConversationStage.COLLECTING_ACTIVITIES,
    "purpose": ConversationStage.COLLECTING_PURPOSE,
}

ProfileLike = Union[CollectedData, Mapping[str, Any]]


class CompletionStats(NamedTuple):
    """How much of the required profile is known"""
    completed: int
    total: int
    percentage: int
    missing_fields: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "missingFields": list(self.missing_fields),
        }


def _as_collected(data: Optional[ProfileLike]) -> CollectedData:
    if data is None:
        return CollectedData()
    if isinstance(data, CollectedData):
        return data
    return CollectedData.model_validate(dict(data))


def merge(existing: Optional[ProfileLike], incoming: Optional[ProfileLike]) -> CollectedData:
    """
    Combine an existing profile with a partial update

    Pure: neither argument is modified.

    Args:
        existing: Profile accumulated so far
        incoming: Partial profile from the latest turn (model, or mapping)

    Returns:
        CollectedData: Merged profile

    Example:
        >>> base = CollectedData(origin_iata="GRU", activities=["trilhas"])
        >>> merged = merge(base, {"activities": ["Praia"], "purpose": "lazer"})
        >>> merged.activities, merged.purpose
        (['praia', 'trilhas'], 'lazer')
    """
    current = _as_collected(existing)
    update = _as_collected(incoming)

    merged: Dict[str, Any] = current.model_dump()

    for field in SCALAR_FIELDS:
        value = getattr(update, field)
        if value is not None:
            merged[field] = value

    for field in SET_FIELDS:
        merged[field] = normalize_tags(list(getattr(current, field)) + list(getattr(update, field)))

    return CollectedData.model_validate(merged)


def missing_fields(data: Optional[ProfileLike]) -> List[str]:
    """Required fields still unknown, in interview order"""
    profile = _as_collected(data)
    missing = []
    if not profile.origin_iata:
        missing.append("origin_iata")
    if not profile.budget_in_brl or profile.budget_in_brl <= 0:
        missing.append("budget_in_brl")
    if not profile.activities:
        missing.append("activities")
    if not profile.purpose:
        missing.append("purpose")
    return missing


def is_ready_for_recommendation(data: Optional[ProfileLike]) -> bool:
    """The sole gate for completing an interview"""
    return not missing_fields(data)


def next_question_key(data: Optional[ProfileLike]) -> Optional[str]:
    """Key of the next question to ask, or None when the profile is complete"""
    missing = missing_fields(data)
    return QUESTION_KEYS[missing[0]] if missing else None


def derive_stage(data: Optional[ProfileLike]) -> ConversationStage:
    key = next_question_key(data)
    if key is None:
        return ConversationStage.RECOMMENDATION_READY
    return STAGE_BY_QUESTION[key]


def completion_stats(data: Optional[ProfileLike]) -> CompletionStats:
    missing = missing_fields(data)
    total = len(REQUIRED_FIELDS)
    completed = total - len(missing)
    stats = CompletionStats(
        completed=completed,
        total=total,
        percentage=round(completed / total * 100),
        missing_fields=missing,
    )
    logger.debug(f"Profile completion: {stats.completed}/{stats.total} missing={stats.missing_fields}")
    return stats
