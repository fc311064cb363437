"""
AI Algorithms Module
Profile accumulation and destination matching
"""

from .profile_accumulator import (
    merge,
    is_ready_for_recommendation,
    next_question_key,
    derive_stage,
    completion_stats,
    CompletionStats,
)
from .destination_matcher import match_destination, rank_destinations, DestinationScore

__all__ = [
    "merge",
    "is_ready_for_recommendation",
    "next_question_key",
    "derive_stage",
    "completion_stats",
    "CompletionStats",
    "match_destination",
    "rank_destinations",
    "DestinationScore",
]
