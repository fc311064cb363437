"""
Tests for the Profile Accumulator
"""
import itertools

import pytest

from discovery_ai.algorithms.profile_accumulator import (
    completion_stats,
    derive_stage,
    is_ready_for_recommendation,
    merge,
    missing_fields,
    next_question_key,
)
from discovery_ai.schemas.chat_schemas import CollectedData, ConversationStage, ProfileUpdate


class TestMerge:
    """Merge rules for partial profiles"""

    @pytest.mark.unit
    def test_absent_fields_keep_existing_values(self):
        existing = CollectedData(origin_name="São Paulo", origin_iata="GRU", budget_in_brl=300000)

        merged = merge(existing, ProfileUpdate(purpose="lazer"))

        assert merged.origin_iata == "GRU"
        assert merged.budget_in_brl == 300000
        assert merged.purpose == "lazer"

    @pytest.mark.unit
    def test_present_scalar_overwrites(self):
        existing = CollectedData(origin_iata="GRU", budget_in_brl=300000)

        merged = merge(existing, {"origin_iata": "gig", "budget_in_brl": 500000})

        assert merged.origin_iata == "GIG"
        assert merged.budget_in_brl == 500000

    @pytest.mark.unit
    def test_set_fields_are_case_normalized_union(self):
        existing = CollectedData(activities=["Trilhas", "praia"])

        merged = merge(existing, {"activities": ["PRAIA", " cultura "]})

        assert merged.activities == ["cultura", "praia", "trilhas"]

    @pytest.mark.unit
    def test_merge_does_not_mutate_arguments(self):
        existing = CollectedData(activities=["trilhas"])
        update = ProfileUpdate(activities=["praia"], purpose="lazer")

        merge(existing, update)

        assert existing.activities == ["trilhas"]
        assert existing.purpose is None
        assert update.activities == ["praia"]

    @pytest.mark.unit
    def test_merge_with_nothing(self):
        assert merge(None, None) == CollectedData()
        assert merge(CollectedData(origin_iata="REC"), None).origin_iata == "REC"

    @pytest.mark.unit
    def test_associative_on_disjoint_fields(self):
        a = CollectedData(origin_iata="GRU", activities=["trilhas"])
        b = {"budget_in_brl": 300000, "activities": ["praia"]}
        c = {"purpose": "lazer", "hobbies": ["fotografia"]}

        left = merge(merge(a, b), c)
        right = merge(a, merge(b, c))

        assert left == right

    @pytest.mark.unit
    def test_invalid_values_are_treated_as_absent(self):
        existing = CollectedData(origin_iata="GRU", budget_in_brl=300000)

        merged = merge(existing, {"origin_iata": "São Paulo", "budget_in_brl": -5})

        assert merged.origin_iata == "GRU"
        assert merged.budget_in_brl == 300000


class TestReadiness:
    """Readiness gate and derived interview position"""

    FIELDS = {
        "origin_iata": "GRU",
        "budget_in_brl": 300000,
        "activities": ["trilhas"],
        "purpose": "lazer",
    }

    @pytest.mark.unit
    @pytest.mark.parametrize("present", list(itertools.product([False, True], repeat=4)))
    def test_ready_only_when_all_four_present(self, present):
        values = {
            name: value
            for (name, value), keep in zip(self.FIELDS.items(), present)
            if keep
        }

        assert is_ready_for_recommendation(values) is all(present)

    @pytest.mark.unit
    def test_zero_budget_is_not_ready(self):
        data = dict(self.FIELDS, budget_in_brl=0)

        assert not is_ready_for_recommendation(data)
        assert missing_fields(data) == ["budget_in_brl"]

    @pytest.mark.unit
    def test_next_question_follows_interview_order(self):
        assert next_question_key(CollectedData()) == "origin"
        assert next_question_key({"origin_iata": "GRU"}) == "budget"
        assert next_question_key({"origin_iata": "GRU", "budget_in_brl": 1}) == "activities"
        assert next_question_key(
            {"origin_iata": "GRU", "budget_in_brl": 1, "activities": ["praia"]}
        ) == "purpose"
        assert next_question_key(self.FIELDS) is None

    @pytest.mark.unit
    def test_stage_is_derived_from_profile(self):
        assert derive_stage(CollectedData()) == ConversationStage.COLLECTING_ORIGIN
        assert derive_stage({"origin_iata": "GRU", "budget_in_brl": 1}) == ConversationStage.COLLECTING_ACTIVITIES
        assert derive_stage(self.FIELDS) == ConversationStage.RECOMMENDATION_READY

    @pytest.mark.unit
    def test_completion_stats(self):
        stats = completion_stats({"origin_iata": "GRU", "activities": ["praia"]})

        assert stats.completed == 2
        assert stats.total == 4
        assert stats.percentage == 50
        assert stats.to_dict()["missingFields"] == ["budget_in_brl", "purpose"]
