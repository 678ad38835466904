"""Tests for region normalization and resource-type inference."""

from __future__ import annotations

import pytest

from relief_engine.demand.regions import (
    UNKNOWN_REGION,
    UNSPECIFIED_TYPE,
    infer_resource_type,
    normalize_region,
)


class TestNormalizeRegion:
    @pytest.mark.parametrize("location, expected", [
        ("Kochi, Ernakulam", "kochi"),
        ("  ALUVA ", "aluva"),
        ("Thrissur", "thrissur"),
        (", Ernakulam", UNKNOWN_REGION),
        ("", UNKNOWN_REGION),
        (None, UNKNOWN_REGION),
    ])
    def test_first_segment(self, location, expected):
        assert normalize_region(location) == expected


class TestInferResourceType:
    @pytest.mark.parametrize("details, expected", [
        ("Need drinking water", "water"),
        ("Three injuries after roof collapse", "medical kits"),
        ("Family hungry since yesterday", "food"),
        ("Need blankets and a tent", "blankets"),
        ("Generator out of diesel", "fuel"),
        ("Infant at home, no milk powder", "baby formula"),
        ("Need tarps to cover the roof", "tarpaulins"),
        ("Call back please", UNSPECIFIED_TYPE),
        (None, UNSPECIFIED_TYPE),
    ])
    def test_keywords(self, details, expected):
        assert infer_resource_type(details) == expected

    def test_medical_wins_over_water(self):
        assert infer_resource_type("Injured, also need water") == "medical kits"

    def test_matches_word_prefix_only(self):
        # "rewater" does not start with "water"
        assert infer_resource_type("rewater") == UNSPECIFIED_TYPE

    def test_earlier_group_wins_over_tarpaulins(self):
        assert infer_resource_type("Roof gone, need blankets") == "blankets"
