"""Tests for the fault score and its tiers."""

import pytest

from refap.conversation.scoring import (
    ScoreTier,
    compute_fault_score,
    score_breakdown,
    score_tier,
    scored_text,
)


class TestComputeFaultScore:
    def test_empty_slots_score_zero(self):
        assert compute_fault_score({}) == 0

    def test_filter_power_short_trips_is_high(self):
        slots = {
            "lights": "voyant FAP",
            "symptoms": "perte de puissance / mode dégradé",
            "driving": "trajets courts / ville",
        }
        assert compute_fault_score(slots) == 80
        assert score_tier(compute_fault_score(slots)) == ScoreTier.HIGH

    def test_each_weight(self):
        assert compute_fault_score({"lights": "voyant FAP"}) == 30
        assert compute_fault_score({"driving": "trajets courts / ville"}) == 20
        assert compute_fault_score({"symptoms": "fumée noire"}) == 30
        assert compute_fault_score({"adblue": "AdBlue mentionné"}) == 15

    def test_rules_fire_once(self):
        slots = {"lights": "voyant FAP", "symptoms": "FAP bouché, filtre à particules plein"}
        assert score_breakdown(slots) == {"filter_keyword": 30}

    def test_highway_penalty_without_power_loss(self):
        slots = {"lights": "voyant FAP", "driving": "autoroute / longs trajets"}
        assert compute_fault_score(slots) == 10

    def test_highway_penalty_waived_with_power_loss(self):
        slots = {
            "lights": "voyant FAP",
            "symptoms": "perte de puissance",
            "driving": "autoroute / longs trajets",
        }
        assert compute_fault_score(slots) == 60

    def test_negated_mentions_do_not_score(self):
        slots = {"symptoms": "pas de fumée, aucune perte de puissance", "adblue": "pas d'AdBlue"}
        assert compute_fault_score(slots) == 0

    def test_negated_power_loss_keeps_highway_penalty(self):
        slots = {
            "lights": "voyant FAP",
            "symptoms": "pas de perte de puissance",
            "driving": "autoroute / longs trajets",
        }
        assert compute_fault_score(slots) == 10

    def test_clamped_at_zero(self):
        assert compute_fault_score({"driving": "autoroute"}) == 0

    def test_all_indicators_stay_in_range(self):
        slots = {
            "lights": "voyant FAP",
            "symptoms": "fumée noire, perte de puissance",
            "driving": "trajets courts",
            "adblue": "AdBlue",
        }
        assert compute_fault_score(slots) == 95
        assert 0 <= compute_fault_score(slots) <= 100

    def test_unscored_slots_ignored(self):
        assert compute_fault_score({"vehicle": "Peugeot FAP edition", "postcode": "75001"}) == 0

    @pytest.mark.parametrize("extra", ["fumée noire", "voyant FAP", "trajets courts", "AdBlue"])
    def test_adding_positive_keyword_never_decreases(self, extra):
        base = {"symptoms": "bruit bizarre", "driving": "autoroute"}
        before = compute_fault_score(base)
        after = compute_fault_score({**base, "symptoms": base["symptoms"] + " " + extra})
        assert after >= before

    def test_scored_text_is_folded(self):
        assert scored_text({"symptoms": "Fumée NOIRE"}) == "fumee noire"


class TestScoreTier:
    def test_default_thresholds(self):
        assert score_tier(60) == ScoreTier.HIGH
        assert score_tier(59) == ScoreTier.MEDIUM
        assert score_tier(40) == ScoreTier.MEDIUM
        assert score_tier(39) == ScoreTier.LOW

    def test_custom_thresholds(self):
        assert score_tier(50, high_threshold=50, medium_threshold=20) == ScoreTier.HIGH
        assert score_tier(19, high_threshold=50, medium_threshold=20) == ScoreTier.LOW
