"""
Particulate-filter (FAP/DPF) clogging likelihood score.

A weighted sum over the symptom-relevant slot text, clamped to [0, 100].
Each rule fires at most once, on a mention that is not negated, so adding
evidence can only raise the score, except for the highway penalty: long
highway driving usually burns the filter clean, so it counts against
clogging unless power loss is reported.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from refap.config import settings
from refap.conversation.slot_manager import SYMPTOM_SEPARATOR, SlotName
from refap.utils import fold_text, search_affirmed

logger = logging.getLogger(__name__)

SCORE_MIN = 0
SCORE_MAX = 100

SCORED_SLOTS: tuple[SlotName, ...] = (
    SlotName.LIGHTS,
    SlotName.SYMPTOMS,
    SlotName.DRIVING,
    SlotName.ADBLUE,
)


class ScoreTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ScoreRule:
    """One weighted indicator."""

    name: str
    pattern: re.Pattern
    weight: int


FILTER_RULE = ScoreRule("filter_keyword", re.compile(r"\b(fap|dpf)\b|filtre a particules?|particul"), 30)
SHORT_TRIPS_RULE = ScoreRule(
    "short_trips",
    re.compile(r"trajets? courts?|courts? trajets?|petits? trajets?|\bville\b|\burbain|\bcitadin"),
    20,
)
POWER_RULE = ScoreRule(
    "power_loss_or_smoke",
    re.compile(
        r"pert\w* de puissance|manque de puissance|plus de puissance|"
        r"mode (degrade|securite|sans echec)|\bbride\b|fumee"
    ),
    30,
)
ADBLUE_RULE = ScoreRule("adblue", re.compile(r"\bad\s?-?blue\b"), 15)
HIGHWAY_PENALTY = ScoreRule(
    "highway_without_power_loss",
    re.compile(r"autoroute|voie rapide|longs? trajets?|grands? trajets?|\bnationale"),
    -20,
)

POSITIVE_RULES: tuple[ScoreRule, ...] = (FILTER_RULE, SHORT_TRIPS_RULE, POWER_RULE, ADBLUE_RULE)


def scored_text(slots: Mapping[str, str]) -> str:
    """Folded concatenation of the symptom-relevant slots."""
    parts = [slots.get(name.value) or "" for name in SCORED_SLOTS]
    return fold_text(SYMPTOM_SEPARATOR.join(p for p in parts if p.strip()))


def score_breakdown(slots: Mapping[str, str]) -> dict[str, int]:
    """Rule name → points contributed, for debugging and reasons."""
    text = scored_text(slots)
    contributions = {
        rule.name: rule.weight for rule in POSITIVE_RULES if search_affirmed(rule.pattern, text)
    }
    highway = search_affirmed(HIGHWAY_PENALTY.pattern, text)
    if highway and not search_affirmed(POWER_RULE.pattern, text):
        contributions[HIGHWAY_PENALTY.name] = HIGHWAY_PENALTY.weight
    return contributions


def compute_fault_score(slots: Mapping[str, str]) -> int:
    """Deterministic 0–100 score from slot text alone."""
    raw = sum(score_breakdown(slots).values())
    score = max(SCORE_MIN, min(SCORE_MAX, raw))
    logger.debug("Fault score %d (raw %d)", score, raw)
    return score


def score_tier(
    score: int,
    high_threshold: Optional[int] = None,
    medium_threshold: Optional[int] = None,
) -> ScoreTier:
    high = settings.conversation.high_score_threshold if high_threshold is None else high_threshold
    medium = (
        settings.conversation.medium_score_threshold if medium_threshold is None else medium_threshold
    )
    if score >= high:
        return ScoreTier.HIGH
    if score >= medium:
        return ScoreTier.MEDIUM
    return ScoreTier.LOW
