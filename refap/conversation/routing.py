"""
Routing decision engine.

Picks a route and an ordered list of calls-to-action from the current slot
map, using an explicit ordered decision table evaluated by a single
dispatch function: the first row whose condition holds wins.

| Row                | Condition                   | Route                    | Primary            |
|--------------------|-----------------------------|--------------------------|--------------------|
| immobilised        | vehicle cannot be driven    | partner_garage           | diagnostic_booking |
| severe_likely      | severe and score >= medium  | partner_garage           | diagnostic_booking |
| high_self_remove   | score >= high, can remove   | self_remove_partner_shop | drop_off_shop      |
| high_garage        | score >= high               | partner_garage           | diagnostic_booking |
| medium             | medium <= score < high      | likely_but_uncertain     | diagnostic_booking |
| low                | otherwise                   | generic                  | garage_finder      |

Informational and callback CTAs are always appended; the emitted list is
capped (3 by default) with the primary first.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from refap.config import settings
from refap.conversation.scoring import (
    ScoreTier,
    compute_fault_score,
    score_breakdown,
    score_tier,
)
from refap.conversation.slot_manager import SYMPTOM_SEPARATOR, SlotName
from refap.schemas.routing_schema import Cta, CtaId, Route, RoutingDecision
from refap.tools.cta_catalog import CtaCatalog
from refap.utils import fold_text, is_present, search_affirmed

logger = logging.getLogger(__name__)

ALWAYS_APPENDED: tuple[CtaId, ...] = (CtaId.INFO, CtaId.CALLBACK)

IMMOBILISED_RE = re.compile(r"immobilis|ne demarre (plus|pas)|\bcal(e|ent)\b|remorqu|en panne")
SEVERITY_MARKER_RE = re.compile(r"\burgen|immobilis")
POWER_LOSS_RE = re.compile(
    r"pert\w* de puissance|manque de puissance|plus de puissance|mode (degrade|securite|sans echec)"
)
SELF_REMOVE_YES_RE = re.compile(r"^\s*(oui|yes|ok|bien sur|je peux|je sais)\b")


@dataclass(frozen=True)
class RoutingContext:
    """Everything a decision-table condition may look at."""

    slots: Mapping[str, str]
    score: int
    tier: ScoreTier
    severe: bool
    immobilised: bool
    can_self_remove: bool


@dataclass(frozen=True)
class RoutingRule:
    """One row of the decision table."""

    name: str
    condition: Callable[[RoutingContext], bool]
    route: Route
    primary: CtaId
    secondary: tuple[CtaId, ...] = ()
    asks: tuple[SlotName, ...] = ()


def _is_immobilised(ctx: RoutingContext) -> bool:
    return ctx.immobilised


def _is_severe_and_likely(ctx: RoutingContext) -> bool:
    return ctx.severe and ctx.tier in (ScoreTier.HIGH, ScoreTier.MEDIUM)


def _is_high_and_self_remove(ctx: RoutingContext) -> bool:
    return ctx.tier == ScoreTier.HIGH and ctx.can_self_remove


def _is_high(ctx: RoutingContext) -> bool:
    return ctx.tier == ScoreTier.HIGH


def _is_medium(ctx: RoutingContext) -> bool:
    return ctx.tier == ScoreTier.MEDIUM


def _always(ctx: RoutingContext) -> bool:
    return True


GARAGE_ASKS = (SlotName.POSTCODE, SlotName.PLATE)

DECISION_TABLE: tuple[RoutingRule, ...] = (
    RoutingRule("immobilised", _is_immobilised, Route.PARTNER_GARAGE,
                CtaId.DIAGNOSTIC_BOOKING, (CtaId.INFO,), GARAGE_ASKS),
    RoutingRule("severe_likely", _is_severe_and_likely, Route.PARTNER_GARAGE,
                CtaId.DIAGNOSTIC_BOOKING, (CtaId.INFO,), GARAGE_ASKS),
    RoutingRule("high_self_remove", _is_high_and_self_remove, Route.SELF_REMOVE_PARTNER_SHOP,
                CtaId.DROP_OFF_SHOP),
    RoutingRule("high_garage", _is_high, Route.PARTNER_GARAGE,
                CtaId.DIAGNOSTIC_BOOKING, (), GARAGE_ASKS),
    RoutingRule("medium", _is_medium, Route.LIKELY_BUT_UNCERTAIN,
                CtaId.DIAGNOSTIC_BOOKING),
    RoutingRule("low", _always, Route.GENERIC,
                CtaId.GARAGE_FINDER),
)


def _folded(slots: Mapping[str, str], *names: SlotName) -> str:
    return fold_text(SYMPTOM_SEPARATOR.join(slots.get(n.value) or "" for n in names))


def is_immobilised(slots: Mapping[str, str]) -> bool:
    text = _folded(slots, SlotName.URGENCY, SlotName.SYMPTOMS)
    return bool(search_affirmed(IMMOBILISED_RE, text))


def is_severe(slots: Mapping[str, str]) -> bool:
    """Explicit urgency marker, an immobilised vehicle, or power loss in the symptom text."""
    if search_affirmed(SEVERITY_MARKER_RE, _folded(slots, SlotName.URGENCY)):
        return True
    if is_immobilised(slots):
        return True
    text = _folded(slots, SlotName.LIGHTS, SlotName.SYMPTOMS)
    return bool(search_affirmed(POWER_LOSS_RE, text))


def can_self_remove(slots: Mapping[str, str]) -> bool:
    return bool(SELF_REMOVE_YES_RE.match(_folded(slots, SlotName.CAN_REMOVE)))


def build_context(slots: Mapping[str, str]) -> RoutingContext:
    score = compute_fault_score(slots)
    return RoutingContext(
        slots=slots,
        score=score,
        tier=score_tier(score),
        severe=is_severe(slots),
        immobilised=is_immobilised(slots),
        can_self_remove=can_self_remove(slots),
    )


def select_rule(
    ctx: RoutingContext, table: tuple[RoutingRule, ...] = DECISION_TABLE
) -> RoutingRule:
    """Dispatch: first row whose condition holds."""
    for rule in table:
        if rule.condition(ctx):
            return rule
    raise LookupError("Decision table has no matching row")


def emit_ctas(
    rule: RoutingRule, catalog: CtaCatalog, max_ctas: int
) -> tuple[tuple[Cta, ...], Optional[Cta]]:
    """Primary, secondaries, then the always-appended CTAs; deduped and capped."""
    ordered: list[CtaId] = []
    for cta_id in (rule.primary, *rule.secondary, *ALWAYS_APPENDED):
        if cta_id not in ordered:
            ordered.append(cta_id)

    emitted: list[Cta] = []
    primary: Optional[Cta] = None
    for cta_id in ordered:
        cta = catalog.get(cta_id)
        if cta is None:
            continue
        if cta_id == rule.primary:
            primary = cta
        emitted.append(cta)
        if len(emitted) >= max_ctas:
            break
    return tuple(emitted), primary


def decide_routing(
    slots: Mapping[str, str],
    catalog: Optional[CtaCatalog] = None,
    max_ctas: Optional[int] = None,
) -> RoutingDecision:
    """Compute the routing decision for the current slot state.

    Deterministic: identical slot maps give identical decisions.
    """
    catalog = catalog or CtaCatalog()
    cap = settings.conversation.max_ctas if max_ctas is None else max_ctas

    ctx = build_context(slots)
    rule = select_rule(ctx)
    ctas, primary = emit_ctas(rule, catalog, cap)
    missing = tuple(name.value for name in rule.asks if not is_present(slots.get(name.value)))

    reasons = [f"score={ctx.score} tier={ctx.tier.value}"]
    reasons.extend(f"{name}:{points:+d}" for name, points in score_breakdown(slots).items())
    if ctx.immobilised:
        reasons.append("vehicle immobilised")
    if ctx.severe:
        reasons.append("severity flag set")
    if ctx.can_self_remove:
        reasons.append("customer can remove the filter")
    reasons.append(f"rule={rule.name} route={rule.route.value}")

    decision = RoutingDecision(
        score=ctx.score,
        tier=ctx.tier.value,
        severe=ctx.severe,
        route=rule.route,
        rule=rule.name,
        ctas=ctas,
        primary=primary,
        missing_slots=missing,
        reasons=tuple(reasons),
    )
    logger.debug(
        "Routing: rule=%s route=%s score=%d ctas=%s missing=%s",
        rule.name, rule.route.value, ctx.score, [c.id.value for c in ctas], list(missing),
    )
    return decision


def fallback_decision(catalog: Optional[CtaCatalog] = None) -> RoutingDecision:
    """Generic decision used when routing itself failed on malformed state."""
    catalog = catalog or CtaCatalog()
    rule = DECISION_TABLE[-1]
    ctas, primary = emit_ctas(rule, catalog, settings.conversation.max_ctas)
    return RoutingDecision(
        score=0,
        tier=ScoreTier.LOW.value,
        severe=False,
        route=rule.route,
        rule="fallback",
        ctas=ctas,
        primary=primary,
        reasons=("routing failed, generic fallback",),
    )
