"""Routing decision and call-to-action value objects."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Route(str, Enum):
    """Category of recommended next step."""

    PARTNER_GARAGE = "partner_garage"
    SELF_REMOVE_PARTNER_SHOP = "self_remove_partner_shop"
    LIKELY_BUT_UNCERTAIN = "likely_but_uncertain"
    GENERIC = "generic"


class CtaType(str, Enum):
    DIAGNOSTIC = "diagnostic"
    INFORMATIONAL = "informational"
    CALLBACK = "callback"
    PRODUCT = "product"


class CtaId(str, Enum):
    DIAGNOSTIC_BOOKING = "diagnostic_booking"
    DROP_OFF_SHOP = "drop_off_shop"
    GARAGE_FINDER = "garage_finder"
    INFO = "info"
    CALLBACK = "callback"


@dataclass(frozen=True)
class Cta:
    """Immutable call-to-action descriptor."""

    id: CtaId
    type: CtaType
    label: str
    url: str
    hint: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id.value,
            "type": self.type.value,
            "label": self.label,
            "url": self.url,
            "hint": self.hint,
        }


@dataclass(frozen=True)
class RoutingDecision:
    """Output of one decision pass. Recomputed every turn, never stored."""

    score: int
    tier: str
    severe: bool
    route: Route
    rule: str
    ctas: tuple[Cta, ...] = ()
    primary: Optional[Cta] = None
    missing_slots: tuple[str, ...] = ()
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self, include_reasons: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "score": self.score,
            "tier": self.tier,
            "severe": self.severe,
            "route": self.route.value,
            "ctas": [cta.to_dict() for cta in self.ctas],
            "cta": self.primary.to_dict() if self.primary else None,
            "missing": list(self.missing_slots),
        }
        if include_reasons:
            data["rule"] = self.rule
            data["reasons"] = list(self.reasons)
        return data
