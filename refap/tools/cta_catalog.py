"""
Call-to-action catalog.

A small fixed table of CTA entries; only the target URLs come from
configuration. An entry whose URL is not configured is simply not
offered, so a descriptor with an empty target is never emitted.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from refap.config import settings
from refap.schemas.routing_schema import Cta, CtaId, CtaType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CtaEntry:
    id: CtaId
    type: CtaType
    label: str
    hint: Optional[str] = None


CTA_ENTRIES: dict[CtaId, CtaEntry] = {
    CtaId.DIAGNOSTIC_BOOKING: CtaEntry(
        CtaId.DIAGNOSTIC_BOOKING,
        CtaType.DIAGNOSTIC,
        "Prendre RDV pour un diagnostic en garage partenaire",
        "Le garage confirme l'encrassement et s'occupe du démontage.",
    ),
    CtaId.DROP_OFF_SHOP: CtaEntry(
        CtaId.DROP_OFF_SHOP,
        CtaType.PRODUCT,
        "Déposer mon FAP démonté en magasin partenaire",
        "Nettoyage du filtre démonté, sans passer par un garage.",
    ),
    CtaId.GARAGE_FINDER: CtaEntry(
        CtaId.GARAGE_FINDER,
        CtaType.DIAGNOSTIC,
        "Trouver un garage près de chez moi",
    ),
    CtaId.INFO: CtaEntry(
        CtaId.INFO,
        CtaType.INFORMATIONAL,
        "Comprendre le nettoyage du FAP",
    ),
    CtaId.CALLBACK: CtaEntry(
        CtaId.CALLBACK,
        CtaType.CALLBACK,
        "Être rappelé par un conseiller",
    ),
}


def default_urls() -> dict[CtaId, str]:
    biz = settings.business
    return {
        CtaId.DIAGNOSTIC_BOOKING: biz.cta_diagnostic_url,
        CtaId.DROP_OFF_SHOP: biz.cta_drop_off_url,
        CtaId.GARAGE_FINDER: biz.cta_garage_finder_url,
        CtaId.INFO: biz.cta_info_url,
        CtaId.CALLBACK: biz.cta_callback_url,
    }


class CtaCatalog:
    """Resolves CTA ids into descriptors, skipping unconfigured targets."""

    def __init__(self, urls: Optional[Mapping[CtaId, str]] = None) -> None:
        self._urls = dict(default_urls() if urls is None else urls)

    def get(self, cta_id: CtaId) -> Optional[Cta]:
        entry = CTA_ENTRIES.get(cta_id)
        url = (self._urls.get(cta_id) or "").strip()
        if entry is None or not url:
            logger.warning("CTA '%s' has no configured target, omitting it", cta_id.value)
            return None
        return Cta(id=entry.id, type=entry.type, label=entry.label, url=url, hint=entry.hint)

    def labels(self) -> list[str]:
        return [entry.label for entry in CTA_ENTRIES.values()]
