"""
Slot store with soft extraction and a first-write-wins merge policy.

Slots are the facts collected about the customer's vehicle and situation
across turns. They are filled from three sources, in this order:

1. ``soft_extract_slots``: high-precision structured fragments
   (postcode, plate, phone, mileage, vehicle, explicit yes/no about
   removing the filter). Fragments must fully match their shape.
2. ``slots_from_signals``: labels derived from the coarse signal flags
   (lights, symptoms, driving pattern, codes, AdBlue, urgency).
3. ``parse_pending_answer``: the reply to the question asked on the
   previous turn, when 1 and 2 left that slot empty.

Usage:
    store = SlotStore()
    store.merge(soft_extract_slots("Ma plaque AB-123-CD, je suis à 75001"))
    assert store.get("postcode") == "75001"
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from refap.config import settings
from refap.conversation.signals import Signal, SignalSet
from refap.utils import fold_text, is_present, normalize_phone, search_affirmed, truncate

logger = logging.getLogger(__name__)

SYMPTOM_SEPARATOR = " | "

# Structured fragment shapes
POSTCODE_RE = re.compile(r"(?<![\d\-])(\d{5})(?![\d\-])(?!\s*(?:km|kms|kilom\w*|k)\b)")
# SIV plate: AA-123-AA, either fully hyphenated or fully packed.
PLATE_RE = re.compile(
    r"(?<![A-Za-z0-9\-])(?P<a>[A-Za-z]{2})(?P<sep>-?)(?P<n>\d{3})(?P=sep)(?P<b>[A-Za-z]{2})"
    r"(?![A-Za-z0-9\-])"
)
PHONE_RE = re.compile(r"(?<![\d+])((?:\+33\s?|0)[1-9](?:[ .\-]?\d{2}){4})(?!\d)")
MILEAGE_RE = re.compile(r"(?<![\d.,])(\d{1,3}(?:[ .]\d{3})+|\d{1,7})\s*(km|kms|kilom\w*|k)\b")
NAME_RE = re.compile(
    r"(?i:je m['’]appelle|mon nom est|mon nom c['’]est|moi c['’]est)\s+"
    r"([A-ZÀ-Ý][\w'\-]+(?:\s+[A-ZÀ-Ý][\w'\-]+)?)"
)
VEHICLE_BRANDS = (
    "peugeot", "citroen", "renault", "dacia", "volkswagen", "vw", "audi", "bmw",
    "mercedes", "ford", "opel", "fiat", "toyota", "nissan", "skoda", "seat", "kia",
    "hyundai", "volvo", "mazda", "alfa romeo", "jeep", "land rover", "suzuki",
    "honda", "mitsubishi", "chevrolet", "porsche", "jaguar", "lancia",
)
ENGINE_TOKENS = (
    "hdi", "bluehdi", "e-hdi", "dci", "tdi", "tdci", "crdi", "cdi", "jtd", "jtdm",
    "multijet", "d4d", "tce", "vti", "thp", "puretech", "ecoblue", "bluemotion",
    "diesel", "essence", "sw", "break",
)
_STOP_WORDS = (
    "qui", "que", "qu", "de", "du", "des", "d", "l", "c", "n", "s", "avec", "et", "en",
    "a", "est", "il", "elle", "mais", "pour", "sur", "je", "j", "ma", "mon", "la", "le",
    "les", "fait", "depuis", "ne", "au", "aux",
)
VEHICLE_RE = re.compile(
    r"\b(?:" + "|".join(VEHICLE_BRANDS) + r")\b"
    r"(?:\s+(?!(?:" + "|".join(_STOP_WORDS) + r")\b)[\w.\-]+)?"
    r"(?:\s+(?:[\w.\-]*\d[\w.\-]*|" + "|".join(ENGINE_TOKENS) + r")\b){0,3}"
)
CAN_REMOVE_NO_RE = re.compile(
    r"(je (ne )?(peux|sais) pas|je n'arrive pas a|pas capable de|impossible de|"
    r"pas les moyens de).{0,30}(demonter|deposer|enlever|retirer|sortir)|pas (d'|de )outils"
)
CAN_REMOVE_YES_RE = re.compile(
    r"\b(je peux|je sais|j'arrive a|capable de)\b(?! pas).{0,30}"
    r"(demonter|deposer|enlever|retirer|le sortir)"
)
YES_RE = re.compile(r"^\s*(oui|ouais|yes|ok|d'accord|bien sur|tout a fait|absolument)\b")
NO_RE = re.compile(r"^\s*(non|nan|no|pas du tout|jamais|negatif)\b")
URGENT_RE = re.compile(r"\burgen|au plus vite|des que possible|\basap\b")


class SlotName(str, Enum):
    """Fixed set of slots, in question-priority order."""

    VEHICLE = "vehicle"
    MILEAGE = "mileage"
    DRIVING = "driving"
    LIGHTS = "lights"
    SYMPTOMS = "symptoms"
    CODES = "codes"
    ADBLUE = "adblue"
    URGENCY = "urgency"
    CAN_REMOVE = "can_remove"
    POSTCODE = "postcode"
    PLATE = "plate"
    CONTACT_NAME = "contact_name"
    PHONE = "phone"


class UnknownSlotError(Exception):
    """Raised when a slot name is not part of the fixed set."""


def _parse_mileage_answer(text: str) -> Optional[str]:
    match = MILEAGE_RE.search(fold_text(text))
    if match:
        return _format_mileage(match)
    digits = re.sub(r"[ .]", "", text.strip())
    if digits.isdigit() and int(digits) >= 1000:
        return f"{int(digits)} km"
    return None


def _parse_yes_no(text: str) -> Optional[str]:
    folded = fold_text(text)
    if CAN_REMOVE_NO_RE.search(folded) or NO_RE.match(folded):
        return "non"
    if CAN_REMOVE_YES_RE.search(folded) or YES_RE.match(folded):
        return "oui"
    return None


@dataclass(frozen=True)
class SlotDefinition:
    """Schema for a single slot to collect."""

    name: SlotName
    display_name: str
    prompt_hint: str
    required: bool = False
    cumulative: bool = False
    free_text_answer: bool = False
    answer_parser: Optional[Callable[[str], Optional[str]]] = None


SLOT_DEFINITIONS: list[SlotDefinition] = [
    SlotDefinition(
        name=SlotName.VEHICLE,
        display_name="véhicule",
        prompt_hint="Quel est votre véhicule (marque, modèle, motorisation, année) ?",
        required=True,
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.MILEAGE,
        display_name="kilométrage",
        prompt_hint="Combien de kilomètres affiche le compteur ?",
        answer_parser=_parse_mileage_answer,
    ),
    SlotDefinition(
        name=SlotName.DRIVING,
        display_name="type de trajets",
        prompt_hint="Roulez-vous surtout en ville sur des trajets courts, ou plutôt sur autoroute ?",
        required=True,
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.LIGHTS,
        display_name="voyants",
        prompt_hint="Un voyant est-il allumé au tableau de bord (FAP, moteur) ?",
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.SYMPTOMS,
        display_name="symptômes",
        prompt_hint="Quels symptômes constatez-vous (perte de puissance, fumée, mode dégradé) ?",
        required=True,
        cumulative=True,
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.CODES,
        display_name="codes défaut",
        prompt_hint="Avez-vous relevé des codes défaut OBD (par exemple P2002) ?",
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.ADBLUE,
        display_name="AdBlue",
        prompt_hint="Votre véhicule utilise-t-il de l'AdBlue, et avez-vous un message à ce sujet ?",
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.URGENCY,
        display_name="urgence",
        prompt_hint="Le véhicule roule-t-il encore normalement, ou est-ce urgent ?",
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.CAN_REMOVE,
        display_name="démontage",
        prompt_hint="Êtes-vous en mesure de démonter vous-même le filtre à particules ?",
        answer_parser=_parse_yes_no,
    ),
    SlotDefinition(
        name=SlotName.POSTCODE,
        display_name="code postal",
        prompt_hint="Quel est votre code postal, pour trouver un garage proche ?",
    ),
    SlotDefinition(
        name=SlotName.PLATE,
        display_name="immatriculation",
        prompt_hint="Quelle est l'immatriculation du véhicule (format AA-123-AA) ?",
    ),
    SlotDefinition(
        name=SlotName.CONTACT_NAME,
        display_name="nom",
        prompt_hint="À quel nom puis-je noter votre demande ?",
        free_text_answer=True,
    ),
    SlotDefinition(
        name=SlotName.PHONE,
        display_name="téléphone",
        prompt_hint="À quel numéro pouvons-nous vous rappeler ?",
    ),
]

_DEFINITIONS_BY_NAME: dict[str, SlotDefinition] = {d.name.value: d for d in SLOT_DEFINITIONS}

REQUIRED_SLOTS: tuple[SlotName, ...] = tuple(d.name for d in SLOT_DEFINITIONS if d.required)


def get_definition(name: str) -> SlotDefinition:
    key = name.value if isinstance(name, SlotName) else name
    try:
        return _DEFINITIONS_BY_NAME[key]
    except KeyError:
        raise UnknownSlotError(f"Unknown slot: {name}") from None


def _format_mileage(match: re.Match) -> str:
    value = int(re.sub(r"[ .]", "", match.group(1)))
    if match.group(2) == "k":
        value *= 1000
    return f"{value} km"


def _vehicle_from(text: str, folded: str) -> Optional[str]:
    match = VEHICLE_RE.search(folded)
    if not match:
        return None
    fragment = text[match.start():match.end()].strip(" ,.;")
    return " ".join(fragment.split())


def soft_extract_slots(text: str) -> dict[str, str]:
    """Extract slots from fully-matching structured fragments only.

    Malformed postcodes or plates are rejected rather than partially stored.
    """
    text = text or ""
    folded = fold_text(text)
    found: dict[str, str] = {}

    plate = PLATE_RE.search(text)
    if plate:
        found[SlotName.PLATE.value] = f"{plate['a']}-{plate['n']}-{plate['b']}".upper()

    # Mask the plate so its digits cannot leak into other extractors.
    scrubbed = PLATE_RE.sub(" ", text)
    scrubbed_folded = fold_text(scrubbed)

    phone = PHONE_RE.search(scrubbed)
    if phone:
        found[SlotName.PHONE.value] = normalize_phone(phone.group(1))
        scrubbed_folded = fold_text(PHONE_RE.sub(" ", scrubbed))

    mileage = MILEAGE_RE.search(scrubbed_folded)
    if mileage:
        found[SlotName.MILEAGE.value] = _format_mileage(mileage)
        scrubbed_folded = MILEAGE_RE.sub(" ", scrubbed_folded)

    postcode = POSTCODE_RE.search(scrubbed_folded)
    if postcode:
        found[SlotName.POSTCODE.value] = postcode.group(1)

    vehicle = _vehicle_from(text, folded)
    if vehicle:
        found[SlotName.VEHICLE.value] = vehicle

    name = NAME_RE.search(text)
    if name:
        found[SlotName.CONTACT_NAME.value] = name.group(1).strip()

    if CAN_REMOVE_NO_RE.search(folded):
        found[SlotName.CAN_REMOVE.value] = "non"
    elif CAN_REMOVE_YES_RE.search(folded):
        found[SlotName.CAN_REMOVE.value] = "oui"

    if search_affirmed(URGENT_RE, folded):
        found[SlotName.URGENCY.value] = "urgent"

    logger.debug("Soft extraction: %s", found)
    return found


_SYMPTOM_LABELS: list[tuple[Signal, str]] = [
    (Signal.NON_DRIVABLE, "véhicule immobilisé (cale / ne démarre plus)"),
    (Signal.POWER_LOSS, "perte de puissance / mode dégradé"),
    (Signal.SMOKE_BLACK, "fumée noire"),
    (Signal.SMOKE_BLUE, "fumée bleue"),
    (Signal.SMOKE_WHITE, "fumée blanche"),
    (Signal.REGEN_FAILED, "régénération FAP échouée"),
    (Signal.FILTER_REMOVED, "FAP déjà retiré"),
    (Signal.EGR, "vanne EGR évoquée"),
]


def slots_from_signals(signals: SignalSet) -> dict[str, str]:
    """Turn the coarse signal flags into slot labels."""
    found: dict[str, str] = {}

    lights = []
    if signals.has(Signal.FILTER_LIGHT):
        lights.append("voyant FAP")
    if signals.has(Signal.ENGINE_LIGHT):
        lights.append("voyant moteur")
    if lights:
        found[SlotName.LIGHTS.value] = ", ".join(lights)

    symptoms = [label for signal, label in _SYMPTOM_LABELS if signals.has(signal)]
    if symptoms:
        found[SlotName.SYMPTOMS.value] = SYMPTOM_SEPARATOR.join(symptoms)

    if signals.has(Signal.SHORT_TRIPS):
        found[SlotName.DRIVING.value] = "trajets courts / ville"
    elif signals.has(Signal.HIGHWAY):
        found[SlotName.DRIVING.value] = "autoroute / longs trajets"

    if signals.fault_codes:
        found[SlotName.CODES.value] = ", ".join(signals.fault_codes)
    if signals.has(Signal.ADBLUE):
        found[SlotName.ADBLUE.value] = "AdBlue mentionné"
    if signals.has(Signal.NON_DRIVABLE):
        found[SlotName.URGENCY.value] = "immobilisé (urgent)"
    if signals.has(Signal.SELF_CAPABLE):
        found[SlotName.CAN_REMOVE.value] = "oui"
    return found


def parse_pending_answer(slot: str, text: str) -> Optional[str]:
    """Read the reply to the question asked for ``slot`` on the previous turn."""
    defn = get_definition(slot)
    if defn.answer_parser is not None:
        return defn.answer_parser(text)
    if defn.free_text_answer and is_present(text):
        return truncate(text, settings.conversation.free_text_answer_max_chars)
    return None


def merge_slots(
    existing: Mapping[str, str],
    incoming: Mapping[str, str],
    symptoms_max_chars: Optional[int] = None,
) -> tuple[dict[str, str], list[str]]:
    """Merge ``incoming`` into a copy of ``existing``.

    A slot is only written when absent, except cumulative slots which
    append new fragments (deduplicated) up to ``symptoms_max_chars``.

    Returns:
        (merged slot map, names of slots that changed)
    """
    cap = symptoms_max_chars or settings.conversation.symptoms_max_chars
    merged = dict(existing)
    changed: list[str] = []
    for name, value in incoming.items():
        defn = get_definition(name)
        key = defn.name.value
        if not is_present(value):
            continue
        value = value.strip()
        current = merged.get(key)
        if not is_present(current):
            merged[key] = truncate(value, cap) if defn.cumulative else value
            changed.append(key)
        elif defn.cumulative:
            known = {part.strip().lower() for part in current.split(SYMPTOM_SEPARATOR)}
            fresh = [v for v in value.split(SYMPTOM_SEPARATOR) if v.strip().lower() not in known]
            if not fresh:
                continue
            combined = SYMPTOM_SEPARATOR.join([current] + [v.strip() for v in fresh])
            if len(combined) > cap:
                combined = truncate(combined, cap)
            if combined != current:
                merged[key] = combined
                changed.append(key)
    return merged, changed


class SlotStore:
    """
    Per-conversation slot map.

    Values are free text; presence means a non-empty trimmed string.
    Slots are never cleared once set.
    """

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._values: dict[str, str] = {}
        if initial:
            self.merge(initial)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(get_definition(name).name.value)

    def has(self, name: str) -> bool:
        return is_present(self.get(name))

    def merge(self, incoming: Mapping[str, str]) -> list[str]:
        """Merge new values using the first-write-wins / append policy."""
        self._values, changed = merge_slots(self._values, incoming)
        if changed:
            logger.debug("Slots updated: %s", changed)
        return changed

    def missing(self, names: Optional[list[SlotName]] = None) -> list[SlotDefinition]:
        """Slots from ``names`` (default: all, in priority order) still absent."""
        pool = [get_definition(n) for n in names] if names is not None else SLOT_DEFINITIONS
        return [d for d in pool if not self.has(d.name)]

    def get_next_empty_slot(self) -> Optional[SlotDefinition]:
        """First absent slot in priority order."""
        missing = self.missing()
        return missing[0] if missing else None

    def all_required_filled(self) -> bool:
        return all(self.has(name) for name in REQUIRED_SLOTS)

    def to_dict(self) -> dict[str, str]:
        """Export present slot values in priority order."""
        return {
            d.name.value: self._values[d.name.value]
            for d in SLOT_DEFINITIONS
            if is_present(self._values.get(d.name.value))
        }

    def get_stats(self) -> dict[str, Any]:
        filled = sum(1 for d in SLOT_DEFINITIONS if self.has(d.name))
        required = sum(1 for name in REQUIRED_SLOTS if self.has(name))
        return {
            "slots_filled": filled,
            "slots_total": len(SLOT_DEFINITIONS),
            "required_filled": required,
            "required_total": len(REQUIRED_SLOTS),
        }
