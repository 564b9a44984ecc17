"""
Signal extraction from free-text customer messages.

A signal is a boolean flag recomputed from scratch on every message by
matching a fixed, ordered table of regular expressions against the
diacritic-folded, lowercased text. The table is data: the default one
below can be replaced by a JSON file (see ``load_signal_patterns``)
without touching scoring or routing.

Usage:
    signals = extract_signals("Voyant FAP allumé, perte de puissance")
    assert signals.has(Signal.FILTER_LIGHT)
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Sequence

from refap.utils import fold_text, search_affirmed

logger = logging.getLogger(__name__)


class Signal(str, Enum):
    """Names of the flags in the default pattern table."""

    NON_DRIVABLE = "non_drivable"
    POWER_LOSS = "power_loss"
    FILTER_LIGHT = "filter_light"
    ENGINE_LIGHT = "engine_light"
    REGEN_FAILED = "regen_failed"
    FILTER_REMOVED = "filter_removed"
    SELF_CAPABLE = "self_capable"
    SMOKE_BLACK = "smoke_black"
    SMOKE_BLUE = "smoke_blue"
    SMOKE_WHITE = "smoke_white"
    SHORT_TRIPS = "short_trips"
    HIGHWAY = "highway"
    ADBLUE = "adblue"
    EGR = "egr"
    FAULT_CODE = "fault_code"


class InvalidSignalPatternError(Exception):
    """Raised when a pattern table entry cannot be compiled."""


@dataclass(frozen=True)
class SignalPattern:
    """One row of the pattern table."""

    signal: str
    pattern: re.Pattern
    negatable: bool = True


# Patterns run against fold_text() output: lowercase, no accents.
# A match under a negation ("ne cale pas", "pas de fumee") does not fire.
DEFAULT_PATTERN_TABLE: list[tuple[str, str]] = [
    (Signal.NON_DRIVABLE, r"\bcal(e|ent|ait)\b|ne (demarre|roule|avance) (plus|pas)|immobilis|"
                          r"en panne|plus rouler|remorqu|depann"),
    (Signal.POWER_LOSS, r"pert\w* de puissance|manque de puissance|plus de puissance|"
                        r"mode (degrade|securite|sans echec)|\bbride\b|n'avance plus|"
                        r"broute|a-coups"),
    (Signal.FILTER_LIGHT, r"voyant.{0,25}\b(fap|dpf|filtre)|\b(fap|dpf|filtre a particules?)\b.{0,25}voyant"),
    (Signal.ENGINE_LIGHT, r"voyant.{0,15}(moteur|orange|injection)|check engine|\bmil\b"),
    (Signal.REGEN_FAILED, r"regen\w*.{0,30}(echou|rate|impossible|marche pas|fonctionne pas|bloque)|"
                          r"(echec|echoue|impossible).{0,20}regen"),
    (Signal.FILTER_REMOVED, r"\b(fap|dpf)\b.{0,15}(supprim|retir|enlev|demonte|vide|perce)|"
                            r"\bdefap|suppression (du )?(fap|dpf)"),
    (Signal.SELF_CAPABLE, r"\b(je peux|je sais|j'arrive a|capable de)\b.{0,30}"
                          r"(demonter|deposer|enlever|retirer|le sortir)|"
                          r"je (le )?(demonte|depose) (moi[- ]meme|seul)"),
    (Signal.SMOKE_BLACK, r"fumee\w*\s+noire"),
    (Signal.SMOKE_BLUE, r"fumee\w*\s+bleu"),
    (Signal.SMOKE_WHITE, r"fumee\w*\s+blanche"),
    (Signal.SHORT_TRIPS, r"trajets? courts?|courts? trajets?|petits? trajets?|\ben ville\b|"
                         r"\burbain|\bcitadin"),
    (Signal.HIGHWAY, r"autoroute|voie rapide|longs? trajets?|grands? trajets?|\bnationale"),
    (Signal.ADBLUE, r"\bad\s?-?blue\b"),
    (Signal.EGR, r"\begr\b"),
    (Signal.FAULT_CODE, r"\b[pcbu][0-3][0-9a-f]{3}\b"),
]


NON_NEGATABLE: frozenset[str] = frozenset({Signal.FAULT_CODE.value})


def compile_patterns(table: Iterable[tuple]) -> list[SignalPattern]:
    """Compile (signal, regex[, negatable]) rows, preserving table order."""
    compiled = []
    for row in table:
        name, raw = row[0], row[1]
        key = name.value if isinstance(name, Signal) else str(name)
        negatable = bool(row[2]) if len(row) > 2 else key not in NON_NEGATABLE
        try:
            compiled.append(SignalPattern(signal=key, pattern=re.compile(raw), negatable=negatable))
        except re.error as exc:
            raise InvalidSignalPatternError(f"Bad pattern for signal '{key}': {exc}") from exc
    return compiled


def load_signal_patterns(path: Optional[str]) -> list[SignalPattern]:
    """Load the pattern table from a JSON file, or the default table.

    The file holds an ordered list of ``{"signal": ..., "pattern": ...}``
    objects, each with an optional ``"negatable"`` flag.
    """
    if not path:
        return compile_patterns(DEFAULT_PATTERN_TABLE)
    rows = json.loads(Path(path).read_text(encoding="utf-8"))
    table = []
    for row in rows:
        if "signal" not in row or "pattern" not in row:
            raise InvalidSignalPatternError(f"Pattern row missing signal/pattern: {row!r}")
        if "negatable" in row:
            table.append((row["signal"], row["pattern"], row["negatable"]))
        else:
            table.append((row["signal"], row["pattern"]))
    logger.info("Loaded %d signal patterns from %s", len(table), path)
    return compile_patterns(table)


DEFAULT_PATTERNS: list[SignalPattern] = compile_patterns(DEFAULT_PATTERN_TABLE)


@dataclass(frozen=True)
class SignalSet:
    """Flags raised by one message, plus the fault codes it quoted."""

    active: frozenset[str] = field(default_factory=frozenset)
    fault_codes: tuple[str, ...] = ()
    names: tuple[str, ...] = ()

    def has(self, signal: str) -> bool:
        key = signal.value if isinstance(signal, Signal) else signal
        return key in self.active

    def __contains__(self, signal: object) -> bool:
        return isinstance(signal, str) and self.has(signal)

    @property
    def fired(self) -> tuple[str, ...]:
        """Active signal names, in pattern-table order."""
        return tuple(name for name in self.names if name in self.active)

    def as_dict(self) -> dict[str, bool]:
        """Every known signal name mapped to whether it fired."""
        return {name: name in self.active for name in self.names}


def extract_signals(
    text: str, patterns: Optional[Sequence[SignalPattern]] = None
) -> SignalSet:
    """Match every pattern against the folded text. Pure and deterministic."""
    table = DEFAULT_PATTERNS if patterns is None else patterns
    folded = fold_text(text or "")
    active = set()
    codes: list[str] = []
    for row in table:
        if row.signal == Signal.FAULT_CODE.value:
            for match in row.pattern.finditer(folded):
                code = match.group(0).upper()
                if code not in codes:
                    codes.append(code)
            if codes:
                active.add(row.signal)
        elif row.negatable and search_affirmed(row.pattern, folded):
            active.add(row.signal)
        elif not row.negatable and row.pattern.search(folded):
            active.add(row.signal)

    signals = SignalSet(
        active=frozenset(active),
        fault_codes=tuple(codes),
        names=tuple(dict.fromkeys(row.signal for row in table)),
    )
    logger.debug("Signals: %s codes=%s", sorted(signals.active), list(signals.fault_codes))
    return signals
