"""Shared utilities used across the diagnostic bot."""

import re
import unicodedata
from typing import Optional


def fold_text(value: str) -> str:
    """Lowercase and strip diacritics, keeping a 1:1 character alignment.

    Each input character maps to exactly one output character, so a match
    span found in the folded text can be sliced out of the original.

    Examples:
        >>> fold_text("Fumée NOIRE à l'accélération")
        "fumee noire a l'acceleration"
    """
    out = []
    for ch in value:
        base = "".join(
            c for c in unicodedata.normalize("NFD", ch) if not unicodedata.combining(c)
        )
        folded = (base or ch).lower()
        out.append(folded[:1] or ch)
    return "".join(out)


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("06 12 34 56 78")
        '0612345678'
        >>> normalize_phone("+33 (6) 12-34-56-78")
        '+33612345678'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def truncate(value: str, limit: int) -> str:
    """Trim whitespace and cut to at most ``limit`` characters."""
    value = " ".join(value.split())
    if len(value) <= limit:
        return value
    return value[: max(limit - 1, 0)].rstrip() + "…"


def is_present(value: object) -> bool:
    """A slot is present when it holds a non-empty trimmed string."""
    return isinstance(value, str) and bool(value.strip())


# Negation is read inside the clause around a match; these split clauses.
_CLAUSE_BREAK_RE = re.compile(r"[,.;:!?|()\n]|\b(?:mais|et|ou)\b")
_NEGATOR_BEFORE_RE = re.compile(
    r"\b(pas|jamais|plus|sans|aucune?|rien|ni|non|guere)\b"
    r"(?:\s+(?:de|du|des|la|le|les|un|une|en|tres|trop|vraiment|encore|si|tout))*"
    r"(?:\s+|\s*[dl]')$"
)
_NEGATOR_AFTER_RE = re.compile(r"\s*(?:pas(?!\s+mal)|jamais|point|guere)\b")
_PLUS_AFTER_RE = re.compile(r"\s*plus\b")
_NE_RE = re.compile(r"(?:^|\s)(?:ne\s|n')")


def is_negated(folded: str, start: int, end: int) -> bool:
    """Whether the span ``folded[start:end]`` sits under a French negation.

    ``folded`` is ``fold_text`` output. Catches "ne cale pas", "pas urgent",
    "n'est plus immobilisee" and "pas de perte de puissance". "plus" only
    negates alongside "ne", so "de plus en plus de fumee" stays affirmative.
    """
    breaks = list(_CLAUSE_BREAK_RE.finditer(folded, 0, start))
    clause = folded[breaks[-1].end() if breaks else 0:start]
    has_ne = bool(_NE_RE.search(clause))
    before = _NEGATOR_BEFORE_RE.search(clause)
    if before and (before.group(1) != "plus" or has_ne):
        return True
    tail = folded[end:end + 12]
    if _NEGATOR_AFTER_RE.match(tail):
        return True
    return has_ne and bool(_PLUS_AFTER_RE.match(tail))


def search_affirmed(pattern: re.Pattern, folded: str) -> Optional[re.Match]:
    """First match of ``pattern`` in ``folded`` that is not negated."""
    for match in pattern.finditer(folded):
        if not is_negated(folded, match.start(), match.end()):
            return match
    return None
