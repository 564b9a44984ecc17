"""
Guardrails around the model boundary.

Input side: the customer message must be a non-empty string of bounded
length before it touches the decision core.

Output side: the model's assembled text is post-processed before it
reaches the customer:
1. LinkGuardrail: strips URLs (links are only ever offered as CTAs)
2. BrandGuardrail: removes configured brand names
3. CtaMentionGuardrail: keeps only the first line mentioning each CTA
4. PersonaGuardrail: flags AI self-references (reported, not rewritten)

Composed into a GuardrailPipeline used by the diagnostic agent.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from refap.config import settings
from refap.schemas.routing_schema import Cta
from refap.utils import fold_text

logger = logging.getLogger(__name__)

URL_RE = re.compile(r"(?:https?://|www\.)[^\s<>()\]\[]+", re.IGNORECASE)
MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\((?:https?://|www\.)[^)]+\)", re.IGNORECASE)


@dataclass
class GuardrailResult:
    """Outcome of a single guardrail check."""
    passed: bool
    violation_type: Optional[str] = None
    message: Optional[str] = None
    severity: str = "warning"  # "warning" | "block" | "rewrite"


@dataclass
class SanitizedReply:
    text: str
    violations: list[GuardrailResult] = field(default_factory=list)


class InputGuardrail:
    """Validates the raw customer message."""

    def __init__(self, max_chars: Optional[int] = None) -> None:
        self.max_chars = max_chars or settings.conversation.max_message_chars

    def check_message(self, message: object) -> GuardrailResult:
        if not isinstance(message, str) or not message.strip():
            return GuardrailResult(
                passed=False,
                violation_type="missing_message",
                message="message (string) requis",
                severity="block",
            )
        if len(message) > self.max_chars:
            return GuardrailResult(
                passed=False,
                violation_type="message_too_long",
                message=f"message trop long (max {self.max_chars} caractères)",
                severity="block",
            )
        return GuardrailResult(passed=True)


class LinkGuardrail:
    """Removes URLs; links are delivered through CTAs only."""

    def apply(self, text: str) -> tuple[str, GuardrailResult]:
        cleaned = MARKDOWN_LINK_RE.sub(r"\1", text)
        cleaned = URL_RE.sub("", cleaned)
        if cleaned == text:
            return text, GuardrailResult(passed=True)
        return cleaned, GuardrailResult(
            passed=False,
            violation_type="url_in_reply",
            message="Reply contained links, stripped.",
            severity="rewrite",
        )


class BrandGuardrail:
    """Removes configured brand names from the reply."""

    def __init__(self, brands: Optional[Iterable[str]] = None) -> None:
        names = list(settings.business.stripped_brands if brands is None else brands)
        self._pattern = (
            re.compile(
                r"\b(?:" + "|".join(re.escape(b) for b in sorted(names, key=len, reverse=True)) + r")\b",
                re.IGNORECASE,
            )
            if names else None
        )

    def apply(self, text: str) -> tuple[str, GuardrailResult]:
        if self._pattern is None or not self._pattern.search(text):
            return text, GuardrailResult(passed=True)
        cleaned = self._pattern.sub("", text)
        return cleaned, GuardrailResult(
            passed=False,
            violation_type="brand_in_reply",
            message="Reply mentioned a brand name, stripped.",
            severity="rewrite",
        )


class CtaMentionGuardrail:
    """Drops repeated lines that mention the same CTA label."""

    def apply(self, text: str, ctas: Sequence[Cta]) -> tuple[str, GuardrailResult]:
        labels = [fold_text(c.label) for c in ctas]
        seen: set[str] = set()
        kept = []
        dropped = 0
        for line in text.splitlines():
            folded = fold_text(line)
            hits = {label for label in labels if label and label in folded}
            if hits and hits <= seen:
                dropped += 1
                continue
            seen |= hits
            kept.append(line)
        if not dropped:
            return text, GuardrailResult(passed=True)
        return "\n".join(kept), GuardrailResult(
            passed=False,
            violation_type="duplicate_cta_mention",
            message=f"Dropped {dropped} repeated CTA mention(s).",
            severity="rewrite",
        )


class PersonaGuardrail:
    """Flags persona breaks in the model output."""

    FORBIDDEN_PATTERNS = [
        "en tant qu'ia", "en tant qu'intelligence artificielle", "modele de langage",
        "as an ai", "as a language model", "je suis une ia",
    ]

    def check_persona(self, response_text: str) -> GuardrailResult:
        lower = fold_text(response_text)
        for pattern in self.FORBIDDEN_PATTERNS:
            if pattern in lower:
                return GuardrailResult(
                    passed=False,
                    violation_type="persona_break",
                    message=f"Response breaks persona with: '{pattern}'.",
                    severity="warning",
                )
        return GuardrailResult(passed=True)


def _tidy(text: str) -> str:
    lines = [re.sub(r"[ \t]{2,}", " ", line).strip() for line in text.splitlines()]
    # French typography keeps the space before ; : ! ?
    lines = [re.sub(r"\s+([,.])", r"\1", line) for line in lines]
    out = "\n".join(lines)
    out = re.sub(r"\n{3,}", "\n\n", out)
    out = re.sub(r"\(\s*\)", "", out)
    return out.strip()


class GuardrailPipeline:
    """Composes the input check and the reply post-processing."""

    def __init__(self, brands: Optional[Iterable[str]] = None) -> None:
        self.input = InputGuardrail()
        self.links = LinkGuardrail()
        self.brands = BrandGuardrail(brands)
        self.cta_mentions = CtaMentionGuardrail()
        self.persona = PersonaGuardrail()

    def check_user_input(self, message: object) -> Optional[GuardrailResult]:
        """Pre-core: returns the violation, or None when the message is usable."""
        result = self.input.check_message(message)
        return None if result.passed else result

    def sanitize_reply(self, text: str, ctas: Sequence[Cta] = ()) -> SanitizedReply:
        """Post-LLM: strip links and brands, dedupe CTA mentions, flag persona breaks."""
        violations: list[GuardrailResult] = []
        cleaned, result = self.links.apply(text or "")
        violations.append(result)
        cleaned, result = self.brands.apply(cleaned)
        violations.append(result)
        cleaned, result = self.cta_mentions.apply(cleaned, ctas)
        violations.append(result)
        violations.append(self.persona.check_persona(cleaned))

        failed = [v for v in violations if not v.passed]
        for v in failed:
            logger.info("Reply guardrail: %s (%s)", v.violation_type, v.message)
        return SanitizedReply(text=_tidy(cleaned), violations=failed)
