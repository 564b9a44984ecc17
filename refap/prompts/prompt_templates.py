"""Dynamic prompt construction and the static fallback script."""

from typing import Iterable, Mapping, Optional

from refap.conversation.slot_manager import get_definition
from refap.conversation.state_machine import ConversationStage
from refap.prompts.system_prompts import BOT_PERSONA, GATHERING_RULES, READY_RULES
from refap.schemas.routing_schema import Route, RoutingDecision

ROUTE_GUIDANCE: dict[Route, str] = {
    Route.PARTNER_GARAGE: (
        "Solution recommandée : un diagnostic dans un garage partenaire, qui confirmera "
        "l'encrassement du FAP et prendra en charge démontage et nettoyage."
    ),
    Route.SELF_REMOVE_PARTNER_SHOP: (
        "Solution recommandée : le client démonte lui-même le FAP et le dépose en magasin "
        "partenaire pour un nettoyage."
    ),
    Route.LIKELY_BUT_UNCERTAIN: (
        "Un encrassement du FAP est possible mais pas certain : recommande un diagnostic "
        "avant toute intervention."
    ),
    Route.GENERIC: (
        "Les éléments ne pointent pas clairement vers le FAP : oriente vers un garage "
        "pour un diagnostic général."
    ),
}

FALLBACK_ROUTE_TEXT: dict[Route, str] = {
    Route.PARTNER_GARAGE: (
        "D'après ce que vous décrivez, un encrassement du filtre à particules est probable. "
        "Le plus sûr est un diagnostic dans un garage partenaire, qui pourra aussi s'occuper "
        "du nettoyage."
    ),
    Route.SELF_REMOVE_PARTNER_SHOP: (
        "Vos symptômes correspondent bien à un FAP encrassé. Puisque vous pouvez le démonter "
        "vous-même, vous pouvez le déposer en magasin partenaire pour un nettoyage."
    ),
    Route.LIKELY_BUT_UNCERTAIN: (
        "Un encrassement du filtre à particules est possible, mais il faut le confirmer. "
        "Je vous conseille un diagnostic avant toute intervention."
    ),
    Route.GENERIC: (
        "Pour l'instant rien ne désigne clairement le filtre à particules. "
        "Un garage pourra faire un diagnostic complet."
    ),
}

GATHERING_OPENER = "Merci pour ces précisions."
DEGRADED_OPENER = "Je rencontre un petit souci technique, mais voici ce que je peux déjà vous dire."
IMMOBILISED_ADVICE = "Si le véhicule est immobilisé ou en mode dégradé, évitez de rouler avec."


def build_slot_summary(slots: Mapping[str, str]) -> str:
    lines = []
    for key, value in slots.items():
        lines.append(f"  {get_definition(key).display_name}: {value}")
    return "\n".join(lines) if lines else "  (rien pour l'instant)"


def build_turn_prompt(
    stage: ConversationStage,
    decision: RoutingDecision,
    slots: Mapping[str, str],
    next_question: Optional[str],
    passages: Iterable[str] = (),
) -> str:
    """System prompt for one turn: persona + stage + routing context."""
    parts = [BOT_PERSONA]
    parts.append("Informations recueillies :\n" + build_slot_summary(slots))

    if stage == ConversationStage.GATHERING:
        parts.append(GATHERING_RULES)
    else:
        parts.append(READY_RULES)
        parts.append(ROUTE_GUIDANCE[decision.route])
        if decision.severe:
            parts.append("Situation jugée sérieuse : " + IMMOBILISED_ADVICE)
        if decision.ctas:
            labels = ", ".join(f"« {cta.label} »" for cta in decision.ctas)
            parts.append(f"Boutons affichés au client : {labels}.")

    if next_question:
        parts.append(f"Question à poser : {next_question}")
    else:
        parts.append("Ne pose pas de nouvelle question, conclus en invitant à utiliser les boutons.")

    snippets = [p for p in passages if p]
    if snippets:
        parts.append("Cas techniques proches (pour contexte, ne pas citer tels quels) :\n"
                     + "\n".join(f"- {s}" for s in snippets))
    return "\n\n".join(parts)


def build_messages(
    system_prompt: str, history: Iterable[Mapping[str, str]], user_message: str
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": user_message})
    return messages


def build_fallback_reply(
    stage: ConversationStage,
    decision: RoutingDecision,
    next_question: Optional[str],
    degraded: bool = False,
) -> str:
    """Scripted reply used when no model is configured or the model call failed."""
    parts = [DEGRADED_OPENER] if degraded else []
    if stage == ConversationStage.GATHERING:
        if not degraded:
            parts.append(GATHERING_OPENER)
    else:
        parts.append(FALLBACK_ROUTE_TEXT[decision.route])
    if decision.severe:
        parts.append(IMMOBILISED_ADVICE)
    if next_question:
        parts.append(next_question)
    elif decision.ctas:
        parts.append("Vous trouverez les options adaptées juste en dessous.")
    return " ".join(parts)
