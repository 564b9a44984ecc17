"""
Offline console demo: runs a diagnostic conversation without any API keys.

Uses the real signal extraction, slot store, fault score, routing table
and stage machine. The model is replaced by the static fallback script,
so no network call is ever made.

Usage:
    python console_demo.py
    python console_demo.py --scenario filter
    python console_demo.py --scenario stalled
"""

import argparse
from typing import Optional

from refap.config import settings
from refap.conversation.guardrails import GuardrailPipeline
from refap.conversation.session import ConversationSession, SessionManager, TurnResult
from refap.prompts.prompt_templates import build_fallback_reply

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"


class ConsoleSession:
    """One conversation in the terminal, driven by the decision core."""

    # Pre-scripted scenarios for --scenario flag
    SCENARIOS: dict[str, list[str]] = {
        "filter": [
            "Bonjour, voyant FAP allumé, perte de puissance, trajets courts en ville",
            "Peugeot 308 1.6 HDi",
            "oui je peux le démonter moi-même",
        ],
        "stalled": [
            "ça cale et ne démarre plus",
            "Renault Megane 1.5 dCi",
            "75011",
            "AB-123-CD",
        ],
        "vehicle": [
            "Peugeot 206 1.6 HDi 2010",
            "fumée noire en ville",
            "mode dégradé",
        ],
        "contact": [
            "Citroen C4 2.0 HDi, voyant moteur et code P2002, je roule surtout sur autoroute",
            "je m'appelle Julie Martin, 06 12 34 56 78",
        ],
    }

    def __init__(self) -> None:
        self.manager = SessionManager()
        self.guardrails = GuardrailPipeline()
        self.session, _ = self.manager.get_or_create(None)

    def bot_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[{settings.business.bot_name}]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {settings.business.bot_name.upper()} - {title}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    def _greet(self) -> None:
        self.bot_say(
            "Bonjour ! Décrivez-moi ce qui arrive à votre véhicule "
            "(voyants, symptômes, type de trajets)."
        )

    def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        self._greet()
        for step in steps:
            print(f"\n{BLUE}[Client] {RESET}{step}")
            self._process_input(step)
        self._summary(f"Scenario '{scenario}' complete.")

    def run(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        self._greet()

        while True:
            user_input = input(f"\n{BLUE}[Client] {RESET}").strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                break
            self._process_input(user_input)
        self._summary("Session ended.")

    def _process_input(self, text: str) -> Optional[TurnResult]:
        violation = self.guardrails.check_user_input(text)
        if violation is not None:
            self.bot_say(violation.message)
            return None

        result = self.manager.process_turn(self.session, text)
        reply = build_fallback_reply(
            result.stage, result.decision, result.next_question, degraded=result.degraded
        )
        reply = self.guardrails.sanitize_reply(reply, result.decision.ctas).text
        self.session.add_exchange(text, reply)

        if result.changed_slots:
            self.system_log(f"Slots: {', '.join(result.changed_slots)}")
        if result.signals.fired:
            self.system_log(f"Signals: {', '.join(result.signals.fired)}")
        self.system_log(
            f"Stage: {result.stage.value} | score={result.decision.score} "
            f"({result.decision.tier}) | route={result.decision.route.value}"
        )
        self.bot_say(reply)
        for cta in result.decision.ctas:
            marker = "*" if result.decision.primary and cta.id == result.decision.primary.id else "-"
            print(f"{YELLOW}    {marker} {cta.label}  <{cta.url}>{RESET}")
        return result

    def _summary(self, title: str) -> None:
        session: ConversationSession = self.session
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {title}{RESET}")
        print(f"{DIM}  Stage trace: {' -> '.join(session.stage_machine.get_stage_trace())}{RESET}")
        print(f"{DIM}  Slot stats: {session.slots.get_stats()}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    args = parser.parse_args(argv)

    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
