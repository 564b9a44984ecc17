"""
Finite state machine for the conversation stage.

Two stages: GATHERING (required slots still missing) and READY_TO_OFFER.
The only transitions defined move forward or stay put, so once a session
is ready to offer it never regresses, even when routing later asks for
postcode or plate.

Usage:
    sm = StageMachine()
    sm.advance(required_filled=True)
    assert sm.current_stage == ConversationStage.READY_TO_OFFER
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ConversationStage(str, Enum):
    GATHERING = "GATHERING"
    READY_TO_OFFER = "READY_TO_OFFER"


class StageTrigger(str, Enum):
    """Events evaluated once per turn."""
    SLOTS_STILL_MISSING = "slots_still_missing"
    REQUIRED_SLOTS_FILLED = "required_slots_filled"


@dataclass(frozen=True)
class Transition:
    from_stage: ConversationStage
    to_stage: ConversationStage
    trigger: StageTrigger


@dataclass
class StageEntry:
    """Recorded history entry for a stage visit."""
    stage: ConversationStage
    entered_at: datetime
    trigger: Optional[StageTrigger] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current stage."""


class StageMachine:
    """Deterministic, monotonic stage tracker for one session."""

    TRANSITIONS: list[Transition] = [
        Transition(ConversationStage.GATHERING, ConversationStage.GATHERING,
                   StageTrigger.SLOTS_STILL_MISSING),
        Transition(ConversationStage.GATHERING, ConversationStage.READY_TO_OFFER,
                   StageTrigger.REQUIRED_SLOTS_FILLED),
        Transition(ConversationStage.READY_TO_OFFER, ConversationStage.READY_TO_OFFER,
                   StageTrigger.REQUIRED_SLOTS_FILLED),
        Transition(ConversationStage.READY_TO_OFFER, ConversationStage.READY_TO_OFFER,
                   StageTrigger.SLOTS_STILL_MISSING),
    ]

    def __init__(self) -> None:
        self._current_stage = ConversationStage.GATHERING
        self._history: list[StageEntry] = [
            StageEntry(stage=ConversationStage.GATHERING, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_stage(self) -> ConversationStage:
        return self._current_stage

    def transition(self, trigger: StageTrigger) -> ConversationStage:
        """
        Execute a stage transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_stage == self._current_stage and t.trigger == trigger:
                old_stage = self._current_stage
                self._current_stage = t.to_stage
                if old_stage != self._current_stage:
                    self._history.append(StageEntry(
                        stage=self._current_stage,
                        entered_at=datetime.now(timezone.utc),
                        trigger=trigger,
                    ))
                    logger.info(
                        "Stage transition: %s -> %s (trigger: %s)",
                        old_stage.value, self._current_stage.value, trigger.value,
                    )
                return self._current_stage

        valid = [t.trigger.value for t in self.TRANSITIONS if t.from_stage == self._current_stage]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_stage.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def advance(self, required_filled: bool) -> ConversationStage:
        """Evaluate the stage for this turn."""
        trigger = (
            StageTrigger.REQUIRED_SLOTS_FILLED if required_filled
            else StageTrigger.SLOTS_STILL_MISSING
        )
        return self.transition(trigger)

    def is_ready(self) -> bool:
        return self._current_stage == ConversationStage.READY_TO_OFFER

    def get_history(self) -> list[StageEntry]:
        return list(self._history)

    def get_stage_trace(self) -> list[str]:
        return [entry.stage.value for entry in self._history]
