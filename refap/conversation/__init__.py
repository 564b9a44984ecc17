from refap.conversation.guardrails import GuardrailPipeline
from refap.conversation.routing import decide_routing
from refap.conversation.scoring import compute_fault_score
from refap.conversation.session import SessionManager, TurnResult
from refap.conversation.signals import Signal, extract_signals
from refap.conversation.slot_manager import SlotName, SlotStore, soft_extract_slots
from refap.conversation.state_machine import ConversationStage, StageMachine, StageTrigger

__all__ = [
    "extract_signals",
    "Signal",
    "soft_extract_slots",
    "SlotStore",
    "SlotName",
    "compute_fault_score",
    "decide_routing",
    "StageMachine",
    "ConversationStage",
    "StageTrigger",
    "SessionManager",
    "TurnResult",
    "GuardrailPipeline",
]
