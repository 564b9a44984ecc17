from refap.agents.diagnostic_agent import AgentReply, DiagnosticAgent, meta_payload

__all__ = ["DiagnosticAgent", "AgentReply", "meta_payload"]
