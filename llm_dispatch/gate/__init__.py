"""Pre-dispatch outcome gate."""

from llm_dispatch.gate.outcome_gate import OutcomeGate, detect_decline_reason, needs_special_care

__all__ = ["OutcomeGate", "detect_decline_reason", "needs_special_care"]
