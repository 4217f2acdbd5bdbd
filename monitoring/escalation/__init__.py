"""
Escalation Package.

Time-based escalation of unacknowledged alerts.
"""

from .policy import (
    EscalationStep,
    EscalationPolicy,
    determine_step,
)
from .engine import (
    SweepSummary,
    DispatchResult,
    EscalationEngine,
    recipient_address,
)


__all__ = [
    # Policy
    "EscalationStep",
    "EscalationPolicy",
    "determine_step",

    # Engine
    "SweepSummary",
    "DispatchResult",
    "EscalationEngine",
    "recipient_address",
]
