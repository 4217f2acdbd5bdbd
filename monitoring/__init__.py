"""
Monitoring & Alerting Package.

============================================================
PURPOSE
============================================================
Alert ledger and time-based escalation for monitored agents.

PRINCIPLES:
1. DURABLE - An alert is saved before anyone is told about it
2. DEDUPLICATED - One open alert per (agent, metric, alert type)
3. AT-MOST-ONCE - Each escalation step is delivered once
4. ISOLATED - One failing policy, alert or channel never blocks
   the others

============================================================
"""

from .models import (
    # Enums
    AlertSeverity,
    MetricType,
    Channel,
    NotificationStatus,
    ClaimStatus,

    # Values
    parse_severity,
    CandidateAlert,
    AlertFilters,
)

from .alerts import AlertLedger

from .escalation import (
    EscalationStep,
    EscalationPolicy,
    determine_step,
    SweepSummary,
    EscalationEngine,
)

from .notifications import (
    EmailGateway,
    SmsGateway,
    HttpEmailGateway,
    TwilioSmsGateway,
    Broadcaster,
    InProcessBroadcaster,
    EscalationFormatter,
)


__all__ = [
    # Models
    "AlertSeverity",
    "MetricType",
    "Channel",
    "NotificationStatus",
    "ClaimStatus",
    "parse_severity",
    "CandidateAlert",
    "AlertFilters",

    # Ledger
    "AlertLedger",

    # Escalation
    "EscalationStep",
    "EscalationPolicy",
    "determine_step",
    "SweepSummary",
    "EscalationEngine",

    # Notifications
    "EmailGateway",
    "SmsGateway",
    "HttpEmailGateway",
    "TwilioSmsGateway",
    "Broadcaster",
    "InProcessBroadcaster",
    "EscalationFormatter",
]
