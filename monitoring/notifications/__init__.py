"""
Notifications Package.

Delivery gateways, real-time broadcast and message formatting
for alert escalation.
"""

from .gateways import (
    EmailGateway,
    SmsGateway,
    HttpEmailGateway,
    TwilioSmsGateway,
)
from .broadcast import (
    ALERTS_TOPIC,
    employee_topic,
    Broadcaster,
    Subscription,
    InProcessBroadcaster,
)
from .formatter import (
    EscalationContext,
    EscalationFormatter,
    format_local_time,
)


__all__ = [
    # Gateways
    "EmailGateway",
    "SmsGateway",
    "HttpEmailGateway",
    "TwilioSmsGateway",

    # Broadcast
    "ALERTS_TOPIC",
    "employee_topic",
    "Broadcaster",
    "Subscription",
    "InProcessBroadcaster",

    # Formatting
    "EscalationContext",
    "EscalationFormatter",
    "format_local_time",
]
