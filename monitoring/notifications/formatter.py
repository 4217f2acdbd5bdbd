"""
Escalation Message Formatter.

============================================================
PURPOSE
============================================================
Render one escalation step for each delivery channel.

- Email: [ESCALATED] subject, escaped HTML and plain text
- SMS: single short line
- Websocket: alert:escalated event payload

Times are shown in the responder's own timezone.

============================================================
"""

import html
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from core.clock import to_local
from database.models import AlertRecord, Employee


SEVERITY_COLORS = {
    "low": "#2e7d32",
    "medium": "#f9a825",
    "high": "#ef6c00",
    "critical": "#c62828",
}


@dataclass(frozen=True)
class EscalationContext:
    """Everything a message needs about the step being escalated."""

    alert: AlertRecord
    agent_name: str
    policy_name: str
    step_order: int
    minutes_unacknowledged: int


def format_local_time(moment: datetime, tz_name: Optional[str]) -> str:
    local = to_local(moment, tz_name)
    return local.strftime("%Y-%m-%d %H:%M:%S %Z")


class EscalationFormatter:
    """Formats escalation notifications."""

    def __init__(self, dashboard_url: str = "http://localhost:3000"):
        self._dashboard_url = dashboard_url.rstrip("/")

    def alert_url(self, alert_id: int) -> str:
        return f"{self._dashboard_url}/alerts/{alert_id}"

    # --------------------------------------------------------
    # EMAIL
    # --------------------------------------------------------

    def email_subject(self, ctx: EscalationContext) -> str:
        return f"[ESCALATED] Alert: {ctx.alert.title} - {ctx.alert.severity.upper()}"

    def email_html(self, ctx: EscalationContext, recipient: Employee) -> str:
        alert = ctx.alert
        color = SEVERITY_COLORS.get(alert.severity, "#455a64")
        triggered = format_local_time(alert.triggered_at, recipient.timezone)
        url = html.escape(self.alert_url(alert.id), quote=True)

        return "\n".join([
            "<html><body style=\"font-family: sans-serif;\">",
            f"<h2 style=\"color: {color};\">Escalated alert: {html.escape(alert.title)}</h2>",
            f"<p>Hello {html.escape(recipient.first_name)},</p>",
            (
                f"<p>This <b>{html.escape(alert.severity.upper())}</b> alert on "
                f"<b>{html.escape(ctx.agent_name)}</b> has not been acknowledged for "
                f"<b>{ctx.minutes_unacknowledged} minutes</b>.</p>"
            ),
            "<table cellpadding=\"4\">",
            f"<tr><td>Description</td><td>{html.escape(alert.description)}</td></tr>",
            f"<tr><td>Metric</td><td>{html.escape(alert.metric_type)}</td></tr>",
            f"<tr><td>Triggered</td><td>{html.escape(triggered)}</td></tr>",
            (
                f"<tr><td>Policy</td><td>{html.escape(ctx.policy_name)} "
                f"(step {ctx.step_order})</td></tr>"
            ),
            "</table>",
            f"<p><a href=\"{url}\">View alert in dashboard</a></p>",
            "</body></html>",
        ])

    def email_text(self, ctx: EscalationContext, recipient: Employee) -> str:
        alert = ctx.alert
        triggered = format_local_time(alert.triggered_at, recipient.timezone)
        return "\n".join([
            f"ESCALATED ALERT: {alert.title}",
            "",
            f"Hello {recipient.first_name},",
            "",
            (
                f"This {alert.severity.upper()} alert on {ctx.agent_name} has not been "
                f"acknowledged for {ctx.minutes_unacknowledged} minutes."
            ),
            "",
            f"Description: {alert.description}",
            f"Metric: {alert.metric_type}",
            f"Triggered: {triggered}",
            f"Policy: {ctx.policy_name} (step {ctx.step_order})",
            "",
            f"View alert: {self.alert_url(alert.id)}",
        ])

    # --------------------------------------------------------
    # SMS
    # --------------------------------------------------------

    def sms_body(self, ctx: EscalationContext) -> str:
        return (
            f"[ESCALATED] {ctx.alert.severity.upper()} Alert: {ctx.alert.title} "
            f"on {ctx.agent_name}. Unacknowledged for {ctx.minutes_unacknowledged} minutes. "
            f"Please check dashboard."
        )

    # --------------------------------------------------------
    # WEBSOCKET
    # --------------------------------------------------------

    def websocket_payload(self, ctx: EscalationContext) -> Dict[str, Any]:
        data = ctx.alert.to_dict()
        data["agent_name"] = ctx.agent_name
        return {
            "type": "alert:escalated",
            "data": {
                "alert": data,
                "escalation": {
                    "policy_name": ctx.policy_name,
                    "step_number": ctx.step_order,
                    "minutes_unacknowledged": ctx.minutes_unacknowledged,
                },
            },
        }


__all__ = [
    "EscalationContext",
    "EscalationFormatter",
    "format_local_time",
]
