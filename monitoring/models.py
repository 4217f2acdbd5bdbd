"""
Monitoring - Domain Models.

============================================================
PURPOSE
============================================================
Value types shared by the alert ledger and the escalation
engine: severities, metric types, channels, the candidate
alert handed over by the threshold evaluator, and history
filters.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from core.exceptions import ValidationError


# ============================================================
# ENUMS
# ============================================================

class AlertSeverity(str, Enum):
    """Alert severity, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MetricType(str, Enum):
    """
    Metric families. Declaration order is the tie-break priority
    when choosing the dominant metric.
    """

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"

    @property
    def snapshot_key(self) -> str:
        return f"{self.value}_percent"


class Channel(str, Enum):
    """Escalation delivery channels, in dispatch order."""

    EMAIL = "email"
    SMS = "sms"
    WEBSOCKET = "websocket"


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def parse_severity(value: Any) -> AlertSeverity:
    try:
        return AlertSeverity(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown severity: {value}", field="severity", value=value) from None


# ============================================================
# CANDIDATE ALERT
# ============================================================

@dataclass
class CandidateAlert:
    """
    A fired condition, as handed over by the threshold evaluator.

    `metric_snapshot` carries cpu_percent / memory_percent /
    disk_percent (any may be missing) and optionally timestamp.
    """

    agent_id: str
    alert_type: str
    severity: AlertSeverity
    indicator_count: int
    contributing_indicators: Dict[str, Any] = field(default_factory=dict)
    metric_snapshot: Dict[str, Any] = field(default_factory=dict)
    configuration_id: Optional[str] = None
    alert_name: Optional[str] = None
    notify_email: bool = True
    notify_dashboard: bool = True
    notify_websocket: bool = True

    def __post_init__(self):
        if not self.agent_id:
            raise ValidationError("Candidate alert requires agent_id", field="agent_id")
        if not self.alert_type:
            raise ValidationError("Candidate alert requires alert_type", field="alert_type")
        self.severity = parse_severity(
            self.severity.value if isinstance(self.severity, AlertSeverity) else self.severity
        )
        if self.indicator_count < 0:
            raise ValidationError(
                "indicator_count must be >= 0",
                field="indicator_count",
                value=self.indicator_count,
            )

    @property
    def dominant_metric(self) -> MetricType:
        """
        Metric with the largest snapshot value.

        Ties go to the earlier member of MetricType (cpu, memory,
        disk); missing values count as lowest.
        """
        best = MetricType.CPU
        best_value: Optional[float] = None
        for metric in MetricType:
            raw = self.metric_snapshot.get(metric.snapshot_key)
            if raw is None:
                continue
            value = float(raw)
            if best_value is None or value > best_value:
                best, best_value = metric, value
        return best

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CandidateAlert":
        """Build from the evaluator's camelCase or snake_case payload."""
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        return cls(
            agent_id=pick("agent_id", "agentId"),
            alert_type=pick("alert_type", "alertType"),
            severity=pick("severity"),
            indicator_count=int(pick("indicator_count", "indicatorCount", default=0)),
            contributing_indicators=dict(
                pick("contributing_indicators", "contributingIndicators", default={}) or {}
            ),
            metric_snapshot=dict(pick("metric_snapshot", "metricSnapshot", default={}) or {}),
            configuration_id=pick("configuration_id", "configurationId"),
            alert_name=pick("alert_name", "alertName"),
            notify_email=bool(pick("notify_email", "notifyEmail", default=True)),
            notify_dashboard=bool(pick("notify_dashboard", "notifyDashboard", default=True)),
            notify_websocket=bool(pick("notify_websocket", "notifyWebsocket", default=True)),
        )


# ============================================================
# HISTORY FILTERS
# ============================================================

@dataclass
class AlertFilters:
    """
    Composable history filters. None means "don't filter";
    acknowledged/resolved are tri-state.
    """

    agent_id: Optional[str] = None
    metric_type: Optional[str] = None
    alert_type: Optional[str] = None
    severity: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    acknowledged: Optional[bool] = None
    resolved: Optional[bool] = None
    limit: int = 100
    offset: int = 0

    def __post_init__(self):
        if self.limit < 1:
            raise ValidationError("limit must be >= 1", field="limit", value=self.limit)
        if self.offset < 0:
            raise ValidationError("offset must be >= 0", field="offset", value=self.offset)


__all__ = [
    "AlertSeverity",
    "MetricType",
    "Channel",
    "NotificationStatus",
    "ClaimStatus",
    "parse_severity",
    "CandidateAlert",
    "AlertFilters",
]
