"""
Database ORM Models - All Tables.

============================================================
ALERTING PIPELINE SCHEMA
============================================================

Defines the tables the pipeline reads and writes:
- users / agent_devices: aggregation settings
- agent_metrics: raw samples (written by ingestion)
- agent_metric_candles: OHLC buckets
- alert_history: fired alerts
- employees / roles / employee_roles: escalation audience
- alert_escalation_policies: escalation schedules
- alert_notifications: per-dispatch ledger
- alert_escalation_step_claims: one row per escalated step

All timestamps are timezone-aware UTC and are set from the
injected clock, never from server defaults.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.clock import ensure_utc
from .engine import Base


# =============================================================
# COLUMN TYPES
# =============================================================

# SQLite only autoincrements plain INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

JSONDocument = JSON().with_variant(JSONB, "postgresql")


def generate_uuid() -> str:
    """Generate a new UUID."""
    return str(uuid.uuid4())


# =============================================================
# 1. USERS
# =============================================================

class User(Base):
    """
    Account owner. Carries the account-wide default resolution.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    default_aggregation_level: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True, default="raw"
    )

    agents: Mapped[List["Agent"]] = relationship(back_populates="owner")


# =============================================================
# 2. AGENT DEVICES
# =============================================================

class Agent(Base):
    """
    Monitored device. `aggregation_level` is the device override
    (NULL means use the owner's default).
    """
    __tablename__ = "agent_devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    hostname: Mapped[str] = mapped_column(String(255), nullable=False)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    aggregation_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    owner: Mapped[Optional[User]] = relationship(back_populates="agents")

    @property
    def display_name(self) -> str:
        return self.device_name or self.hostname


# =============================================================
# 3. RAW METRIC SAMPLES
# =============================================================

class MetricSample(Base):
    """
    One raw observation.

    Source: agent ingestion path
    Retention: short; superseded by candles
    """
    __tablename__ = "agent_metrics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(
        ForeignKey("agent_devices.id", ondelete="CASCADE"), nullable=False
    )
    collected_at: Mapped[datetime] = mapped_column(nullable=False)
    cpu_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    memory_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    disk_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_agent_metrics_agent_time", "agent_id", "collected_at"),
    )


# =============================================================
# 4. OHLC CANDLES
# =============================================================

class MetricCandle(Base):
    """
    Time-bucketed OHLC summary of one agent's metrics.

    Source: aggregation.candle_aggregator
    Update Frequency: every live run (upsert)
    Retention: 365 days by default
    """
    __tablename__ = "agent_metric_candles"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(
        ForeignKey("agent_devices.id", ondelete="CASCADE"), nullable=False
    )
    resolution: Mapped[str] = mapped_column(String(20), nullable=False)  # 15min .. 1day
    bucket_start: Mapped[datetime] = mapped_column(nullable=False)
    bucket_end: Mapped[datetime] = mapped_column(nullable=False)

    cpu_open: Mapped[Optional[float]] = mapped_column(Float)
    cpu_high: Mapped[Optional[float]] = mapped_column(Float)
    cpu_low: Mapped[Optional[float]] = mapped_column(Float)
    cpu_close: Mapped[Optional[float]] = mapped_column(Float)

    memory_open: Mapped[Optional[float]] = mapped_column(Float)
    memory_high: Mapped[Optional[float]] = mapped_column(Float)
    memory_low: Mapped[Optional[float]] = mapped_column(Float)
    memory_close: Mapped[Optional[float]] = mapped_column(Float)

    disk_open: Mapped[Optional[float]] = mapped_column(Float)
    disk_high: Mapped[Optional[float]] = mapped_column(Float)
    disk_low: Mapped[Optional[float]] = mapped_column(Float)
    disk_close: Mapped[Optional[float]] = mapped_column(Float)

    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("agent_id", "resolution", "bucket_start", name="uq_candle"),
        Index("idx_candles_time", "bucket_start"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": ensure_utc(self.bucket_start),
            "candle_end": ensure_utc(self.bucket_end),
            "cpu": self._ohlc("cpu"),
            "memory": self._ohlc("memory"),
            "disk": self._ohlc("disk"),
            "data_points": self.sample_count,
            "type": "candle",
        }

    def _ohlc(self, metric: str) -> Dict[str, Optional[float]]:
        return {
            part: getattr(self, f"{metric}_{part}")
            for part in ("open", "high", "low", "close")
        }


# =============================================================
# 5. ALERT HISTORY
# =============================================================

class AlertRecord(Base):
    """
    One fired alert.

    Lifecycle: OPEN -> ACKNOWLEDGED -> RESOLVED (or OPEN -> RESOLVED).
    At most one unresolved row per (agent, metric, alert type).
    """
    __tablename__ = "alert_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(
        ForeignKey("agent_devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    config_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metric_type: Mapped[str] = mapped_column(String(20), nullable=False)  # cpu, memory, disk
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    indicator_count: Mapped[int] = mapped_column(Integer, nullable=False)
    contributing_indicators: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    metric_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    triggered_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index(
            "uq_alert_history_open",
            "agent_id",
            "metric_type",
            "alert_type",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
        Index("idx_alert_history_open_severity", "severity", "acknowledged_at", "resolved_at"),
    )

    @property
    def state(self) -> str:
        if self.resolved_at is not None:
            return "resolved"
        if self.acknowledged_at is not None:
            return "acknowledged"
        return "open"

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return ensure_utc(value).isoformat() if value else None

        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "config_id": self.config_id,
            "metric_type": self.metric_type,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "indicator_count": self.indicator_count,
            "contributing_indicators": self.contributing_indicators,
            "metric_snapshot": self.metric_snapshot,
            "title": self.title,
            "description": self.description,
            "state": self.state,
            "triggered_at": _iso(self.triggered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "notes": self.notes,
        }


# =============================================================
# 6. RESPONDERS
# =============================================================

employee_roles = Table(
    "employee_roles",
    Base.metadata,
    Column("employee_id", ForeignKey("employees.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)


class Employee(Base):
    """
    Escalation responder. `timezone` is an IANA zone name used
    only to render times in notifications.
    """
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    roles: Mapped[List[Role]] = relationship(secondary=employee_roles, lazy="selectin")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


# =============================================================
# 7. ESCALATION POLICIES
# =============================================================

class EscalationPolicyRecord(Base):
    """
    Stored escalation policy. `steps` is a JSON list of
    {order, wait_minutes, escalate_to_roles, notify_email,
    notify_sms, notify_websocket}; it is parsed and validated
    into monitoring.escalation.policy.EscalationPolicy.
    """
    __tablename__ = "alert_escalation_policies"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    trigger_severities: Mapped[List[str]] = mapped_column(JSONDocument, nullable=False)
    trigger_after_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSONDocument, nullable=False)


# =============================================================
# 8. NOTIFICATION LEDGER
# =============================================================

class NotificationLog(Base):
    """
    One dispatch attempt (sent or failed) for one recipient on
    one channel of one escalation step.
    """
    __tablename__ = "alert_notifications"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(
        ForeignKey("alert_history.id", ondelete="CASCADE"), nullable=False
    )
    policy_id: Mapped[int] = mapped_column(
        ForeignKey("alert_escalation_policies.id", ondelete="CASCADE"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # email, sms, websocket
    recipient_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recipient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # sent, failed
    delivery_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    __table_args__ = (
        Index("idx_notifications_step", "alert_id", "policy_id", "step_order", "status"),
    )


class EscalationStepClaim(Base):
    """
    Compare-and-swap row guarding one (alert, policy, step).

    pending: a sweep is dispatching it
    sent:    at least one channel succeeded; never fires again
    failed:  every dispatch failed; the next sweep may retake it
    """
    __tablename__ = "alert_escalation_step_claims"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(
        ForeignKey("alert_history.id", ondelete="CASCADE"), nullable=False
    )
    policy_id: Mapped[int] = mapped_column(
        ForeignKey("alert_escalation_policies.id", ondelete="CASCADE"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("alert_id", "policy_id", "step_order", name="uq_escalation_step_claim"),
    )


__all__ = [
    "User",
    "Agent",
    "MetricSample",
    "MetricCandle",
    "AlertRecord",
    "Role",
    "Employee",
    "employee_roles",
    "EscalationPolicyRecord",
    "NotificationLog",
    "EscalationStepClaim",
    "generate_uuid",
]
