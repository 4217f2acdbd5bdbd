"""
Escalation Engine.

============================================================
PURPOSE
============================================================
Periodically escalate alerts nobody has acknowledged, step by
step, to progressively wider audiences.

PRINCIPLES:
- Each (alert, policy, step) is delivered at most once; a step
  is claimed in the store before anything is sent
- A step is complete once any channel succeeds; a step where
  every dispatch failed is retried by the next sweep
- Acknowledging or resolving an alert freezes its escalation
- One failing policy, alert or dispatch never aborts the sweep
- Every gateway and store call is bounded by a timeout

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.config import EscalationConfig, TimeoutConfig
from core.exceptions import GatewayError, TransientIOError
from database.engine import DuplicateRecordError, bounded, transaction_scope
from database.models import (
    Agent,
    AlertRecord,
    Employee,
    EscalationPolicyRecord,
    EscalationStepClaim,
    NotificationLog,
    Role,
)
from ..models import Channel, ClaimStatus, NotificationStatus
from ..notifications.broadcast import Broadcaster, employee_topic
from ..notifications.formatter import EscalationContext, EscalationFormatter
from ..notifications.gateways import EmailGateway, SmsGateway
from .policy import EscalationPolicy, EscalationStep


logger = logging.getLogger(__name__)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class SweepSummary:
    """Outcome of one sweep. Never raised, always returned."""

    checked: int = 0
    escalated: int = 0
    failed_dispatches: int = 0
    errors: List[str] = field(default_factory=list)
    deadline_exceeded: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "escalated": self.escalated,
            "failed_dispatches": self.failed_dispatches,
            "errors": list(self.errors),
            "deadline_exceeded": self.deadline_exceeded,
            "skipped": self.skipped,
        }


@dataclass
class DispatchResult:
    channel: Channel
    recipient: Employee
    address: str
    delivery_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def recipient_address(channel: Channel, employee: Employee) -> Optional[str]:
    """Where a channel delivers to for this responder, or None if it can't."""
    if channel is Channel.EMAIL:
        return employee.email or None
    if channel is Channel.SMS:
        return employee.phone_number or None
    return employee_topic(employee.id)


# ============================================================
# ESCALATION ENGINE
# ============================================================

class EscalationEngine:
    """
    Sweeps unacknowledged alerts and dispatches due escalation steps.

    One instance per process; a sweep started while another is
    still running returns immediately with skipped=True. Separate
    processes are kept apart by the step claim table.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[ClockProtocol] = None,
        email_gateway: Optional[EmailGateway] = None,
        sms_gateway: Optional[SmsGateway] = None,
        broadcaster: Optional[Broadcaster] = None,
        formatter: Optional[EscalationFormatter] = None,
        config: Optional[EscalationConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._email = email_gateway
        self._sms = sms_gateway
        self._broadcaster = broadcaster
        self._config = config or EscalationConfig()
        self._formatter = formatter or EscalationFormatter(self._config.dashboard_url)
        self._timeouts = timeouts or TimeoutConfig()
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # --------------------------------------------------------
    # SWEEP
    # --------------------------------------------------------

    async def sweep(self) -> SweepSummary:
        """Run one escalation pass over every enabled policy."""
        if self._lock.locked():
            logger.warning("Escalation sweep already running, skipping")
            return SweepSummary(skipped=True)

        async with self._lock:
            summary = await self._sweep()

        logger.info(
            f"Escalation sweep complete: checked={summary.checked} "
            f"escalated={summary.escalated} failed_dispatches={summary.failed_dispatches} "
            f"errors={len(summary.errors)} deadline_exceeded={summary.deadline_exceeded}"
        )
        return summary

    async def _sweep(self) -> SweepSummary:
        summary = SweepSummary()
        deadline = self._clock.monotonic() + self._config.sweep_deadline_seconds

        try:
            records = await bounded(
                self._load_policies(),
                self._timeouts.store_timeout_seconds,
                "load escalation policies",
            )
        except TransientIOError as e:
            logger.error(f"Failed to load escalation policies: {e}")
            summary.errors.append(f"load policies: {e}")
            return summary

        logger.debug(f"Checking {len(records)} active escalation policies")

        for record in records:
            if summary.deadline_exceeded:
                break
            try:
                policy = EscalationPolicy.from_record(record)
                await self._process_policy(policy, summary, deadline)
            except Exception as e:
                logger.error(f"Error processing escalation policy {record.id} ({record.name}): {e}")
                summary.errors.append(f"policy {record.id}: {e}")

        return summary

    async def _process_policy(
        self,
        policy: EscalationPolicy,
        summary: SweepSummary,
        deadline: float,
    ) -> None:
        alerts = await bounded(
            self._alerts_for_policy(policy),
            self._timeouts.store_timeout_seconds,
            f"alerts for policy={policy.id}",
        )
        if alerts:
            logger.info(f"Found {len(alerts)} alerts requiring escalation for policy: {policy.name}")

        for alert, agent_name in alerts:
            if self._clock.monotonic() >= deadline:
                logger.warning(
                    f"Escalation sweep deadline of {self._config.sweep_deadline_seconds}s "
                    f"passed, stopping at policy {policy.id}"
                )
                summary.deadline_exceeded = True
                return

            summary.checked += 1
            try:
                await self._process_alert(policy, alert, agent_name, summary)
            except TransientIOError as e:
                logger.error(f"Error escalating alert {alert.id} under policy {policy.id}: {e}")
                summary.errors.append(f"alert {alert.id}: {e}")

    async def _process_alert(
        self,
        policy: EscalationPolicy,
        alert: AlertRecord,
        agent_name: str,
        summary: SweepSummary,
    ) -> None:
        elapsed = self._clock.now() - ensure_utc(alert.triggered_at)
        minutes_elapsed = int(elapsed.total_seconds() // 60)

        step = policy.due_step(minutes_elapsed)
        if step is None:
            logger.debug(
                f"No escalation step applicable for alert {alert.id} "
                f"({minutes_elapsed} minutes elapsed)"
            )
            return

        if await self._step_already_sent(alert.id, policy.id, step.order):
            logger.debug(f"Step {step.order} already executed for alert {alert.id}")
            return

        if not await self._claim_step(alert.id, policy.id, step.order):
            logger.debug(f"Step {step.order} for alert {alert.id} claimed elsewhere")
            return

        logger.info(f"Executing escalation step {step.order} for alert {alert.id}")

        responders = await bounded(
            self._find_responders(step),
            self._timeouts.store_timeout_seconds,
            f"responders for step={step.order}",
        )
        if not responders:
            logger.warning(
                f"No employees found with roles: {', '.join(sorted(step.escalate_to_roles))}"
            )
            await self._complete_claim(alert.id, policy.id, step.order, ClaimStatus.FAILED)
            summary.errors.append(f"alert {alert.id} step {step.order}: no responders")
            return

        ctx = EscalationContext(
            alert=alert,
            agent_name=agent_name,
            policy_name=policy.name,
            step_order=step.order,
            minutes_unacknowledged=minutes_elapsed,
        )

        attempted = sent = 0
        for employee in responders:
            for channel in step.channels:
                address = recipient_address(channel, employee)
                if address is None:
                    continue
                attempted += 1
                result = await self._dispatch(channel, employee, address, ctx)
                if result.ok:
                    sent += 1
                else:
                    summary.failed_dispatches += 1
                try:
                    await self._log_dispatch(alert.id, policy.id, step.order, result)
                except TransientIOError as e:
                    logger.error(
                        f"Failed to log escalation {channel.value} to {employee.full_name} "
                        f"for alert {alert.id} step {step.order} "
                        f"(status={'sent' if result.ok else 'failed'}): {e}"
                    )
                    summary.errors.append(f"alert {alert.id} step {step.order}: log write failed: {e}")

        if not attempted:
            logger.warning(
                f"No deliverable responders for alert {alert.id} step {step.order} "
                f"on channels {', '.join(c.value for c in step.channels)}"
            )
            await self._complete_claim(alert.id, policy.id, step.order, ClaimStatus.FAILED)
            summary.errors.append(f"alert {alert.id} step {step.order}: no deliverable responders")
            return

        if sent:
            await self._complete_claim(alert.id, policy.id, step.order, ClaimStatus.SENT)
            summary.escalated += 1
            logger.info(
                f"Escalated alert {alert.id} step {step.order} to "
                f"{len(responders)} employees ({sent} notifications sent)"
            )
        else:
            await self._complete_claim(alert.id, policy.id, step.order, ClaimStatus.FAILED)
            logger.error(
                f"Every dispatch failed for alert {alert.id} step {step.order}; "
                f"will retry next sweep"
            )

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def _dispatch(
        self,
        channel: Channel,
        employee: Employee,
        address: str,
        ctx: EscalationContext,
    ) -> DispatchResult:
        result = DispatchResult(channel=channel, recipient=employee, address=address)
        timeout = self._timeouts.gateway_timeout_seconds

        try:
            if channel is Channel.EMAIL:
                if self._email is None:
                    raise GatewayError("No email gateway configured", channel=channel.value)
                result.delivery_id = await asyncio.wait_for(
                    self._email.send_email(
                        address,
                        self._formatter.email_subject(ctx),
                        self._formatter.email_html(ctx, employee),
                        self._formatter.email_text(ctx, employee),
                    ),
                    timeout=timeout,
                )
            elif channel is Channel.SMS:
                if self._sms is None:
                    raise GatewayError("No SMS gateway configured", channel=channel.value)
                result.delivery_id = await asyncio.wait_for(
                    self._sms.send_sms(address, self._formatter.sms_body(ctx)),
                    timeout=timeout,
                )
            else:
                if self._broadcaster is None:
                    raise GatewayError("No broadcaster configured", channel=channel.value)
                await asyncio.wait_for(
                    self._broadcaster.publish(address, self._formatter.websocket_payload(ctx)),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            result.error = f"{channel.value} gateway timed out after {timeout}s"
        except Exception as e:
            result.error = str(e) or e.__class__.__name__

        if result.ok:
            logger.info(
                f"Escalation {channel.value} sent to {employee.full_name} ({address}) "
                f"for alert {ctx.alert.id}"
            )
        else:
            logger.error(
                f"Failed to send escalation {channel.value} to {employee.full_name} "
                f"for alert {ctx.alert.id}: {result.error}"
            )
        return result

    async def _log_dispatch(
        self,
        alert_id: int,
        policy_id: int,
        step_order: int,
        result: DispatchResult,
    ) -> None:
        async def _write() -> None:
            async with transaction_scope(self._session_factory) as session:
                session.add(
                    NotificationLog(
                        alert_id=alert_id,
                        policy_id=policy_id,
                        step_order=step_order,
                        channel=result.channel.value,
                        recipient_id=result.recipient.id,
                        recipient_name=result.recipient.full_name,
                        recipient_address=result.address,
                        status=(NotificationStatus.SENT if result.ok else NotificationStatus.FAILED).value,
                        delivery_id=result.delivery_id,
                        error_message=result.error,
                        sent_at=self._clock.now(),
                    )
                )

        await bounded(_write(), self._timeouts.store_timeout_seconds, "log escalation dispatch")

    # --------------------------------------------------------
    # STEP CLAIMS
    # --------------------------------------------------------

    async def _step_already_sent(self, alert_id: int, policy_id: int, step_order: int) -> bool:
        async def _query() -> bool:
            async with self._session_factory() as session:
                found = await session.scalar(
                    select(NotificationLog.id)
                    .where(
                        NotificationLog.alert_id == alert_id,
                        NotificationLog.policy_id == policy_id,
                        NotificationLog.step_order == step_order,
                        NotificationLog.status == NotificationStatus.SENT.value,
                    )
                    .limit(1)
                )
                return found is not None

        return await bounded(_query(), self._timeouts.store_timeout_seconds, "step ledger check")

    async def _claim_step(self, alert_id: int, policy_id: int, step_order: int) -> bool:
        """
        Compare-and-swap on the claim row.

        A fresh step is claimed by inserting its row. An existing
        row is taken over only when it is failed, or pending for
        longer than the stale claim window.
        """
        now = self._clock.now()

        async def _insert() -> None:
            async with transaction_scope(self._session_factory) as session:
                session.add(
                    EscalationStepClaim(
                        alert_id=alert_id,
                        policy_id=policy_id,
                        step_order=step_order,
                        status=ClaimStatus.PENDING.value,
                        claimed_at=now,
                    )
                )

        try:
            await bounded(_insert(), self._timeouts.store_timeout_seconds, "claim escalation step")
            return True
        except DuplicateRecordError:
            pass

        stale_before = now - timedelta(minutes=self._config.stale_claim_minutes)

        async def _take_over() -> bool:
            async with transaction_scope(self._session_factory) as session:
                result = await session.execute(
                    update(EscalationStepClaim)
                    .where(
                        EscalationStepClaim.alert_id == alert_id,
                        EscalationStepClaim.policy_id == policy_id,
                        EscalationStepClaim.step_order == step_order,
                        or_(
                            EscalationStepClaim.status == ClaimStatus.FAILED.value,
                            and_(
                                EscalationStepClaim.status == ClaimStatus.PENDING.value,
                                EscalationStepClaim.claimed_at < stale_before,
                            ),
                        ),
                    )
                    .values(status=ClaimStatus.PENDING.value, claimed_at=now, completed_at=None)
                )
                return result.rowcount == 1

        return await bounded(_take_over(), self._timeouts.store_timeout_seconds, "retake escalation step")

    async def _complete_claim(
        self,
        alert_id: int,
        policy_id: int,
        step_order: int,
        status: ClaimStatus,
    ) -> None:
        async def _update() -> None:
            async with transaction_scope(self._session_factory) as session:
                await session.execute(
                    update(EscalationStepClaim)
                    .where(
                        EscalationStepClaim.alert_id == alert_id,
                        EscalationStepClaim.policy_id == policy_id,
                        EscalationStepClaim.step_order == step_order,
                    )
                    .values(status=status.value, completed_at=self._clock.now())
                )

        await bounded(_update(), self._timeouts.store_timeout_seconds, "complete escalation step")

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def _load_policies(self) -> List[EscalationPolicyRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscalationPolicyRecord)
                .where(EscalationPolicyRecord.enabled.is_(True))
                .order_by(EscalationPolicyRecord.trigger_after_minutes.asc(), EscalationPolicyRecord.id)
            )
            return list(result.scalars())

    async def _alerts_for_policy(self, policy: EscalationPolicy) -> List[Tuple[AlertRecord, str]]:
        """Unacknowledged, unresolved alerts past the trigger delay, oldest first."""
        cutoff = self._clock.now() - timedelta(minutes=policy.trigger_after_minutes)
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertRecord, Agent.hostname, Agent.device_name)
                .join(Agent, Agent.id == AlertRecord.agent_id)
                .where(
                    AlertRecord.severity.in_([s.value for s in policy.trigger_severities]),
                    AlertRecord.acknowledged_at.is_(None),
                    AlertRecord.resolved_at.is_(None),
                    AlertRecord.triggered_at <= cutoff,
                )
                .order_by(AlertRecord.triggered_at.asc(), AlertRecord.id.asc())
            )
            return [
                (alert, device_name or hostname)
                for alert, hostname, device_name in result.all()
            ]

    async def _find_responders(self, step: EscalationStep) -> Sequence[Employee]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Employee)
                .where(
                    Employee.is_active.is_(True),
                    Employee.roles.any(Role.name.in_(sorted(step.escalate_to_roles))),
                )
                .order_by(Employee.last_name, Employee.first_name, Employee.id)
            )
            return list(result.scalars())

    # --------------------------------------------------------
    # STATISTICS
    # --------------------------------------------------------

    async def escalation_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Escalation notification counts over [start, end]."""
        conditions = []
        if start:
            conditions.append(NotificationLog.sent_at >= start)
        if end:
            conditions.append(NotificationLog.sent_at <= end)

        async def _query() -> Tuple[List[Any], Any]:
            async with self._session_factory() as session:
                grouped = await session.execute(
                    select(NotificationLog.channel, NotificationLog.status, func.count(NotificationLog.id))
                    .where(*conditions)
                    .group_by(NotificationLog.channel, NotificationLog.status)
                )
                rows = list(grouped.all())
                distinct = await session.scalar(
                    select(func.count(func.distinct(NotificationLog.alert_id))).where(*conditions)
                )
            return rows, distinct

        grouped, distinct_alerts = await bounded(
            _query(), self._timeouts.store_timeout_seconds, "escalation stats"
        )

        by_channel = {c.value: 0 for c in Channel}
        sent = failed = 0
        for channel, status, count in grouped:
            by_channel[channel] = by_channel.get(channel, 0) + count
            if status == NotificationStatus.SENT.value:
                sent += count
            else:
                failed += count

        return {
            "total_escalations": sent + failed,
            "successful": sent,
            "failed": failed,
            "unique_alerts_escalated": int(distinct_alerts or 0),
            "by_channel": by_channel,
        }


__all__ = [
    "SweepSummary",
    "DispatchResult",
    "EscalationEngine",
    "recipient_address",
]
