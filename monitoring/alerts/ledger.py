"""
Alert Ledger.

============================================================
PURPOSE
============================================================
Durable record of fired alerts and their lifecycle.

PRINCIPLES:
- Clear alert lifecycle (open -> acknowledged -> resolved)
- At most one unresolved alert per (agent, metric, alert type);
  the store enforces it, a losing insert means "already alerted"
- The alert is saved before anyone is told about it; a failed
  broadcast never loses or duplicates the alert

============================================================
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.config import EscalationConfig, TimeoutConfig
from core.exceptions import NotFoundError
from database.engine import DuplicateRecordError, bounded, transaction_scope
from database.models import Agent, AlertRecord
from ..models import AlertFilters, AlertSeverity, CandidateAlert
from ..notifications.broadcast import ALERTS_TOPIC, Broadcaster


logger = logging.getLogger(__name__)


def _humanize(alert_type: str) -> str:
    return alert_type.replace("_", " ").replace("-", " ").strip().title()


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_title(candidate: CandidateAlert) -> str:
    if candidate.alert_name:
        return candidate.alert_name
    return f"{_humanize(candidate.alert_type)} - {candidate.dominant_metric.value.upper()}"


def build_description(candidate: CandidateAlert) -> str:
    plural = "indicator" if candidate.indicator_count == 1 else "indicators"
    return (
        f"{candidate.severity.value.upper()} {_humanize(candidate.alert_type).lower()} alert: "
        f"{candidate.indicator_count} {plural} triggered on "
        f"{candidate.dominant_metric.value}"
    )


class AlertLedger:
    """
    Persists alerts and drives their acknowledge/resolve transitions.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[ClockProtocol] = None,
        broadcaster: Optional[Broadcaster] = None,
        config: Optional[EscalationConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._broadcaster = broadcaster
        self._config = config or EscalationConfig()
        self._timeouts = timeouts or TimeoutConfig()

    # --------------------------------------------------------
    # DEBOUNCE & CREATION
    # --------------------------------------------------------

    async def has_recent_similar_alert(
        self,
        agent_id: str,
        metric_type: str,
        alert_type: str,
        within_minutes: Optional[int] = None,
    ) -> bool:
        """
        True if an unresolved alert for the same key triggered
        inside the window. Store failures propagate.
        """
        within = self._config.debounce_minutes if within_minutes is None else within_minutes
        since = self._clock.now() - timedelta(minutes=within)

        async def _query() -> bool:
            async with self._session_factory() as session:
                found = await session.scalar(
                    select(AlertRecord.id)
                    .where(
                        AlertRecord.agent_id == agent_id,
                        AlertRecord.metric_type == metric_type,
                        AlertRecord.alert_type == alert_type,
                        AlertRecord.triggered_at > since,
                        AlertRecord.resolved_at.is_(None),
                    )
                    .limit(1)
                )
                return found is not None

        return await bounded(
            _query(),
            self._timeouts.store_timeout_seconds,
            f"debounce check agent={agent_id} metric={metric_type} type={alert_type}",
        )

    async def save_alert(
        self,
        candidate: CandidateAlert,
        broadcast: bool = True,
    ) -> Optional[AlertRecord]:
        """
        Persist a candidate alert.

        Returns:
            The saved record, or None when an unresolved alert for
            the same (agent, metric, alert type) already exists.

        Raises:
            NotFoundError: the agent does not exist
        """
        metric = candidate.dominant_metric

        async def _insert():
            async with transaction_scope(self._session_factory) as session:
                agent = await session.get(Agent, candidate.agent_id)
                if agent is None:
                    raise NotFoundError("Agent", candidate.agent_id)

                now = self._clock.now()
                record = AlertRecord(
                    agent_id=candidate.agent_id,
                    config_id=candidate.configuration_id,
                    metric_type=metric.value,
                    alert_type=candidate.alert_type,
                    severity=candidate.severity.value,
                    indicator_count=candidate.indicator_count,
                    contributing_indicators=_jsonable(candidate.contributing_indicators),
                    metric_snapshot=_jsonable(candidate.metric_snapshot),
                    title=build_title(candidate),
                    description=build_description(candidate),
                    triggered_at=now,
                    updated_at=now,
                )
                session.add(record)
                await session.flush()
                return record, agent.display_name

        try:
            record, agent_name = await bounded(
                _insert(),
                self._timeouts.store_timeout_seconds,
                f"save alert agent={candidate.agent_id}",
            )
        except DuplicateRecordError:
            logger.info(
                f"Skipping duplicate alert: agent={candidate.agent_id} "
                f"metric={metric.value} type={candidate.alert_type} (already open)"
            )
            return None

        logger.info(
            f"Alert triggered: id={record.id} {record.title} ({record.severity}) "
            f"agent={agent_name} indicators={record.indicator_count}"
        )

        if broadcast and candidate.notify_websocket and self._broadcaster is not None:
            await self._broadcast_created(record, agent_name)

        return record

    async def record_candidate(
        self,
        candidate: CandidateAlert,
        within_minutes: Optional[int] = None,
    ) -> Optional[AlertRecord]:
        """Debounce gate followed by save_alert."""
        metric = candidate.dominant_metric
        if await self.has_recent_similar_alert(
            candidate.agent_id, metric.value, candidate.alert_type, within_minutes
        ):
            logger.info(
                f"Skipping duplicate alert: agent={candidate.agent_id} "
                f"metric={metric.value} type={candidate.alert_type} (recent alert in window)"
            )
            return None
        return await self.save_alert(candidate)

    async def _broadcast_created(self, record: AlertRecord, agent_name: str) -> None:
        data = record.to_dict()
        data["agent_name"] = agent_name
        try:
            await self._broadcaster.publish(ALERTS_TOPIC, {"type": "alert:created", "data": data})
        except Exception as e:
            logger.error(f"Failed to broadcast alert {record.id}: {e}")

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def acknowledge(self, alert_id: int, actor_id: str) -> AlertRecord:
        """Stamp acknowledgment. Repeating it re-stamps."""
        async def _stamp() -> AlertRecord:
            async with transaction_scope(self._session_factory) as session:
                record = await session.get(AlertRecord, alert_id)
                if record is None:
                    raise NotFoundError("Alert", alert_id)
                now = self._clock.now()
                record.acknowledged_at = now
                record.acknowledged_by = actor_id
                record.updated_at = now
            return record

        record = await bounded(
            _stamp(), self._timeouts.store_timeout_seconds, f"acknowledge alert={alert_id}"
        )
        logger.info(f"Alert {alert_id} acknowledged by {actor_id}")
        return record

    async def resolve(
        self,
        alert_id: int,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> AlertRecord:
        """Stamp resolution. Existing notes are kept when notes is None."""
        async def _stamp() -> AlertRecord:
            async with transaction_scope(self._session_factory) as session:
                record = await session.get(AlertRecord, alert_id)
                if record is None:
                    raise NotFoundError("Alert", alert_id)
                now = self._clock.now()
                record.resolved_at = now
                record.resolved_by = actor_id
                if notes is not None:
                    record.notes = notes
                record.updated_at = now
            return record

        record = await bounded(
            _stamp(), self._timeouts.store_timeout_seconds, f"resolve alert={alert_id}"
        )
        logger.info(f"Alert {alert_id} resolved by {actor_id}")
        return record

    # --------------------------------------------------------
    # READ PATHS
    # --------------------------------------------------------

    async def _fetch(self, stmt, operation: str) -> List[Any]:
        async def _query() -> List[Any]:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).all())

        return await bounded(_query(), self._timeouts.store_timeout_seconds, operation)

    async def get(self, alert_id: int) -> AlertRecord:
        async def _load() -> Optional[AlertRecord]:
            async with self._session_factory() as session:
                return await session.get(AlertRecord, alert_id)

        record = await bounded(
            _load(), self._timeouts.store_timeout_seconds, f"get alert={alert_id}"
        )
        if record is None:
            raise NotFoundError("Alert", alert_id)
        return record

    async def list_history(self, filters: Optional[AlertFilters] = None) -> List[AlertRecord]:
        """Filtered history, newest first."""
        filters = filters or AlertFilters()
        stmt = select(AlertRecord)

        if filters.agent_id:
            stmt = stmt.where(AlertRecord.agent_id == filters.agent_id)
        if filters.metric_type:
            stmt = stmt.where(AlertRecord.metric_type == filters.metric_type)
        if filters.alert_type:
            stmt = stmt.where(AlertRecord.alert_type == filters.alert_type)
        if filters.severity:
            stmt = stmt.where(AlertRecord.severity == filters.severity)
        if filters.start:
            stmt = stmt.where(AlertRecord.triggered_at >= filters.start)
        if filters.end:
            stmt = stmt.where(AlertRecord.triggered_at <= filters.end)

        if filters.acknowledged is True:
            stmt = stmt.where(AlertRecord.acknowledged_at.is_not(None))
        elif filters.acknowledged is False:
            stmt = stmt.where(AlertRecord.acknowledged_at.is_(None))

        if filters.resolved is True:
            stmt = stmt.where(AlertRecord.resolved_at.is_not(None))
        elif filters.resolved is False:
            stmt = stmt.where(AlertRecord.resolved_at.is_(None))

        stmt = (
            stmt.order_by(AlertRecord.triggered_at.desc(), AlertRecord.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )

        rows = await self._fetch(stmt, "list alert history")
        return [row[0] for row in rows]

    async def list_active(self, agent_id: Optional[str] = None) -> List[AlertRecord]:
        """Unresolved alerts, newest first."""
        stmt = select(AlertRecord).where(AlertRecord.resolved_at.is_(None))
        if agent_id:
            stmt = stmt.where(AlertRecord.agent_id == agent_id)
        stmt = stmt.order_by(AlertRecord.triggered_at.desc(), AlertRecord.id.desc())

        rows = await self._fetch(stmt, "list active alerts")
        return [row[0] for row in rows]

    async def stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate statistics over alerts triggered in [start, end].

        Mean times are in seconds; rows still open are measured
        against the current time.
        """
        stmt = select(
            AlertRecord.severity,
            AlertRecord.triggered_at,
            AlertRecord.acknowledged_at,
            AlertRecord.resolved_at,
        )
        if start:
            stmt = stmt.where(AlertRecord.triggered_at >= start)
        if end:
            stmt = stmt.where(AlertRecord.triggered_at <= end)

        rows = await self._fetch(stmt, "alert stats")

        now = self._clock.now()
        by_severity = {s.value: 0 for s in AlertSeverity}
        acknowledged = resolved = 0
        ack_seconds: List[float] = []
        resolve_seconds: List[float] = []

        for severity, triggered_at, acknowledged_at, resolved_at in rows:
            triggered_at = ensure_utc(triggered_at)
            by_severity[severity] = by_severity.get(severity, 0) + 1
            if acknowledged_at is not None:
                acknowledged += 1
            if resolved_at is not None:
                resolved += 1
            ack_end = ensure_utc(acknowledged_at) if acknowledged_at else now
            resolve_end = ensure_utc(resolved_at) if resolved_at else now
            ack_seconds.append((ack_end - triggered_at).total_seconds())
            resolve_seconds.append((resolve_end - triggered_at).total_seconds())

        def _mean(values: List[float]) -> Optional[float]:
            return round(sum(values) / len(values), 1) if values else None

        return {
            "total_alerts": len(rows),
            "by_severity": by_severity,
            "acknowledged_count": acknowledged,
            "resolved_count": resolved,
            "avg_acknowledge_time_seconds": _mean(ack_seconds),
            "avg_resolution_time_seconds": _mean(resolve_seconds),
        }


__all__ = [
    "AlertLedger",
    "build_title",
    "build_description",
]
