"""
Candle Aggregator.

============================================================
PURPOSE
============================================================
Reduces raw per-agent metric samples into OHLC candles at
several independent resolutions, and resolves which resolution
applies to a given agent.

PRINCIPLES:
- Epoch-aligned buckets (idempotent regeneration)
- Upsert-on-conflict writes, never read-modify-write
- Empty buckets are never materialized
- One agent's failure never aborts a batch

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.config import AggregationConfig, TimeoutConfig
from core.exceptions import ConfigurationError, NotFoundError, ValidationError
from database.engine import DatabasePersistenceError, bounded, transaction_scope
from database.models import Agent, MetricCandle, MetricSample, User
from .levels import (
    RAW,
    Resolution,
    aligned_window,
    bucket_start,
    parse_resolution,
    resolution_catalogue,
    validate_setting,
)


logger = logging.getLogger(__name__)

METRICS = ("cpu", "memory", "disk")

# Keeps a multi-row upsert under SQLite's bound-parameter limit
_UPSERT_BATCH = 50

_UPSERT_COLUMNS = [
    "bucket_end",
    *[f"{m}_{p}" for m in METRICS for p in ("open", "high", "low", "close")],
    "sample_count",
]


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class AggregationError:
    """One isolated aggregation failure."""

    agent_id: str
    resolution: Optional[str]
    error: str
    hostname: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "hostname": self.hostname,
            "level": self.resolution,
            "error": self.error,
        }


@dataclass
class AggregationSummary:
    """Outcome of a batch run. Never raised, always returned."""

    agents_processed: int = 0
    total_candles: int = 0
    by_resolution: Dict[str, int] = field(
        default_factory=lambda: {r.value: 0 for r in Resolution}
    )
    errors: List[AggregationError] = field(default_factory=list)

    def add(self, resolution: Resolution, count: int) -> None:
        self.by_resolution[resolution.value] += count
        self.total_candles += count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agents_processed": self.agents_processed,
            "total_candles_created": self.total_candles,
            "by_level": dict(self.by_resolution),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class AggregationSetting:
    """Resolved resolution for one agent."""

    agent_id: str
    device_override: Optional[str]
    user_default: Optional[str]

    @property
    def effective(self) -> str:
        return self.device_override or self.user_default or RAW


# ============================================================
# OHLC REDUCTION
# ============================================================

def reduce_bucket(samples: Sequence[MetricSample]) -> Dict[str, Any]:
    """
    OHLC per metric over samples ordered by collection time.

    NULL readings are skipped per metric; a metric with no
    readings in the bucket gets NULL OHLC.
    """
    values: Dict[str, Any] = {"sample_count": len(samples)}
    for metric in METRICS:
        readings = [
            getattr(s, f"{metric}_percent")
            for s in samples
            if getattr(s, f"{metric}_percent") is not None
        ]
        if readings:
            values[f"{metric}_open"] = readings[0]
            values[f"{metric}_high"] = max(readings)
            values[f"{metric}_low"] = min(readings)
            values[f"{metric}_close"] = readings[-1]
        else:
            for part in ("open", "high", "low", "close"):
                values[f"{metric}_{part}"] = None
    return values


def group_into_buckets(
    samples: Iterable[MetricSample],
    resolution: Resolution,
) -> Dict[datetime, List[MetricSample]]:
    """Group time-ordered samples by epoch-aligned bucket start."""
    buckets: Dict[datetime, List[MetricSample]] = {}
    for sample in samples:
        key = bucket_start(sample.collected_at, resolution)
        buckets.setdefault(key, []).append(sample)
    return buckets


# ============================================================
# CANDLE AGGREGATOR
# ============================================================

class CandleAggregator:
    """
    Generates, serves and retires OHLC candles.

    Safe to run concurrently for different agents; concurrent
    runs for the same agent converge because every write is an
    upsert of values derived only from the raw samples.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[ClockProtocol] = None,
        config: Optional[AggregationConfig] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._config = config or AggregationConfig()
        self._timeouts = timeouts or TimeoutConfig()

    # --------------------------------------------------------
    # GENERATION
    # --------------------------------------------------------

    async def generate(
        self,
        agent_id: str,
        resolution: str,
        start: datetime,
        end: datetime,
    ) -> int:
        """
        Generate candles for one agent and resolution.

        Args:
            agent_id: Agent device ID
            resolution: 15min, 30min, 1hour, 4hour or 1day
            start: Start of window (inclusive)
            end: End of window (exclusive)

        Returns:
            Number of candles written (created or refreshed)
        """
        level = parse_resolution(resolution)
        if ensure_utc(start) >= ensure_utc(end):
            raise ValidationError(
                "Window start must be before end",
                field="start",
                value=f"{start.isoformat()} >= {end.isoformat()}",
            )

        window_start, window_end = aligned_window(start, end, level)
        written = await bounded(
            self._generate(agent_id, level, window_start, window_end),
            self._timeouts.store_timeout_seconds,
            f"generate candles agent={agent_id} level={level.value}",
        )
        logger.debug(f"Generated {written} {level.value} candles for agent {agent_id}")
        return written

    async def _generate(
        self,
        agent_id: str,
        level: Resolution,
        window_start: datetime,
        window_end: datetime,
    ) -> int:
        async with transaction_scope(self._session_factory) as session:
            result = await session.execute(
                select(MetricSample)
                .where(
                    MetricSample.agent_id == agent_id,
                    MetricSample.collected_at >= window_start,
                    MetricSample.collected_at < window_end,
                )
                .order_by(MetricSample.collected_at.asc(), MetricSample.id.asc())
            )
            samples = result.scalars().all()
            if not samples:
                return 0

            now = self._clock.now()
            rows = []
            for start_at, bucket in sorted(group_into_buckets(samples, level).items()):
                row = reduce_bucket(bucket)
                row.update(
                    agent_id=agent_id,
                    resolution=level.value,
                    bucket_start=start_at,
                    bucket_end=start_at + level.width,
                    created_at=now,
                )
                rows.append(row)

            for offset in range(0, len(rows), _UPSERT_BATCH):
                await session.execute(
                    self._upsert_statement(session, rows[offset:offset + _UPSERT_BATCH])
                )
            return len(rows)

    @staticmethod
    def _upsert_statement(session: AsyncSession, rows: List[Dict[str, Any]]):
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(MetricCandle).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite.insert(MetricCandle).values(rows)
        else:
            raise ConfigurationError(f"Candle upsert not supported on dialect {dialect}")
        return stmt.on_conflict_do_update(
            index_elements=["agent_id", "resolution", "bucket_start"],
            set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
        )

    async def generate_for_all_agents(
        self,
        start: datetime,
        end: datetime,
    ) -> AggregationSummary:
        """
        Generate candles for every active agent at every resolution.

        Failures are isolated per agent and resolution and reported
        in the summary; this method never raises for them.
        """
        agents = await self._active_agents()
        logger.info(f"Generating candles for {len(agents)} active agents")

        summary = AggregationSummary(agents_processed=len(agents))
        for level in Resolution:
            for agent_id, hostname in agents:
                try:
                    count = await self.generate(agent_id, level.value, start, end)
                    summary.add(level, count)
                except Exception as e:
                    logger.error(
                        f"Failed to generate {level.value} candles for {hostname}: {e}"
                    )
                    summary.errors.append(
                        AggregationError(agent_id, level.value, str(e), hostname)
                    )

        logger.info(
            f"Candle generation complete: agents={summary.agents_processed} "
            f"total_candles={summary.total_candles} by_level={summary.by_resolution} "
            f"errors={len(summary.errors)}"
        )
        return summary

    async def generate_recent(self) -> AggregationSummary:
        """Refresh the live window (last 24 hours by default)."""
        end = self._clock.now()
        start = end - timedelta(hours=self._config.recent_window_hours)
        logger.info(f"Generating recent candles (last {self._config.recent_window_hours} hours)")
        return await self.generate_for_all_agents(start, end)

    async def backfill(self, agent_id: str, days_back: Optional[int] = None) -> Dict[str, Any]:
        """
        Backfill every resolution for one agent.

        Re-running is safe: rows are upserted, not appended.
        """
        days_back = self._config.backfill_days if days_back is None else days_back
        if days_back < 1:
            raise ValidationError("days_back must be >= 1", field="days_back", value=days_back)
        await self._require_agent(agent_id)

        end = self._clock.now()
        start = end - timedelta(days=days_back)
        logger.info(f"Backfilling {days_back} days of candles for agent {agent_id}")

        by_level: Dict[str, int] = {}
        for level in Resolution:
            by_level[level.value] = await self.generate(agent_id, level.value, start, end)

        result = {
            "agent_id": agent_id,
            "days_backfilled": days_back,
            "by_level": by_level,
            "total_candles": sum(by_level.values()),
        }
        logger.info(f"Backfill complete for agent {agent_id}: {result['total_candles']} candles")
        return result

    async def backfill_all_agents(self, days_back: Optional[int] = None) -> AggregationSummary:
        """Backfill every active agent, isolating per-agent failures."""
        agents = await self._active_agents()
        summary = AggregationSummary()

        for agent_id, hostname in agents:
            try:
                result = await self.backfill(agent_id, days_back)
            except Exception as e:
                logger.error(f"Failed to backfill candles for {hostname}: {e}")
                summary.errors.append(AggregationError(agent_id, None, str(e), hostname))
                continue
            summary.agents_processed += 1
            for level in Resolution:
                summary.add(level, result["by_level"][level.value])

        logger.info(
            f"Backfill complete: agents={summary.agents_processed} "
            f"total_candles={summary.total_candles} errors={len(summary.errors)}"
        )
        return summary

    # --------------------------------------------------------
    # READ PATHS
    # --------------------------------------------------------

    async def get_candles(
        self,
        agent_id: str,
        resolution: str,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """
        Most recent candles for an agent, newest first.

        The `raw` resolution returns raw samples unaggregated.
        """
        level = None if resolution == RAW else parse_resolution(resolution)

        async def _query() -> List[Dict[str, Any]]:
            async with self._session_factory() as session:
                if level is None:
                    result = await session.execute(
                        select(MetricSample)
                        .where(MetricSample.agent_id == agent_id)
                        .order_by(MetricSample.collected_at.desc())
                        .limit(limit)
                    )
                    return [
                        {
                            "timestamp": ensure_utc(s.collected_at),
                            "cpu": s.cpu_percent,
                            "memory": s.memory_percent,
                            "disk": s.disk_percent,
                            "type": "raw",
                        }
                        for s in result.scalars()
                    ]

                result = await session.execute(
                    select(MetricCandle)
                    .where(
                        MetricCandle.agent_id == agent_id,
                        MetricCandle.resolution == level.value,
                    )
                    .order_by(MetricCandle.bucket_start.desc())
                    .limit(limit)
                )
                return [candle.to_dict() for candle in result.scalars()]

        return await bounded(
            _query(),
            self._timeouts.store_timeout_seconds,
            f"get candles agent={agent_id} resolution={resolution}",
        )

    async def get_setting(self, agent_id: str) -> Optional[AggregationSetting]:
        async def _load():
            async with self._session_factory() as session:
                return (
                    await session.execute(
                        select(Agent.aggregation_level, User.default_aggregation_level)
                        .outerjoin(User, Agent.owner_user_id == User.id)
                        .where(Agent.id == agent_id)
                    )
                ).first()

        row = await bounded(
            _load(), self._timeouts.store_timeout_seconds, f"aggregation setting agent={agent_id}"
        )
        if row is None:
            return None
        return AggregationSetting(agent_id, row[0], row[1])

    async def get_effective_resolution(self, agent_id: str) -> str:
        """
        Resolution order: device override, owner default, `raw`.

        Unknown agents and store failures fall back to `raw`.
        """
        try:
            setting = await self.get_setting(agent_id)
        except DatabasePersistenceError as e:
            logger.error(f"Error getting aggregation level for agent {agent_id}: {e}")
            return RAW

        if setting is None:
            logger.warning(f"Agent {agent_id} not found in aggregation settings, defaulting to 'raw'")
            return RAW
        return setting.effective

    # --------------------------------------------------------
    # CONFIGURATION
    # --------------------------------------------------------

    async def update_agent_resolution(
        self,
        agent_id: str,
        resolution: Optional[str],
    ) -> Dict[str, Any]:
        """
        Set or clear (None) the device override.

        Validation happens before any write.
        """
        override = validate_setting(resolution, allow_none=True)

        async def _write() -> int:
            async with transaction_scope(self._session_factory) as session:
                result = await session.execute(
                    update(Agent).where(Agent.id == agent_id).values(aggregation_level=override)
                )
                return result.rowcount

        updated = await bounded(
            _write(), self._timeouts.store_timeout_seconds, f"update resolution agent={agent_id}"
        )
        if updated == 0:
            raise NotFoundError("Agent", agent_id)

        logger.info(
            f"Updated aggregation level for agent {agent_id} to "
            f"{override or 'null (use user default)'}"
        )
        return {
            "agent_id": agent_id,
            "device_override": override,
            "effective_level": await self.get_effective_resolution(agent_id),
        }

    async def update_user_default_resolution(
        self,
        user_id: str,
        resolution: str,
    ) -> Dict[str, Any]:
        """Set the account-wide default resolution."""
        level = validate_setting(resolution, allow_none=False)

        async def _write() -> int:
            async with transaction_scope(self._session_factory) as session:
                result = await session.execute(
                    update(User).where(User.id == user_id).values(default_aggregation_level=level)
                )
                return result.rowcount

        updated = await bounded(
            _write(), self._timeouts.store_timeout_seconds, f"update default resolution user={user_id}"
        )
        if updated == 0:
            raise NotFoundError("User", user_id)

        logger.info(f"Updated default aggregation level for user {user_id} to {level}")
        return {"user_id": user_id, "default_aggregation_level": level}

    @staticmethod
    def get_resolution_info() -> Dict[str, Dict[str, Any]]:
        return resolution_catalogue()

    # --------------------------------------------------------
    # RETENTION & STATS
    # --------------------------------------------------------

    async def cleanup_old_candles(self, days_to_keep: Optional[int] = None) -> int:
        """
        Delete candles whose bucket starts before the retention horizon.

        Returns:
            Number of candles deleted (0 when nothing is old enough)
        """
        days_to_keep = self._config.retention_days if days_to_keep is None else days_to_keep
        if days_to_keep < 0:
            raise ValidationError(
                "days_to_keep must be >= 0", field="days_to_keep", value=days_to_keep
            )
        horizon = self._clock.now() - timedelta(days=days_to_keep)

        async def _delete() -> int:
            async with transaction_scope(self._session_factory) as session:
                result = await session.execute(
                    delete(MetricCandle).where(MetricCandle.bucket_start < horizon)
                )
                return result.rowcount or 0

        deleted = await bounded(
            _delete(), self._timeouts.store_timeout_seconds, "cleanup old candles"
        )
        logger.info(f"Cleaned up {deleted} old candles (older than {days_to_keep} days)")
        return deleted

    async def get_candle_stats(self) -> List[Dict[str, Any]]:
        """Per-resolution storage statistics."""
        async def _query() -> List[tuple]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(
                        MetricCandle.resolution,
                        func.count(MetricCandle.id),
                        func.count(func.distinct(MetricCandle.agent_id)),
                        func.min(MetricCandle.bucket_start),
                        func.max(MetricCandle.bucket_start),
                        func.avg(MetricCandle.sample_count),
                    )
                    .group_by(MetricCandle.resolution)
                    .order_by(MetricCandle.resolution)
                )
                return list(result.all())

        rows = await bounded(_query(), self._timeouts.store_timeout_seconds, "candle stats")
        return [
            {
                "level": level,
                "candles": int(count),
                "agents": int(agents),
                "oldest": ensure_utc(oldest) if oldest else None,
                "newest": ensure_utc(newest) if newest else None,
                "avg_points": round(float(avg_points), 1) if avg_points is not None else None,
            }
            for level, count, agents, oldest, newest, avg_points in rows
        ]

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _active_agents(self) -> List[tuple]:
        async def _load() -> List[tuple]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Agent.id, Agent.hostname)
                    .where(Agent.is_active.is_(True))
                    .order_by(Agent.hostname)
                )
                return [tuple(row) for row in result.all()]

        return await bounded(_load(), self._timeouts.store_timeout_seconds, "list active agents")

    async def _require_agent(self, agent_id: str) -> None:
        async def _load() -> Optional[Agent]:
            async with self._session_factory() as session:
                return await session.get(Agent, agent_id)

        if await bounded(_load(), self._timeouts.store_timeout_seconds, "load agent") is None:
            raise NotFoundError("Agent", agent_id)


__all__ = [
    "CandleAggregator",
    "AggregationSummary",
    "AggregationError",
    "AggregationSetting",
    "reduce_bucket",
    "group_into_buckets",
]
