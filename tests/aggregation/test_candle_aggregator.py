"""
Tests for the Candle Aggregator.

============================================================
PURPOSE
============================================================
Verify OHLC reduction, epoch-aligned bucketing, upsert
idempotence, resolution selection and failure isolation.

TEST PRINCIPLES:
- Real SQLite store, MockClock time
- OHLC invariants hold for every candle
- Re-running generation never duplicates or drifts

============================================================
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from aggregation import (
    RAW,
    CandleAggregator,
    Resolution,
    aligned_window,
    bucket_start,
    reduce_bucket,
)
from core.exceptions import NotFoundError, ValidationError
from database import DatabasePersistenceError, MetricCandle, MetricSample


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def aggregator(session_factory, clock, config):
    return CandleAggregator(session_factory, clock, config.aggregation, config.timeout)


def two_hours_of_samples(start):
    """120 one-minute samples; cpu climbs 0..119, memory falls, disk flat."""
    return [
        (start + timedelta(minutes=i), float(i), 100.0 - i * 0.5, 42.0)
        for i in range(120)
    ]


async def candle_count(session_factory, resolution=None):
    async with session_factory() as session:
        stmt = select(func.count(MetricCandle.id))
        if resolution:
            stmt = stmt.where(MetricCandle.resolution == resolution)
        return await session.scalar(stmt)


# ============================================================
# PURE HELPERS
# ============================================================

class TestBucketing:
    """Tests for epoch-aligned buckets."""

    def test_bucket_start_aligns_to_epoch(self):
        """Timestamps inside a bucket map to its start."""
        ts = utc(2024, 3, 4, 10, 47, 13)
        assert bucket_start(ts, Resolution.FIFTEEN_MINUTES) == utc(2024, 3, 4, 10, 45)
        assert bucket_start(ts, Resolution.ONE_HOUR) == utc(2024, 3, 4, 10, 0)
        assert bucket_start(ts, Resolution.FOUR_HOURS) == utc(2024, 3, 4, 8, 0)
        assert bucket_start(ts, Resolution.ONE_DAY) == utc(2024, 3, 4)

    def test_naive_timestamps_are_treated_as_utc(self):
        """SQLite hands back naive datetimes."""
        naive = datetime(2024, 3, 4, 10, 47)
        assert bucket_start(naive, Resolution.ONE_HOUR) == utc(2024, 3, 4, 10, 0)

    def test_aligned_window_widens_to_whole_buckets(self):
        """A mid-bucket window is widened on both ends."""
        start, end = aligned_window(
            utc(2024, 3, 4, 10, 20), utc(2024, 3, 4, 11, 5), Resolution.ONE_HOUR
        )
        assert start == utc(2024, 3, 4, 10, 0)
        assert end == utc(2024, 3, 4, 12, 0)

    def test_aligned_window_keeps_exact_boundaries(self):
        start, end = aligned_window(
            utc(2024, 3, 4, 10, 0), utc(2024, 3, 4, 12, 0), Resolution.ONE_HOUR
        )
        assert (start, end) == (utc(2024, 3, 4, 10, 0), utc(2024, 3, 4, 12, 0))


class TestReduceBucket:
    """Tests for OHLC reduction."""

    def test_ohlc_from_ordered_samples(self):
        samples = [
            MetricSample(cpu_percent=30.0, memory_percent=50.0, disk_percent=None),
            MetricSample(cpu_percent=90.0, memory_percent=None, disk_percent=None),
            MetricSample(cpu_percent=10.0, memory_percent=55.0, disk_percent=None),
            MetricSample(cpu_percent=20.0, memory_percent=52.0, disk_percent=None),
        ]
        values = reduce_bucket(samples)

        assert values["sample_count"] == 4
        assert (values["cpu_open"], values["cpu_high"], values["cpu_low"], values["cpu_close"]) == (
            30.0, 90.0, 10.0, 20.0,
        )
        # NULL readings are skipped per metric
        assert values["memory_open"] == 50.0
        assert values["memory_close"] == 52.0
        assert values["memory_high"] == 55.0

    def test_metric_with_no_readings_is_null(self):
        values = reduce_bucket([MetricSample(cpu_percent=1.0)])
        assert values["disk_open"] is None
        assert values["disk_high"] is None
        assert values["disk_low"] is None
        assert values["disk_close"] is None


# ============================================================
# GENERATION
# ============================================================

class TestGenerate:
    """Tests for candle generation."""

    @pytest.mark.asyncio
    async def test_two_hours_produce_two_hourly_candles(self, aggregator, seed, session_factory):
        """120 samples over two 1-hour windows give exactly two candles."""
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))

        written = await aggregator.generate(agent.id, "1hour", start, start + timedelta(hours=2))

        assert written == 2
        assert await candle_count(session_factory, "1hour") == 2

        newest, oldest = await aggregator.get_candles(agent.id, "1hour")
        assert oldest["timestamp"] == start
        assert oldest["candle_end"] == start + timedelta(hours=1)
        assert oldest["data_points"] == 60
        assert oldest["cpu"] == {"open": 0.0, "high": 59.0, "low": 0.0, "close": 59.0}
        assert oldest["memory"] == {"open": 100.0, "high": 100.0, "low": 70.5, "close": 70.5}
        assert oldest["disk"] == {"open": 42.0, "high": 42.0, "low": 42.0, "close": 42.0}

        assert newest["timestamp"] == start + timedelta(hours=1)
        assert newest["data_points"] == 60
        assert newest["cpu"] == {"open": 60.0, "high": 119.0, "low": 60.0, "close": 119.0}

    @pytest.mark.asyncio
    async def test_ohlc_invariants_hold_at_every_resolution(self, aggregator, seed):
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))

        for level in Resolution:
            await aggregator.generate(agent.id, level.value, start, start + timedelta(hours=2))
            candles = await aggregator.get_candles(agent.id, level.value, limit=100)
            assert sum(c["data_points"] for c in candles) == 120
            for candle in candles:
                for metric in ("cpu", "memory", "disk"):
                    ohlc = candle[metric]
                    assert ohlc["low"] <= ohlc["open"] <= ohlc["high"]
                    assert ohlc["low"] <= ohlc["close"] <= ohlc["high"]

    @pytest.mark.asyncio
    async def test_regeneration_is_idempotent(self, aggregator, seed, session_factory):
        """Running twice leaves the same rows with the same values."""
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))
        end = start + timedelta(hours=2)

        await aggregator.generate(agent.id, "15min", start, end)
        first = await aggregator.get_candles(agent.id, "15min")
        await aggregator.generate(agent.id, "15min", start, end)
        second = await aggregator.get_candles(agent.id, "15min")

        assert await candle_count(session_factory, "15min") == 8
        assert first == second

    @pytest.mark.asyncio
    async def test_late_sample_refreshes_existing_candle(self, aggregator, seed):
        """New samples in a bucket update its candle in place."""
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, [(start + timedelta(minutes=1), 10.0, 10.0, 10.0)])
        await aggregator.generate(agent.id, "1hour", start, start + timedelta(hours=1))

        await seed.samples(agent, [(start + timedelta(minutes=30), 80.0, 10.0, 10.0)])
        await aggregator.generate(agent.id, "1hour", start, start + timedelta(hours=1))

        (candle,) = await aggregator.get_candles(agent.id, "1hour")
        assert candle["data_points"] == 2
        assert candle["cpu"]["high"] == 80.0
        assert candle["cpu"]["close"] == 80.0

    @pytest.mark.asyncio
    async def test_partial_window_does_not_truncate_candle(self, aggregator, seed):
        """A window starting mid-bucket still reduces the whole bucket."""
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))

        await aggregator.generate(agent.id, "1hour", start, start + timedelta(hours=1))
        await aggregator.generate(
            agent.id, "1hour", start + timedelta(minutes=30), start + timedelta(minutes=45)
        )

        candles = await aggregator.get_candles(agent.id, "1hour")
        assert len(candles) == 1
        assert candles[0]["data_points"] == 60
        assert candles[0]["cpu"]["open"] == 0.0

    @pytest.mark.asyncio
    async def test_empty_window_writes_nothing(self, aggregator, seed, session_factory):
        agent = await seed.agent()
        written = await aggregator.generate(
            agent.id, "1hour", utc(2024, 3, 4, 8), utc(2024, 3, 4, 10)
        )
        assert written == 0
        assert await candle_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_rejects_raw_and_unknown_resolutions(self, aggregator, seed):
        agent = await seed.agent()
        with pytest.raises(ValidationError):
            await aggregator.generate(agent.id, RAW, utc(2024, 3, 4, 8), utc(2024, 3, 4, 9))
        with pytest.raises(ValidationError):
            await aggregator.generate(agent.id, "5min", utc(2024, 3, 4, 8), utc(2024, 3, 4, 9))

    @pytest.mark.asyncio
    async def test_rejects_inverted_window(self, aggregator, seed):
        agent = await seed.agent()
        with pytest.raises(ValidationError):
            await aggregator.generate(agent.id, "1hour", utc(2024, 3, 4, 9), utc(2024, 3, 4, 9))


class TestBatchGeneration:
    """Tests for all-agent runs."""

    @pytest.mark.asyncio
    async def test_generate_recent_covers_active_agents_only(self, aggregator, seed, clock):
        active = await seed.agent("web-01")
        inactive = await seed.agent("web-02", active=False)
        recent = clock.now() - timedelta(hours=2)
        await seed.samples(active, two_hours_of_samples(recent))
        await seed.samples(inactive, two_hours_of_samples(recent))

        summary = await aggregator.generate_recent()

        assert summary.agents_processed == 1
        assert summary.by_resolution["1hour"] == 2
        assert summary.by_resolution["1day"] == 1
        assert summary.errors == []
        assert await aggregator.get_candles(inactive.id, "1hour") == []

    @pytest.mark.asyncio
    async def test_one_agent_failure_does_not_block_others(self, aggregator, seed, clock):
        good = await seed.agent("good")
        bad = await seed.agent("bad")
        recent = clock.now() - timedelta(hours=2)
        await seed.samples(good, two_hours_of_samples(recent))

        original = aggregator.generate

        async def flaky(agent_id, resolution, start, end):
            if agent_id == bad.id:
                raise DatabasePersistenceError("connection reset")
            return await original(agent_id, resolution, start, end)

        aggregator.generate = flaky
        summary = await aggregator.generate_recent()

        assert summary.agents_processed == 2
        assert len(summary.errors) == len(Resolution)
        assert {e.agent_id for e in summary.errors} == {bad.id}
        assert summary.errors[0].hostname == "bad"
        assert summary.by_resolution["1hour"] == 2
        assert "connection reset" in summary.to_dict()["errors"][0]["error"]


class TestBackfill:
    """Tests for backfill."""

    @pytest.mark.asyncio
    async def test_backfill_every_resolution(self, aggregator, seed, clock):
        agent = await seed.agent()
        await seed.samples(agent, two_hours_of_samples(clock.now() - timedelta(days=2)))

        result = await aggregator.backfill(agent.id, days_back=3)

        assert result["days_backfilled"] == 3
        assert result["by_level"]["1hour"] == 2
        assert result["by_level"]["15min"] == 8
        assert result["total_candles"] == sum(result["by_level"].values())

    @pytest.mark.asyncio
    async def test_backfill_validation(self, aggregator, seed):
        agent = await seed.agent()
        with pytest.raises(ValidationError):
            await aggregator.backfill(agent.id, days_back=0)
        with pytest.raises(NotFoundError):
            await aggregator.backfill("no-such-agent", days_back=1)


# ============================================================
# READ PATHS & SETTINGS
# ============================================================

class TestReadPaths:
    """Tests for candle and raw retrieval."""

    @pytest.mark.asyncio
    async def test_raw_resolution_passes_samples_through(self, aggregator, seed):
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))

        rows = await aggregator.get_candles(agent.id, RAW, limit=5)

        assert len(rows) == 5
        assert all(r["type"] == "raw" for r in rows)
        assert rows[0]["timestamp"] == start + timedelta(minutes=119)
        assert rows[0]["cpu"] == 119.0

    @pytest.mark.asyncio
    async def test_candle_stats(self, aggregator, seed):
        agent = await seed.agent()
        start = utc(2024, 3, 4, 8, 0)
        await seed.samples(agent, two_hours_of_samples(start))
        await aggregator.generate(agent.id, "1hour", start, start + timedelta(hours=2))

        (stats,) = await aggregator.get_candle_stats()
        assert stats["level"] == "1hour"
        assert stats["candles"] == 2
        assert stats["agents"] == 1
        assert stats["avg_points"] == 60.0


class TestResolutionSettings:
    """Tests for effective resolution lookup and updates."""

    @pytest.mark.asyncio
    async def test_device_override_wins(self, aggregator, seed):
        owner = await seed.user(default_level="1day")
        agent = await seed.agent(owner=owner, level="15min")
        assert await aggregator.get_effective_resolution(agent.id) == "15min"

    @pytest.mark.asyncio
    async def test_falls_back_to_owner_default_then_raw(self, aggregator, seed):
        owner = await seed.user(default_level="4hour")
        agent = await seed.agent(owner=owner)
        orphan = await seed.agent("orphan")

        assert await aggregator.get_effective_resolution(agent.id) == "4hour"
        assert await aggregator.get_effective_resolution(orphan.id) == RAW

    @pytest.mark.asyncio
    async def test_unknown_agent_defaults_to_raw(self, aggregator):
        assert await aggregator.get_effective_resolution("missing") == RAW

    @pytest.mark.asyncio
    async def test_update_and_clear_override(self, aggregator, seed):
        owner = await seed.user(default_level="1hour")
        agent = await seed.agent(owner=owner)

        result = await aggregator.update_agent_resolution(agent.id, "30min")
        assert result["effective_level"] == "30min"

        result = await aggregator.update_agent_resolution(agent.id, None)
        assert result["device_override"] is None
        assert result["effective_level"] == "1hour"

    @pytest.mark.asyncio
    async def test_invalid_update_is_rejected_before_write(self, aggregator, seed):
        agent = await seed.agent(level="15min")
        with pytest.raises(ValidationError):
            await aggregator.update_agent_resolution(agent.id, "2hour")
        assert await aggregator.get_effective_resolution(agent.id) == "15min"

    @pytest.mark.asyncio
    async def test_update_unknown_agent_or_user(self, aggregator):
        with pytest.raises(NotFoundError):
            await aggregator.update_agent_resolution("missing", "1hour")
        with pytest.raises(NotFoundError):
            await aggregator.update_user_default_resolution("missing", "1hour")

    @pytest.mark.asyncio
    async def test_user_default_requires_a_value(self, aggregator, seed):
        owner = await seed.user()
        with pytest.raises(ValidationError):
            await aggregator.update_user_default_resolution(owner.id, None)
        result = await aggregator.update_user_default_resolution(owner.id, "1day")
        assert result["default_aggregation_level"] == "1day"

    def test_resolution_info_lists_raw_first(self, aggregator):
        info = aggregator.get_resolution_info()
        assert list(info)[0] == RAW
        assert info["1hour"]["minutes"] == 60


class TestCleanup:
    """Tests for candle retention."""

    @pytest.mark.asyncio
    async def test_deletes_only_candles_past_horizon(self, aggregator, seed, clock, session_factory):
        agent = await seed.agent()
        old = clock.now() - timedelta(days=40)
        new = clock.now() - timedelta(hours=3)
        await seed.samples(agent, two_hours_of_samples(old) + two_hours_of_samples(new))
        await aggregator.generate(agent.id, "1hour", old, clock.now())

        deleted = await aggregator.cleanup_old_candles(days_to_keep=30)

        assert deleted == 2
        assert await candle_count(session_factory, "1hour") == 2

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, aggregator):
        assert await aggregator.cleanup_old_candles(days_to_keep=30) == 0
