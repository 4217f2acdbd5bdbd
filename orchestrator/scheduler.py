"""
Orchestrator - Scheduler.

============================================================
RESPONSIBILITY
============================================================
Run the pipeline's recurring jobs as asyncio background tasks.

- Fixed cadence: a tick fires every interval
- Single-flight: a tick that finds the previous run still in
  progress is skipped, never queued
- A failing run is logged and the loop continues

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aggregation import CandleAggregator
from core.config import AlertingConfig
from core.exceptions import InvalidConfigError
from monitoring.escalation import EscalationEngine


logger = logging.getLogger(__name__)


JobAction = Callable[[], Awaitable[Any]]


class PeriodicJob:
    """
    Runs an async action every `interval_seconds`.

    Runs as a background task.
    """

    def __init__(
        self,
        name: str,
        action: JobAction,
        interval_seconds: float,
        run_immediately: bool = True,
    ):
        if interval_seconds <= 0:
            raise InvalidConfigError(f"{name}.interval_seconds", interval_seconds, "must be positive")
        self.name = name
        self._action = action
        self._interval = interval_seconds
        self._run_immediately = run_immediately
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self._in_flight = False

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_result: Any = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def start(self) -> None:
        """Start the job loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Job {self.name} started (every {self._interval}s)")

    async def stop(self) -> None:
        """Stop the loop and cancel a run in progress."""
        self._running = False

        for task in (self._task, self._current):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._current = None

        logger.info(f"Job {self.name} stopped")

    async def run_once(self) -> Any:
        """
        Execute the action now unless a run is already in progress.

        Returns:
            The action's result, or None if skipped or failed
        """
        if self._in_flight:
            self.skipped += 1
            logger.warning(f"Job {self.name} still running, skipping")
            return None

        self._in_flight = True
        try:
            result = await self._action()
            self.runs += 1
            self.last_result = result
            self.last_error = None
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error(f"Job {self.name} failed: {e}", exc_info=True)
            return None
        finally:
            self._in_flight = False

    def _tick(self) -> None:
        if self._current is not None and not self._current.done():
            self.skipped += 1
            logger.warning(f"Job {self.name} still running, skipping tick")
            return
        self._current = asyncio.create_task(self.run_once())

    async def _run(self) -> None:
        """Main run loop."""
        try:
            if not self._run_immediately:
                await asyncio.sleep(self._interval)
            while self._running:
                self._tick()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            pass

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self._interval,
            "running": self._running,
            "in_flight": self._in_flight,
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_error": self.last_error,
        }


class AlertingScheduler:
    """
    Wires the recurring jobs:

    - candle-generation: refresh recent candles
    - candle-cleanup: enforce candle retention
    - escalation-sweep: escalate unacknowledged alerts
    """

    def __init__(
        self,
        aggregator: CandleAggregator,
        escalation: EscalationEngine,
        config: Optional[AlertingConfig] = None,
    ):
        config = config or AlertingConfig()
        self.jobs: List[PeriodicJob] = [
            PeriodicJob(
                "candle-generation",
                aggregator.generate_recent,
                config.aggregation.recent_interval_seconds,
            ),
            PeriodicJob(
                "candle-cleanup",
                aggregator.cleanup_old_candles,
                config.aggregation.cleanup_interval_seconds,
                run_immediately=False,
            ),
            PeriodicJob(
                "escalation-sweep",
                escalation.sweep,
                config.escalation.sweep_interval_seconds,
            ),
        ]

    def job(self, name: str) -> PeriodicJob:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    async def start(self) -> None:
        for job in self.jobs:
            await job.start()
        logger.info(f"Alerting scheduler started with {len(self.jobs)} jobs")

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
        logger.info("Alerting scheduler stopped")

    def stats(self) -> List[Dict[str, Any]]:
        return [job.stats() for job in self.jobs]


__all__ = [
    "PeriodicJob",
    "AlertingScheduler",
]
