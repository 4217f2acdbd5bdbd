"""
Orchestrator Package - Scheduling & Entry Point.

============================================================
PACKAGE OVERVIEW
============================================================
Wires the pipeline's services together and runs its
recurring jobs.

    +-----------------------------------------------------+
    |                  AlertingRuntime                    |
    |-----------------------------------------------------|
    |  PeriodicJob        |  single-flight asyncio loop   |
    |  AlertingScheduler  |  candles, cleanup, escalation |
    |  CLI                |  run / one-shot commands      |
    +-----------------------------------------------------+

============================================================
"""

from .scheduler import PeriodicJob, AlertingScheduler
from .runtime import AlertingRuntime


__all__ = [
    "PeriodicJob",
    "AlertingScheduler",
    "AlertingRuntime",
]
