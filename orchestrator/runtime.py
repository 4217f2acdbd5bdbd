"""
Orchestrator - Runtime Wiring.

Builds every service once, with its collaborators injected,
and tears them down in reverse order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from aggregation import CandleAggregator
from core.clock import ClockProtocol, SystemClock
from core.config import AlertingConfig
from database import create_database_engine, create_session_factory
from monitoring.alerts import AlertLedger
from monitoring.escalation import EscalationEngine
from monitoring.notifications import (
    EmailGateway,
    EscalationFormatter,
    HttpEmailGateway,
    InProcessBroadcaster,
    SmsGateway,
    TwilioSmsGateway,
)
from .scheduler import AlertingScheduler


logger = logging.getLogger(__name__)


@dataclass
class AlertingRuntime:
    config: AlertingConfig
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    clock: ClockProtocol
    broadcaster: InProcessBroadcaster
    email_gateway: EmailGateway
    sms_gateway: SmsGateway
    aggregator: CandleAggregator
    ledger: AlertLedger
    escalation: EscalationEngine
    scheduler: AlertingScheduler

    @classmethod
    def create(
        cls,
        config: AlertingConfig,
        clock: Optional[ClockProtocol] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> "AlertingRuntime":
        clock = clock or SystemClock()
        engine = engine or create_database_engine(config.database)
        session_factory = create_session_factory(engine)
        broadcaster = InProcessBroadcaster()
        email_gateway = HttpEmailGateway(config.email, config.timeout.gateway_timeout_seconds)
        sms_gateway = TwilioSmsGateway(config.sms, config.timeout.gateway_timeout_seconds)

        aggregator = CandleAggregator(session_factory, clock, config.aggregation, config.timeout)
        ledger = AlertLedger(session_factory, clock, broadcaster, config.escalation, config.timeout)
        escalation = EscalationEngine(
            session_factory,
            clock,
            email_gateway=email_gateway,
            sms_gateway=sms_gateway,
            broadcaster=broadcaster,
            formatter=EscalationFormatter(config.escalation.dashboard_url),
            config=config.escalation,
            timeouts=config.timeout,
        )
        scheduler = AlertingScheduler(aggregator, escalation, config)

        return cls(
            config=config,
            engine=engine,
            session_factory=session_factory,
            clock=clock,
            broadcaster=broadcaster,
            email_gateway=email_gateway,
            sms_gateway=sms_gateway,
            aggregator=aggregator,
            ledger=ledger,
            escalation=escalation,
            scheduler=scheduler,
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.email_gateway.close()
        await self.sms_gateway.close()
        await self.engine.dispose()
        logger.info("Alerting runtime closed")


__all__ = ["AlertingRuntime"]
