"""
Shared test fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite)
with all tables created, and a MockClock pinned to a fixed
instant.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from core.clock import MockClock
from core.config import AlertingConfig
from database import (
    Agent,
    Employee,
    EscalationPolicyRecord,
    MetricSample,
    Role,
    User,
    create_all_tables,
    create_database_engine,
    create_session_factory,
    transaction_scope,
)


T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return AlertingConfig.for_testing()


@pytest.fixture
def clock():
    return MockClock(T0)


@pytest_asyncio.fixture
async def engine(config):
    engine = create_database_engine(config.database)
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# ============================================================
# SEED HELPERS
# ============================================================

class Seeder:
    """Inserts fixture rows through the real persistence layer."""

    def __init__(self, session_factory):
        self._factory = session_factory

    async def add(self, *rows):
        async with transaction_scope(self._factory) as session:
            session.add_all(rows)
        return rows[0] if len(rows) == 1 else rows

    async def user(self, default_level="raw", email="owner@example.com"):
        return await self.add(User(email=email, default_aggregation_level=default_level))

    async def agent(self, hostname="web-01", owner=None, level=None, active=True, device_name=None):
        return await self.add(
            Agent(
                hostname=hostname,
                device_name=device_name,
                owner_user_id=owner.id if owner else None,
                aggregation_level=level,
                is_active=active,
            )
        )

    async def samples(self, agent, rows):
        """rows: iterable of (collected_at, cpu, memory, disk)."""
        await self.add(*[
            MetricSample(
                agent_id=agent.id,
                collected_at=ts,
                cpu_percent=cpu,
                memory_percent=memory,
                disk_percent=disk,
            )
            for ts, cpu, memory, disk in rows
        ])

    async def role(self, name):
        return await self.add(Role(name=name))

    async def employee(self, first, roles, email=None, phone=None, tz=None, active=True):
        employee = Employee(
            first_name=first,
            last_name="Tester",
            email=email,
            phone_number=phone,
            timezone=tz,
            is_active=active,
        )
        employee.roles = list(roles)
        return await self.add(employee)

    async def policy(
        self,
        name="Default",
        severities=("high", "critical"),
        trigger_after=10,
        steps=None,
        enabled=True,
    ):
        return await self.add(
            EscalationPolicyRecord(
                name=name,
                enabled=enabled,
                trigger_severities=list(severities),
                trigger_after_minutes=trigger_after,
                steps=steps if steps is not None else [],
            )
        )


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
