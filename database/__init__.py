"""
Database Package Initialization.

============================================================
ALERTING PIPELINE PERSISTENCE LAYER
============================================================

Async SQLAlchemy engine, explicit transaction scopes and the
ORM models for candles, alerts, policies and the notification
ledger.

REQUIRED:
- Every write happens inside transaction_scope()
- Every store call from a batch job is bounded()
- Candle writes are upserts, never read-modify-write

============================================================
"""

from .engine import (
    Base,
    create_database_engine,
    create_session_factory,
    transaction_scope,
    bounded,
    verify_database_connection,
    create_all_tables,
    initialize_database,
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
    DuplicateRecordError,
)

from .models import (
    User,
    Agent,
    MetricSample,
    MetricCandle,
    AlertRecord,
    Role,
    Employee,
    employee_roles,
    EscalationPolicyRecord,
    NotificationLog,
    EscalationStepClaim,
)


__all__ = [
    # Engine & Session
    "Base",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "bounded",
    # Initialization
    "verify_database_connection",
    "create_all_tables",
    "initialize_database",
    # Exceptions
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "DuplicateRecordError",
    # Models
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
]
