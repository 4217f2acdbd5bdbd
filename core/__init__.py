"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- clock: Unified time abstraction
- config: Environment-driven configuration
- exceptions: Custom exception hierarchy
"""

from .clock import (
    ClockProtocol,
    SystemClock,
    MockClock,
    ensure_utc,
    to_local,
    to_iso8601,
    from_iso8601,
)
from .config import (
    AlertingConfig,
    DatabaseConfig,
    AggregationConfig,
    EscalationConfig,
    TimeoutConfig,
    EmailConfig,
    SmsConfig,
)
from .exceptions import (
    AlertingException,
    ConfigurationError,
    InvalidConfigError,
    ValidationError,
    PolicyLogicError,
    NotFoundError,
    TransientIOError,
    GatewayError,
)


__all__ = [
    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "to_local",
    "to_iso8601",
    "from_iso8601",

    # Config
    "AlertingConfig",
    "DatabaseConfig",
    "AggregationConfig",
    "EscalationConfig",
    "TimeoutConfig",
    "EmailConfig",
    "SmsConfig",

    # Exceptions
    "AlertingException",
    "ConfigurationError",
    "InvalidConfigError",
    "ValidationError",
    "PolicyLogicError",
    "NotFoundError",
    "TransientIOError",
    "GatewayError",
]
