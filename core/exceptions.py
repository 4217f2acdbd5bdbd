"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the alerting pipeline.

- Provides clear exception hierarchy
- Separates "reject now" errors from "retry next run" errors
- Includes context for debugging and summaries

============================================================
EXCEPTION HIERARCHY
============================================================
AlertingException (base)
├── ConfigurationError
│   └── InvalidConfigError
├── ValidationError
│   └── PolicyLogicError
├── NotFoundError
└── TransientIOError
    └── GatewayError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    REJECTED = "rejected"
    """Input was refused before any write. Do not retry as-is."""

    TRANSIENT = "transient"
    """Temporary error. The next scheduled run is the retry."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class AlertingException(Exception):
    """
    Base exception for all alerting pipeline errors.

    All exceptions carry:
    - severity: for logging
    - context: for debugging
    - classification: for error handling decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.REJECTED

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_transient(self) -> bool:
        """Check if the next scheduled run may succeed."""
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/summaries."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        base = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        return f"{base} | {ctx_str}" if ctx_str else base


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(AlertingException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            context={
                "config_key": key,
                "actual_value": str(value)[:100],
                "reason": reason,
            },
        )


# ============================================================
# VALIDATION ERRORS
# ============================================================

class ValidationError(AlertingException):
    """Input rejected synchronously, nothing was written."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]

        super().__init__(message, context=context, **kwargs)


class PolicyLogicError(ValidationError):
    """Escalation policy is malformed or internally inconsistent."""

    default_severity = Severity.HIGH

    def __init__(self, message: str, policy_id: Optional[Any] = None, **kwargs):
        context = kwargs.pop("context", {})
        if policy_id is not None:
            context["policy_id"] = policy_id
        super().__init__(message, context=context, **kwargs)


# ============================================================
# LOOKUP ERRORS
# ============================================================

class NotFoundError(AlertingException):
    """Referenced agent, alert or user does not exist."""

    default_severity = Severity.LOW

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            context={"entity": entity, "entity_id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


# ============================================================
# I/O ERRORS
# ============================================================

class TransientIOError(AlertingException):
    """Store or gateway unavailable. Caught at the narrowest scope."""

    default_classification = ErrorClassification.TRANSIENT


class GatewayError(TransientIOError):
    """A notification gateway refused or failed a delivery."""

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if channel:
            context["channel"] = channel
        if status_code is not None:
            context["status_code"] = status_code

        super().__init__(message, context=context, **kwargs)
        self.channel = channel
        self.status_code = status_code


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "ErrorClassification",
    "AlertingException",
    "ConfigurationError",
    "InvalidConfigError",
    "ValidationError",
    "PolicyLogicError",
    "NotFoundError",
    "TransientIOError",
    "GatewayError",
]
