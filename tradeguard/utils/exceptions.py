"""
TradeGuard - Exception Hierarchy

Categorized errors for the fraud detection engine. Every error carries a
machine-readable code and a structured details payload so callers can log
or serialize it without parsing messages.
"""

from typing import Any, Dict, Optional


class FraudDetectionError(Exception):
    """Base exception class for TradeGuard."""

    def __init__(
        self,
        message: str,
        error_code: str = "FRAUD_DETECTION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidInputError(FraudDetectionError):
    """Malformed transaction, trade or unknown action type."""

    def __init__(
        self,
        message: str = "Invalid input",
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message=message, error_code="INVALID_INPUT", details=details)
        self.field = field


class VelocityLimitExceededError(FraudDetectionError):
    """Raised when an action breaks a velocity limit."""

    def __init__(self, limit_type: str, current: float, limit: float, action_type: Optional[str] = None):
        message = f"{limit_type} velocity limit exceeded: {current}/{limit}"
        super().__init__(
            message=message,
            error_code="VELOCITY_LIMIT_EXCEEDED",
            details={
                "limit_type": limit_type,
                "current": current,
                "limit": limit,
                "action_type": action_type,
            },
        )
        self.limit_type = limit_type
        self.current = current
        self.limit = limit


class DeviceFingerprintError(FraudDetectionError):
    """Device fingerprint could not be analyzed."""

    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="DEVICE_FINGERPRINT_ERROR",
            details={"user_id": user_id},
        )
        self.user_id = user_id


class IPAnalysisError(FraudDetectionError):
    """IP address could not be analyzed."""

    def __init__(self, message: str, ip: Optional[str] = None):
        super().__init__(message=message, error_code="IP_ANALYSIS_ERROR", details={"ip": ip})
        self.ip = ip


class RuleConfigurationError(FraudDetectionError):
    """Rule definition references an unknown field path or operator."""

    def __init__(
        self,
        message: str,
        rule_id: Optional[str] = None,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code="RULE_CONFIGURATION_ERROR",
            details={"rule_id": rule_id, "field": field, **(details or {})},
        )
        self.rule_id = rule_id
        self.field = field


class StateStoreError(FraudDetectionError):
    """State store operation failed and no fallback was available."""

    def __init__(self, message: str, operation: Optional[str] = None, key: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="STATE_STORE_ERROR",
            details={"operation": operation, "key": key},
        )


class AnalyzerError(FraudDetectionError):
    """A leaf analyzer failed during a fan-out."""

    def __init__(self, analyzer: str, message: str, cause: Optional[BaseException] = None):
        details = {"analyzer": analyzer}
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(message=message, error_code="ANALYZER_ERROR", details=details)
        self.analyzer = analyzer
        self.cause = cause
