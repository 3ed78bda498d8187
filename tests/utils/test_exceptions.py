"""
Unit Tests for the Exception Hierarchy
"""

import pytest

from tradeguard.utils.exceptions import (
    AnalyzerError,
    FraudDetectionError,
    InvalidInputError,
    RuleConfigurationError,
    StateStoreError,
    VelocityLimitExceededError,
)


@pytest.mark.unit
class TestExceptions:
    """Test error codes and structured details."""

    def test_base_to_dict(self):
        error = FraudDetectionError("Something broke")

        assert error.to_dict() == {
            "error_code": "FRAUD_DETECTION_ERROR",
            "message": "Something broke",
            "details": {},
        }
        assert str(error) == "Something broke"

    def test_invalid_input_field(self):
        error = InvalidInputError("Amount must be positive", field="amount", details={"value": -5})

        assert error.error_code == "INVALID_INPUT"
        assert error.field == "amount"
        assert error.details == {"value": -5, "field": "amount"}
        assert isinstance(error, FraudDetectionError)

    def test_velocity_limit_exceeded(self):
        error = VelocityLimitExceededError("hourly", 6, 5, action_type="deposit")

        assert error.limit_type == "hourly"
        assert error.current == 6
        assert error.limit == 5
        assert error.message == "hourly velocity limit exceeded: 6/5"
        assert error.details["action_type"] == "deposit"

    def test_rule_configuration_details(self):
        error = RuleConfigurationError("Unknown field", rule_id="r1", field="transaction.colour")

        assert error.error_code == "RULE_CONFIGURATION_ERROR"
        assert error.details == {"rule_id": "r1", "field": "transaction.colour"}

    def test_state_store_error(self):
        error = StateStoreError("Redis unavailable", operation="get", key="profile:user-1")

        assert error.to_dict()["details"] == {"operation": "get", "key": "profile:user-1"}

    def test_analyzer_error_records_cause(self):
        cause = TimeoutError("slow")
        error = AnalyzerError("ip", "IP analyzer failed", cause=cause)

        assert error.analyzer == "ip"
        assert error.cause is cause
        assert error.details == {"analyzer": "ip", "cause": "TimeoutError"}
        assert error.error_code == "ANALYZER_ERROR"
