"""
Unit Tests for Behavior Profiler

Tests baseline learning, time and amount anomalies, soft deviations and
the baseline update policy.
"""

from datetime import timedelta

import pytest

from tradeguard.config import BehaviorConfig
from tradeguard.domains.fraud.behavior import BehaviorAction, BehaviorProfiler
from tradeguard.domains.fraud.models import Severity, SignalType
from tests.conftest import BASE_TIME


async def build_baseline(profiler, user_id="user-1", count=5, action_type="login", amount=None, **extra):
    for i in range(count):
        await profiler.analyze(
            user_id,
            BehaviorAction(type=action_type, timestamp=BASE_TIME + timedelta(minutes=i), amount=amount, **extra),
        )


@pytest.mark.unit
class TestBehaviorProfiler:
    """Test behavioral anomaly detection."""

    @pytest.fixture
    def profiler(self, store):
        return BehaviorProfiler(store, BehaviorConfig())

    @pytest.mark.asyncio
    async def test_first_action_is_not_anomalous(self, profiler):
        result = await profiler.analyze("user-1", BehaviorAction(type="deposit", timestamp=BASE_TIME, amount=500))

        assert result.is_anomaly is False
        assert result.anomaly_score == 0.0
        assert result.baseline_updated is True

    @pytest.mark.asyncio
    async def test_baseline_learned(self, profiler):
        """Test the profile tracks hours, days and amount averages."""
        await build_baseline(profiler, action_type="deposit", amount=100)

        profile = await profiler.get_profile("user-1")

        assert profile.preferred_login_hours == [12] * 5
        assert profile.preferred_days == [BASE_TIME.weekday()]
        assert profile.avg_deposit_amount == pytest.approx(100)
        assert profile.deposit_count == 5

    @pytest.mark.asyncio
    async def test_time_anomaly(self, profiler):
        """Test activity ten hours away from the usual hour."""
        await build_baseline(profiler)

        result = await profiler.analyze("user-1", BehaviorAction(type="login", timestamp=BASE_TIME.replace(hour=22)))

        assert result.is_anomaly is True
        assert result.anomaly_type == "time_anomaly"
        assert result.anomaly_score == pytest.approx(0.3)
        assert result.risk_score == pytest.approx(0.24)
        assert result.deviations[0].metric == "login_hour"
        assert result.deviations[0].significance == "high"
        assert result.signals[0].type == SignalType.TIME_ANOMALY
        assert result.signals[0].severity == Severity.HIGH

    @pytest.mark.asyncio
    async def test_time_needs_minimum_baseline(self, profiler):
        await build_baseline(profiler, count=4)

        result = await profiler.analyze("user-1", BehaviorAction(type="login", timestamp=BASE_TIME.replace(hour=22)))

        assert result.is_anomaly is False

    @pytest.mark.asyncio
    async def test_amount_anomaly(self, profiler):
        """Test a deposit fifteen times the average."""
        await build_baseline(profiler, action_type="deposit", amount=100)

        result = await profiler.analyze(
            "user-1", BehaviorAction(type="deposit", timestamp=BASE_TIME + timedelta(minutes=10), amount=1500)
        )

        assert result.is_anomaly is True
        assert result.anomaly_type == "deposit_anomaly"
        assert result.anomaly_score == pytest.approx(0.4)
        deviation = result.deviations[0]
        assert deviation.metric == "amount"
        assert deviation.expected == pytest.approx(100)
        assert deviation.observed == 1500
        assert deviation.significance == "high"

    @pytest.mark.asyncio
    async def test_combined_anomaly_recommendations(self, profiler):
        """Test time plus amount anomalies escalate recommendations."""
        await build_baseline(profiler, action_type="deposit", amount=100)

        result = await profiler.analyze(
            "user-1", BehaviorAction(type="deposit", timestamp=BASE_TIME.replace(hour=23), amount=1500)
        )

        assert result.anomaly_score == pytest.approx(0.7)
        actions = [r.action.value for r in result.recommendations]
        assert "require_verification" in actions

    @pytest.mark.asyncio
    async def test_anomalous_actions_update_baseline_by_default(self, profiler):
        await build_baseline(profiler, action_type="deposit", amount=100)

        result = await profiler.analyze(
            "user-1", BehaviorAction(type="deposit", timestamp=BASE_TIME + timedelta(minutes=10), amount=1500)
        )
        profile = await profiler.get_profile("user-1")

        assert result.baseline_updated is True
        assert profile.avg_deposit_amount == pytest.approx(0.1 * 1500 + 0.9 * 100)

    @pytest.mark.asyncio
    async def test_update_if_not_anomalous_policy(self, store):
        """Test anomalous actions leave the baseline untouched under the strict policy."""
        profiler = BehaviorProfiler(store, BehaviorConfig(baseline_policy="update_if_not_anomalous"))
        await build_baseline(profiler, action_type="deposit", amount=100)

        result = await profiler.analyze(
            "user-1", BehaviorAction(type="deposit", timestamp=BASE_TIME + timedelta(minutes=10), amount=1500)
        )
        profile = await profiler.get_profile("user-1")

        assert result.baseline_updated is False
        assert profile.avg_deposit_amount == pytest.approx(100)
        assert profile.deposit_count == 5

    @pytest.mark.asyncio
    async def test_session_deviation_is_soft(self, profiler):
        """Test session length deviations add score without marking an anomaly."""
        await build_baseline(profiler, session_duration=600)

        result = await profiler.analyze(
            "user-1", BehaviorAction(type="login", timestamp=BASE_TIME + timedelta(minutes=10), session_duration=30)
        )

        assert result.is_anomaly is False
        assert result.anomaly_score == pytest.approx(0.15)
        assert result.deviations[0].metric == "session_duration"
        assert result.deviations[0].significance == "high"

    @pytest.mark.asyncio
    async def test_trading_pattern_deviation(self, profiler):
        await build_baseline(profiler, action_type="trade", amount=1000, market_id="BTC-USD")

        result = await profiler.analyze(
            "user-1",
            BehaviorAction(type="trade", timestamp=BASE_TIME.replace(hour=15), amount=1000, market_id="DOGE-USD"),
        )

        assert [d.metric for d in result.deviations] == ["trading_pattern"]
        assert result.is_anomaly is False
        assert result.anomaly_score == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_profiles_are_per_user(self, profiler):
        await build_baseline(profiler, user_id="user-1")

        profile = await profiler.get_profile("user-2")

        assert profile.preferred_login_hours == []
