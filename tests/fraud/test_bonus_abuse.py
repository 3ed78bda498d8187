"""
Unit Tests for Bonus Abuse Detector
"""

from datetime import timedelta

import pytest

from tradeguard.domains.fraud.bonus_abuse import BonusAbuseDetector
from tradeguard.domains.fraud.models import (
    ActionPriority,
    BetRecord,
    BonusUsage,
    RecommendedAction,
    Severity,
    SignalType,
)
from tests.conftest import BASE_TIME


def bets(count, odds=2.0, start=BASE_TIME, amount=10.0):
    return [BetRecord(amount=amount, odds=odds, timestamp=start + timedelta(minutes=i + 1)) for i in range(count)]


@pytest.mark.unit
class TestBonusAbuseDetector:
    """Test promotional abuse patterns."""

    @pytest.fixture
    def detector(self):
        return BonusAbuseDetector()

    @pytest.fixture
    def active_bonus(self):
        return BonusUsage(bonus_id="welcome", amount=100, wager_requirement=500, claimed_at=BASE_TIME)

    def test_no_history(self, detector):
        result = detector.detect("user-1", [], [])

        assert result.is_abusive is False
        assert result.risk_score == 0.0
        assert result.bonus_bet_ratio == 0.0
        assert result.signals == []

    def test_bonus_hunting(self, detector, active_bonus):
        """Test every bet placed inside a bonus period."""
        result = detector.detect("user-1", [active_bonus], bets(10))

        assert result.abuse_types == ["bonus_hunting"]
        assert result.bonus_bet_ratio == 1.0
        assert result.confidence == pytest.approx(0.7)
        assert result.risk_score == pytest.approx(0.63)
        assert result.signals[0].type == SignalType.BONUS_ABUSE
        assert result.signals[0].severity == Severity.MEDIUM
        assert result.recommendations[0].priority == ActionPriority.MEDIUM
        assert [r.action for r in result.recommendations] == [RecommendedAction.FLAG_FOR_COMPLIANCE]

    def test_bonus_hunting_needs_enough_bets(self, detector, active_bonus):
        result = detector.detect("user-1", [active_bonus], bets(9))

        assert result.is_abusive is False
        assert result.bonus_bet_ratio == 1.0

    def test_bets_outside_bonus_period(self, detector):
        bonus = BonusUsage(
            bonus_id="reload",
            status="completed",
            claimed_at=BASE_TIME,
            completed_at=BASE_TIME + timedelta(minutes=5),
        )

        result = detector.detect("user-1", [bonus], bets(10))

        assert result.bonus_bet_ratio == pytest.approx(0.5)
        assert "bonus_hunting" not in result.abuse_types

    def test_forfeited_bonus_ignored(self, detector):
        bonus = BonusUsage(bonus_id="welcome", status="forfeited", claimed_at=BASE_TIME)

        result = detector.detect("user-1", [bonus], bets(10))

        assert result.is_abusive is False

    def test_arbitrage(self, detector):
        """Test a history dominated by low-odds bets."""
        history = bets(7, odds=1.2) + bets(3, odds=2.5)

        result = detector.detect("user-1", [], history)

        assert result.abuse_types == ["arbitrage_abuse"]
        assert result.arbitrage_score == pytest.approx(0.7)
        assert result.confidence == pytest.approx(0.6)

    def test_bets_without_odds_are_not_low_odds(self, detector):
        result = detector.detect("user-1", [], bets(10, odds=None))

        assert result.arbitrage_score == 0.0
        assert result.is_abusive is False

    def test_wagering_manipulation(self, detector):
        """Test a large wagering requirement cleared in thirty minutes."""
        bonus = BonusUsage(
            bonus_id="vip",
            status="completed",
            amount=100,
            wager_requirement=5000,
            claimed_at=BASE_TIME,
            completed_at=BASE_TIME + timedelta(minutes=30),
        )

        result = detector.detect("user-1", [bonus], [])

        assert result.abuse_types == ["wagering_manipulation"]
        assert result.confidence == pytest.approx(0.8)
        assert result.wager_speed == pytest.approx(100)
        assert result.signals[0].severity == Severity.HIGH
        assert result.recommendations[0].priority == ActionPriority.HIGH
        assert result.patterns[0].evidence["bonus_id"] == "vip"
        assert result.recommendations[1].action == RecommendedAction.LIMIT_WITHDRAWALS
        assert result.recommendations[1].parameters == {"max_per_day": 0}

    def test_small_requirement_is_not_manipulation(self, detector):
        bonus = BonusUsage(
            bonus_id="small",
            status="completed",
            amount=10,
            wager_requirement=1000,
            claimed_at=BASE_TIME,
            completed_at=BASE_TIME + timedelta(minutes=10),
        )

        result = detector.detect("user-1", [bonus], [])

        assert result.is_abusive is False

    def test_confidence_is_strongest_pattern(self, detector, active_bonus):
        fast = BonusUsage(
            bonus_id="vip",
            status="completed",
            amount=100,
            wager_requirement=5000,
            claimed_at=BASE_TIME - timedelta(hours=3),
            completed_at=BASE_TIME - timedelta(hours=2, minutes=30),
        )

        result = detector.detect("user-1", [active_bonus, fast], bets(10, odds=1.1))

        assert result.abuse_types == ["bonus_hunting", "arbitrage_abuse", "wagering_manipulation"]
        assert result.confidence == pytest.approx(0.8)
