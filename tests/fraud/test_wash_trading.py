"""
Unit Tests for Wash Trading Analysis

Covers batch self-matching, related-account matching, circular flows and
the realtime per-trade monitor.
"""

from datetime import timedelta

import pytest

from tradeguard.domains.fraud.models import Severity, SignalType
from tradeguard.domains.fraud.wash_trading import TradeActivityMonitor, WashTradingAnalyzer
from tests.conftest import BASE_TIME, make_trade


def at(minutes=0, seconds=0):
    return BASE_TIME + timedelta(minutes=minutes, seconds=seconds)


def self_pairs(count, start_minute=0, user_id="user-1"):
    """Buy/sell pairs thirty seconds apart, ten minutes between pairs."""
    trades = []
    for i in range(count):
        minute = start_minute + i * 10
        trades.append(make_trade(user_id=user_id, side="buy", timestamp=at(minute)))
        trades.append(make_trade(user_id=user_id, side="sell", timestamp=at(minute, 30)))
    return trades


def related_pairs(count, start_minute=100, counterparty="user-2"):
    trades = []
    for i in range(count):
        minute = start_minute + i * 10
        trades.append(make_trade(side="buy", quantity=100, price=100, timestamp=at(minute)))
        trades.append(make_trade(user_id=counterparty, side="sell", quantity=100, price=100, timestamp=at(minute, 10)))
    return trades


def circular(start_minute=400, counterparty="user-2"):
    return [
        make_trade(side="sell", counterparty_id=counterparty, timestamp=at(start_minute)),
        make_trade(user_id=counterparty, side="sell", counterparty_id="user-1", timestamp=at(start_minute + 10)),
    ]


@pytest.mark.unit
class TestWashTradingAnalyzer:
    """Test batch wash trading scoring."""

    @pytest.fixture
    def analyzer(self):
        return WashTradingAnalyzer()

    def test_no_trades(self, analyzer):
        result = analyzer.analyze("user-1", [])

        assert result.risk_score == 0.0
        assert result.is_wash_trading is False
        assert result.window_start is None

    def test_self_trades(self, analyzer):
        """Test four self-matched pairs score the capped 0.4."""
        result = analyzer.analyze("user-1", self_pairs(4))

        assert result.self_trade_count == 4
        assert result.self_trade_volume == pytest.approx(4000)
        assert result.risk_score == pytest.approx(0.4)
        assert result.is_wash_trading is False
        assert result.signals[0].type == SignalType.SELF_TRADING
        assert result.signals[0].severity == Severity.HIGH
        assert result.window_start == at(0)

    def test_self_trade_cap(self, analyzer):
        result = analyzer.analyze("user-1", self_pairs(6))

        assert result.self_trade_count == 6
        assert result.risk_score == pytest.approx(0.4)

    def test_distant_or_uneven_trades_do_not_pair(self, analyzer):
        trades = [
            make_trade(side="buy", timestamp=at(0)),
            make_trade(side="sell", timestamp=at(2)),
            make_trade(side="buy", quantity=10, timestamp=at(10)),
            make_trade(side="sell", quantity=12, timestamp=at(10, 5)),
            make_trade(side="buy", market_id="ETH-USD", timestamp=at(20)),
            make_trade(side="sell", timestamp=at(20, 5)),
        ]

        assert analyzer.analyze("user-1", trades).self_trade_count == 0

    def test_related_account_trades(self, analyzer):
        """Test matching against a known associate."""
        result = analyzer.analyze("user-1", related_pairs(3), related_users=["user-2"])

        assert len(result.related_account_trades) == 1
        related = result.related_account_trades[0]
        assert related.counterparty_id == "user-2"
        assert related.trade_count == 3
        assert related.total_volume == pytest.approx(30_000)
        assert related.confidence == pytest.approx(0.3)
        assert result.related_volume == pytest.approx(30_000)
        assert result.risk_score == pytest.approx(0.3)
        assert result.signals[0].type == SignalType.COORDINATED_TRADING

    def test_unrelated_counterparties_ignored(self, analyzer):
        result = analyzer.analyze("user-1", related_pairs(3))

        assert result.related_account_trades == []
        assert result.risk_score == 0.0

    def test_circular_pattern(self, analyzer):
        """Test a position sent to an associate and returned within the hour."""
        result = analyzer.analyze("user-1", circular(), related_users=["user-2"])

        assert len(result.circular_patterns) == 1
        pattern = result.circular_patterns[0]
        assert pattern.accounts == ["user-1", "user-2"]
        assert pattern.elapsed_seconds == 600
        assert result.risk_score == pytest.approx(0.2)
        assert result.signals[0].severity == Severity.HIGH

    def test_circular_return_outside_window(self, analyzer):
        trades = [
            make_trade(side="sell", counterparty_id="user-2", timestamp=at(0)),
            make_trade(user_id="user-2", side="sell", counterparty_id="user-1", timestamp=at(61)),
        ]

        assert analyzer.analyze("user-1", trades, related_users=["user-2"]).circular_patterns == []

    def test_combined_wash_trading(self, analyzer):
        """Test self, related and circular findings together cross the high threshold."""
        trades = self_pairs(4) + related_pairs(3) + circular()

        result = analyzer.analyze("user-1", trades, related_users=["user-2"])

        assert result.risk_score == pytest.approx(0.9)
        assert result.is_wash_trading is True
        assert SignalType.WASH_TRADING in [s.type for s in result.signals]


@pytest.mark.unit
class TestTradeActivityMonitor:
    """Test realtime per-trade checks."""

    @pytest.fixture
    def monitor(self):
        return TradeActivityMonitor()

    def test_first_trade(self, monitor):
        result = monitor.check(make_trade(), [])

        assert result.signals == []
        assert result.trades_last_minute == 1
        assert result.volume_multiplier == 0.0
        assert result.daily_volume == pytest.approx(1000)

    def test_velocity_spike(self, monitor):
        """Test an eleventh trade inside one minute."""
        history = [make_trade(timestamp=at(0, i * 5)) for i in range(10)]

        result = monitor.check(make_trade(timestamp=at(0, 55)), history)

        assert result.trades_last_minute == 11
        assert result.velocity_multiplier == pytest.approx(1.1)
        assert result.signals[0].type == SignalType.VELOCITY_SPIKE
        assert result.signals[0].severity == Severity.HIGH

    def test_trades_too_close_together(self, monitor):
        history = [make_trade(timestamp=at(0))]

        result = monitor.check(make_trade(timestamp=at(0, 2)), history)

        assert result.signals[0].type == SignalType.VELOCITY_SPIKE
        assert result.signals[0].severity == Severity.MEDIUM

    def test_immediate_self_trade(self, monitor):
        """Test an opposite trade seconds earlier with an identical quantity."""
        previous = make_trade(side="buy", timestamp=at(0))
        trade = make_trade(side="sell", counterparty_id="user-9", timestamp=at(0, 3))

        result = monitor.check(trade, [previous])

        assert result.matching_trade_ids == [previous.id]
        assert SignalType.SELF_TRADING in [s.type for s in result.signals]

    def test_self_trade_needs_counterparty(self, monitor):
        previous = make_trade(side="buy", timestamp=at(0))

        result = monitor.check(make_trade(side="sell", timestamp=at(0, 3)), [previous])

        assert result.matching_trade_ids == []

    def test_volume_spike(self, monitor):
        """Test a trade twenty times the average size."""
        history = [make_trade(timestamp=at(-60 * (i + 1))) for i in range(3)]

        result = monitor.check(make_trade(quantity=200, timestamp=at(0)), history)

        assert result.volume_multiplier == pytest.approx(20)
        assert result.signals[0].type == SignalType.VOLUME_MANIPULATION
        assert result.signals[0].severity == Severity.HIGH

    def test_daily_volume_limit(self, monitor):
        history = [make_trade(quantity=5000, timestamp=at(-60))]

        result = monitor.check(make_trade(quantity=6000, timestamp=at(0)), history)

        assert result.daily_volume == pytest.approx(1_100_000)
        assert result.signals[0].type == SignalType.VOLUME_MANIPULATION
        assert result.signals[0].severity == Severity.MEDIUM
