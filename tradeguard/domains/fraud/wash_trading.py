"""
Wash Trading Analysis

WashTradingAnalyzer looks back over a batch of trades for self-matching,
matching against related accounts and circular flows between accounts.
TradeActivityMonitor runs the cheap per-trade checks (trade velocity,
immediate self-trading, outsized volume) on every incoming trade.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import structlog

from ...config import RiskThresholds
from .models import RiskSignal, SerializableMixin, Severity, SignalType, Trade, TradeSide
from .primitives import HOUR_SECONDS, clamp

logger = structlog.get_logger(__name__)

# Batch pairing
PAIRING_WINDOW_SECONDS = 60
QUANTITY_TOLERANCE = 0.05
CIRCULAR_WINDOW_SECONDS = HOUR_SECONDS

# Realtime self-trade check is tighter
REALTIME_PAIRING_SECONDS = 5
REALTIME_QUANTITY_TOLERANCE = 0.01

HIGH_VOLUME_MULTIPLIER = 10


@dataclass(frozen=True)
class RelatedAccountTrade(SerializableMixin):
    user_id: str
    counterparty_id: str
    relationship_type: str
    trade_count: int
    total_volume: float
    confidence: float


@dataclass(frozen=True)
class CircularPattern(SerializableMixin):
    market_id: str
    accounts: List[str]
    outbound_trade_id: str
    return_trade_id: str
    elapsed_seconds: float
    volume: float


@dataclass(frozen=True)
class WashTradingAnalysis(SerializableMixin):
    user_id: str
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    self_trade_count: int
    self_trade_volume: float
    risk_score: float
    is_wash_trading: bool
    related_account_trades: List[RelatedAccountTrade] = field(default_factory=list)
    circular_patterns: List[CircularPattern] = field(default_factory=list)
    signals: List[RiskSignal] = field(default_factory=list)

    @property
    def related_volume(self) -> float:
        return sum(r.total_volume for r in self.related_account_trades)


def _is_opposite_match(a: Trade, b: Trade, window_seconds: float, tolerance: float) -> bool:
    if a.market_id != b.market_id or a.side == b.side:
        return False
    if abs((a.timestamp - b.timestamp).total_seconds()) >= window_seconds:
        return False
    return abs(a.quantity - b.quantity) / a.quantity < tolerance


def _pair_opposites(left: Sequence[Trade], right: Sequence[Trade]) -> List[tuple]:
    """Greedy one-to-one pairing of opposite-side trades in time order."""
    pairs = []
    used = set()
    for trade in sorted(left, key=lambda t: t.timestamp):
        for candidate in sorted(right, key=lambda t: t.timestamp):
            if candidate.id in used or candidate.id == trade.id:
                continue
            if _is_opposite_match(trade, candidate, PAIRING_WINDOW_SECONDS, QUANTITY_TOLERANCE):
                used.add(candidate.id)
                pairs.append((trade, candidate))
                break
    return pairs


class WashTradingAnalyzer:
    """Batch detection of wash trading for one user."""

    def __init__(self, thresholds: Optional[RiskThresholds] = None):
        self.thresholds = thresholds or RiskThresholds()

    def analyze(
        self,
        user_id: str,
        trades: Sequence[Trade],
        related_users: Optional[Sequence[str]] = None,
    ) -> WashTradingAnalysis:
        """
        Score a batch of trades for wash trading.

        score = min(self_trades * 0.1, 0.4)
              + min(related_volume / 100000, 0.3)
              + min(circular_patterns * 0.2, 0.3)
        """
        related_users = list(related_users or [])
        user_trades = sorted((t for t in trades if t.user_id == user_id), key=lambda t: t.timestamp)

        buys = [t for t in user_trades if t.side == TradeSide.BUY]
        sells = [t for t in user_trades if t.side == TradeSide.SELL]
        self_pairs = _pair_opposites(buys, sells)
        self_volume = sum(min(a.total_value, b.total_value) for a, b in self_pairs)

        related = self._related_account_trades(user_id, user_trades, trades, related_users)
        circular = self._circular_patterns(user_id, trades, related_users)

        related_volume = sum(r.total_volume for r in related)
        score = (
            min(len(self_pairs) * 0.1, 0.4)
            + min(related_volume / 100_000, 0.3)
            + min(len(circular) * 0.2, 0.3)
        )
        score = clamp(score)
        is_wash_trading = score > self.thresholds.high_risk_score

        signals = []
        if self_pairs:
            signals.append(
                RiskSignal(
                    type=SignalType.SELF_TRADING,
                    severity=Severity.HIGH if len(self_pairs) >= 4 else Severity.MEDIUM,
                    description=f"{len(self_pairs)} self-matched trade pair(s)",
                    evidence={"self_trade_count": len(self_pairs), "self_trade_volume": self_volume},
                    confidence=min(0.5 + len(self_pairs) * 0.1, 0.95),
                )
            )
        if related or circular:
            signals.append(
                RiskSignal(
                    type=SignalType.COORDINATED_TRADING,
                    severity=Severity.HIGH if circular else Severity.MEDIUM,
                    description=(
                        f"Trading with {len(related)} related account(s), "
                        f"{len(circular)} circular pattern(s)"
                    ),
                    evidence={
                        "related_accounts": [r.counterparty_id for r in related],
                        "related_volume": related_volume,
                        "circular_patterns": len(circular),
                    },
                    confidence=max([r.confidence for r in related] + [0.8 if circular else 0.0]),
                )
            )
        if is_wash_trading:
            signals.append(
                RiskSignal(
                    type=SignalType.WASH_TRADING,
                    severity=Severity.HIGH,
                    description=f"Wash trading suspected (score {score:.2f})",
                    evidence={"risk_score": score},
                    confidence=score,
                )
            )
            logger.warning("Wash trading suspected", user_id=user_id, risk_score=score)

        return WashTradingAnalysis(
            user_id=user_id,
            window_start=user_trades[0].timestamp if user_trades else None,
            window_end=user_trades[-1].timestamp if user_trades else None,
            self_trade_count=len(self_pairs),
            self_trade_volume=self_volume,
            risk_score=score,
            is_wash_trading=is_wash_trading,
            related_account_trades=related,
            circular_patterns=circular,
            signals=signals,
        )

    @staticmethod
    def _related_account_trades(
        user_id: str,
        user_trades: Sequence[Trade],
        trades: Sequence[Trade],
        related_users: Sequence[str],
    ) -> List[RelatedAccountTrade]:
        results = []
        for related_id in related_users:
            if related_id == user_id:
                continue
            related_trades = [t for t in trades if t.user_id == related_id]
            pairs = _pair_opposites(user_trades, related_trades)
            if not pairs:
                continue
            results.append(
                RelatedAccountTrade(
                    user_id=user_id,
                    counterparty_id=related_id,
                    relationship_type="known_associate",
                    trade_count=len(pairs),
                    total_volume=sum(min(a.total_value, b.total_value) for a, b in pairs),
                    confidence=min(len(pairs) / 10, 1.0),
                )
            )
        return results

    @staticmethod
    def _circular_patterns(
        user_id: str,
        trades: Sequence[Trade],
        related_users: Sequence[str],
    ) -> List[CircularPattern]:
        related = set(related_users) - {user_id}
        if not related:
            return []

        outbound = sorted(
            (
                t
                for t in trades
                if t.user_id == user_id and t.side == TradeSide.SELL and t.counterparty_id in related
            ),
            key=lambda t: t.timestamp,
        )
        returns = sorted(
            (t for t in trades if t.user_id in related and t.side == TradeSide.SELL and t.counterparty_id == user_id),
            key=lambda t: t.timestamp,
        )

        patterns = []
        used = set()
        window = timedelta(seconds=CIRCULAR_WINDOW_SECONDS)
        for out in outbound:
            for back in returns:
                if back.id in used or back.user_id != out.counterparty_id or back.market_id != out.market_id:
                    continue
                if out.timestamp < back.timestamp <= out.timestamp + window:
                    used.add(back.id)
                    patterns.append(
                        CircularPattern(
                            market_id=out.market_id,
                            accounts=[user_id, back.user_id],
                            outbound_trade_id=out.id,
                            return_trade_id=back.id,
                            elapsed_seconds=(back.timestamp - out.timestamp).total_seconds(),
                            volume=min(out.total_value, back.total_value),
                        )
                    )
                    break
        return patterns


@dataclass(frozen=True)
class TradeActivityResult(SerializableMixin):
    trades_last_minute: int
    velocity_multiplier: float
    volume_multiplier: float
    daily_volume: float
    matching_trade_ids: List[str] = field(default_factory=list)
    signals: List[RiskSignal] = field(default_factory=list)


class TradeActivityMonitor:
    """Per-trade realtime checks against the user's recent trade history."""

    def __init__(self, thresholds: Optional[RiskThresholds] = None):
        self.thresholds = thresholds or RiskThresholds()

    def check(self, trade: Trade, history: Sequence[Trade]) -> TradeActivityResult:
        """
        Args:
            trade: Incoming trade
            history: The user's earlier trades, oldest first, excluding trade
        """
        signals = []
        velocity_signal, recent_count = self._velocity(trade, history)
        if velocity_signal is not None:
            signals.append(velocity_signal)

        matches = self._self_trade_matches(trade, history)
        if matches:
            signals.append(
                RiskSignal(
                    type=SignalType.SELF_TRADING,
                    severity=Severity.HIGH,
                    description="Potential self-trading detected - matching opposite trades",
                    evidence={"matching_trade_count": len(matches), "trades": [t.id for t in matches]},
                    confidence=0.85,
                )
            )

        volume_signal, volume_multiplier, daily_volume = self._volume(trade, history)
        if volume_signal is not None:
            signals.append(volume_signal)

        return TradeActivityResult(
            trades_last_minute=recent_count,
            velocity_multiplier=recent_count / self.thresholds.max_velocity_per_minute,
            volume_multiplier=volume_multiplier,
            daily_volume=daily_volume,
            matching_trade_ids=[t.id for t in matches],
            signals=signals,
        )

    def _velocity(self, trade: Trade, history: Sequence[Trade]):
        cutoff = trade.timestamp - timedelta(minutes=1)
        recent = [t for t in history if cutoff < t.timestamp <= trade.timestamp]
        count = len(recent) + 1
        limit = self.thresholds.max_velocity_per_minute

        if count > limit:
            signal = RiskSignal(
                type=SignalType.VELOCITY_SPIKE,
                severity=Severity.HIGH,
                description=f"User executed {count} trades in last minute (threshold: {limit})",
                evidence={"trade_count": count, "threshold": limit},
                confidence=0.9,
            )
            return signal, count

        if recent:
            gap = (trade.timestamp - recent[-1].timestamp).total_seconds()
            if gap < self.thresholds.min_time_between_trades:
                signal = RiskSignal(
                    type=SignalType.VELOCITY_SPIKE,
                    severity=Severity.MEDIUM,
                    description=(
                        f"Trades {gap:.1f}s apart (min: {self.thresholds.min_time_between_trades}s)"
                    ),
                    evidence={
                        "time_between_seconds": gap,
                        "threshold": self.thresholds.min_time_between_trades,
                    },
                    confidence=0.7,
                )
                return signal, count

        return None, count

    @staticmethod
    def _self_trade_matches(trade: Trade, history: Sequence[Trade]) -> List[Trade]:
        if not trade.counterparty_id:
            return []
        return [
            t
            for t in history
            if _is_opposite_match(trade, t, REALTIME_PAIRING_SECONDS, REALTIME_QUANTITY_TOLERANCE)
        ]

    def _volume(self, trade: Trade, history: Sequence[Trade]):
        same_day = [t for t in history if t.timestamp.date() == trade.timestamp.date()]
        daily_volume = sum(t.total_value for t in same_day) + trade.total_value

        if not history:
            return None, 0.0, daily_volume

        average = sum(t.total_value for t in history) / len(history)
        multiplier = trade.total_value / average if average > 0 else 0.0

        if multiplier > self.thresholds.suspicious_volume_multiplier:
            signal = RiskSignal(
                type=SignalType.VOLUME_MANIPULATION,
                severity=Severity.HIGH if multiplier > HIGH_VOLUME_MULTIPLIER else Severity.MEDIUM,
                description=(
                    f"Trade size {multiplier:.1f}x average "
                    f"(threshold: {self.thresholds.suspicious_volume_multiplier}x)"
                ),
                evidence={"trade_value": trade.total_value, "average_value": average, "multiplier": multiplier},
                confidence=0.75,
            )
            return signal, multiplier, daily_volume

        if daily_volume > self.thresholds.max_daily_volume:
            signal = RiskSignal(
                type=SignalType.VOLUME_MANIPULATION,
                severity=Severity.MEDIUM,
                description=f"Daily volume ${daily_volume:,.0f} exceeds limit",
                evidence={"daily_volume": daily_volume, "limit": self.thresholds.max_daily_volume},
                confidence=0.8,
            )
            return signal, multiplier, daily_volume

        return None, multiplier, daily_volume
