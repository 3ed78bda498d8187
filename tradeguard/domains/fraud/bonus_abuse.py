"""
Bonus Abuse Detector

Pattern checks over a user's bonus and betting history:
bonus hunting, low-odds arbitrage and implausibly fast wagering.
"""

from dataclasses import dataclass, field
from typing import List, Sequence

import structlog

from .models import (
    ActionPriority,
    BetRecord,
    BonusUsage,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
)
from .primitives import HOUR_SECONDS, clamp

logger = structlog.get_logger(__name__)

MIN_BETS_FOR_HUNTING = 10
BONUS_BET_RATIO = 0.9
LOW_ODDS = 1.5
LOW_ODDS_RATIO = 0.7
FAST_WAGER_REQUIREMENT = 1000
FAST_WAGER_HOURS = 1.0

_QUALIFYING_STATUSES = ("active", "completed")


@dataclass(frozen=True)
class BonusAbusePattern(SerializableMixin):
    pattern_type: str
    description: str
    confidence: float
    evidence: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BonusAbuseResult(SerializableMixin):
    user_id: str
    is_abusive: bool
    confidence: float
    risk_score: float
    abuse_types: List[str] = field(default_factory=list)
    patterns: List[BonusAbusePattern] = field(default_factory=list)
    bonus_bet_ratio: float = 0.0
    arbitrage_score: float = 0.0
    wager_speed: float = 0.0
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)


class BonusAbuseDetector:
    def detect(
        self,
        user_id: str,
        bonus_history: Sequence[BonusUsage],
        betting_history: Sequence[BetRecord],
    ) -> BonusAbuseResult:
        """
        Evaluate bonus and betting history for promotional abuse.

        wager_speed is the fastest observed wagering rate, expressed as
        wagered amount per hour divided by the bonus amount.
        """
        bonuses = [b for b in bonus_history if b.status in _QUALIFYING_STATUSES]
        bets = list(betting_history)

        abuse_types = []
        patterns = []
        confidence = 0.0

        bets_in_bonus = [bet for bet in bets if any(self._during(bonus, bet) for bonus in bonuses)]
        bonus_bet_ratio = len(bets_in_bonus) / len(bets) if bets else 0.0
        if len(bets) >= MIN_BETS_FOR_HUNTING and bonus_bet_ratio >= BONUS_BET_RATIO:
            abuse_types.append("bonus_hunting")
            patterns.append(
                BonusAbusePattern(
                    pattern_type="bonus_hunting",
                    description="User primarily bets during bonus periods",
                    confidence=0.8,
                    evidence={"bonus_bet_ratio": bonus_bet_ratio},
                )
            )
            confidence = max(confidence, 0.7)

        low_odds = [bet for bet in bets if bet.odds is not None and bet.odds < LOW_ODDS]
        arbitrage_score = len(low_odds) / len(bets) if bets else 0.0
        if low_odds and arbitrage_score >= LOW_ODDS_RATIO:
            abuse_types.append("arbitrage_abuse")
            patterns.append(
                BonusAbusePattern(
                    pattern_type="arbitrage_abuse",
                    description="High proportion of low-odds bets suggests arbitrage",
                    confidence=0.7,
                    evidence={"low_odds_bet_ratio": arbitrage_score},
                )
            )
            confidence = max(confidence, 0.6)

        wager_speed = 0.0
        for bonus in bonuses:
            if bonus.completed_at is None or bonus.wager_requirement <= 0:
                continue
            hours = max((bonus.completed_at - bonus.claimed_at).total_seconds() / HOUR_SECONDS, 0.0)
            if bonus.amount > 0:
                rate = bonus.wager_requirement / max(hours, 1 / 60)
                wager_speed = max(wager_speed, rate / bonus.amount)
            if hours < FAST_WAGER_HOURS and bonus.wager_requirement > FAST_WAGER_REQUIREMENT:
                abuse_types.append("wagering_manipulation")
                patterns.append(
                    BonusAbusePattern(
                        pattern_type="wagering_manipulation",
                        description=f"Wagered ${bonus.wager_requirement:,.0f} in {hours:.1f} hours",
                        confidence=0.85,
                        evidence={
                            "bonus_id": bonus.bonus_id,
                            "wager_amount": bonus.wager_requirement,
                            "completion_time_hours": hours,
                        },
                    )
                )
                confidence = max(confidence, 0.8)

        is_abusive = bool(abuse_types)
        signals = []
        recommendations = []

        if is_abusive:
            signals.append(
                RiskSignal(
                    type=SignalType.BONUS_ABUSE,
                    severity=Severity.HIGH if confidence > 0.7 else Severity.MEDIUM,
                    description=f"Bonus abuse detected: {', '.join(abuse_types)}",
                    evidence={"abuse_types": abuse_types, "pattern_count": len(patterns)},
                    confidence=confidence,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                    priority=ActionPriority.HIGH if confidence >= 0.8 else ActionPriority.MEDIUM,
                    reason="Bonus abuse patterns detected",
                )
            )
            if confidence >= 0.8:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.LIMIT_WITHDRAWALS,
                        priority=ActionPriority.HIGH,
                        reason="Pending bonus abuse investigation",
                        parameters={"max_per_day": 0},
                    )
                )
            logger.info("Bonus abuse detected", user_id=user_id, abuse_types=abuse_types, confidence=confidence)

        return BonusAbuseResult(
            user_id=user_id,
            is_abusive=is_abusive,
            confidence=confidence,
            risk_score=clamp(confidence * 0.9),
            abuse_types=abuse_types,
            patterns=patterns,
            bonus_bet_ratio=bonus_bet_ratio,
            arbitrage_score=arbitrage_score,
            wager_speed=wager_speed,
            signals=signals,
            recommendations=recommendations,
        )

    @staticmethod
    def _during(bonus: BonusUsage, bet: BetRecord) -> bool:
        if bet.timestamp < bonus.claimed_at:
            return False
        return bonus.completed_at is None or bet.timestamp <= bonus.completed_at
