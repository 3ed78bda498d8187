"""
Behavior Profiler

Keeps a rolling per-user baseline (activity hours, average amounts,
session length, trading patterns) and flags actions that stray from it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from ...config import BehaviorConfig
from ...infrastructure.state_store import StateStore, composite_key
from .models import (
    ActionPriority,
    BehaviorProfile,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
    TradingPattern,
    ensure_utc,
)
from .primitives import ExponentialMovingAverage, append_bounded, clamp

logger = structlog.get_logger(__name__)

# Weight of the new sample in every baseline average
BASELINE_ALPHA = 0.1
LOGIN_HOUR_HISTORY = 100

TIME_ANOMALY_HOURS = 6
TIME_ANOMALY_HIGH_HOURS = 8
AMOUNT_ANOMALY_MULTIPLIER = 5
AMOUNT_ANOMALY_HIGH_MULTIPLIER = 10
SHORT_SESSION_RATIO = 0.1
LONG_SESSION_RATIO = 5

# Score increments per trigger
TIME_WEIGHT = 0.3
AMOUNT_WEIGHT = 0.4
PATTERN_WEIGHT = 0.2
DURATION_WEIGHT = 0.15

RISK_SCALE = 0.8


@dataclass(frozen=True)
class BehaviorAction:
    """One observed user action."""

    type: str
    timestamp: datetime
    amount: Optional[float] = None
    market_id: Optional[str] = None
    session_duration: Optional[float] = None


@dataclass(frozen=True)
class BehaviorDeviation(SerializableMixin):
    metric: str
    expected: float
    observed: float
    deviation_percent: float
    significance: str


@dataclass(frozen=True)
class BehaviorAnomalyResult(SerializableMixin):
    user_id: str
    is_anomaly: bool
    anomaly_score: float
    anomaly_type: str
    risk_score: float
    baseline_updated: bool
    deviations: List[BehaviorDeviation] = field(default_factory=list)
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)


class BehaviorProfiler:
    """Per-user behavioral baseline and anomaly detection."""

    def __init__(self, store: StateStore, config: Optional[BehaviorConfig] = None):
        self.store = store
        self.config = config or BehaviorConfig()
        self.ema = ExponentialMovingAverage(BASELINE_ALPHA)

        if self.config.enable_ml_scoring:
            logger.info("ML scoring requested but no model is configured; using rule-based scoring")

    @staticmethod
    def _key(user_id: str) -> str:
        return composite_key("behavior", "profile", user_id)

    async def get_profile(self, user_id: str) -> BehaviorProfile:
        stored = await self.store.get(self._key(user_id))
        if stored:
            return BehaviorProfile.model_validate(stored)
        return BehaviorProfile(user_id=user_id)

    async def save_profile(self, profile: BehaviorProfile) -> None:
        await self.store.set(self._key(profile.user_id), profile.model_dump(mode="json"))

    def _average_for(self, profile: BehaviorProfile, action_type: str) -> float:
        if action_type == "deposit":
            return profile.avg_deposit_amount
        if action_type == "withdrawal":
            return profile.avg_withdrawal_amount
        if action_type == "trade":
            return profile.avg_trade_size
        return 0.0

    async def analyze(self, user_id: str, action: BehaviorAction) -> BehaviorAnomalyResult:
        """
        Score an action against the user's baseline, then fold it in.

        Time and amount anomalies always count as anomalous. Trading-pattern
        and session-length deviations add to the score but only make the
        action anomalous once the running score exceeds anomaly_threshold.
        Whether anomalous actions update the baseline is governed by
        baseline_policy.
        """
        async with self.store.lock(self._key(user_id)):
            profile = await self.get_profile(user_id)
            result = self._evaluate(profile, action)

            update = self.config.baseline_policy == "update_always" or not result.is_anomaly
            if update:
                self._update_profile(profile, action)
                await self.save_profile(profile)

        if result.is_anomaly:
            logger.info(
                "Behavioral anomaly detected",
                user_id=user_id,
                anomaly_type=result.anomaly_type,
                anomaly_score=result.anomaly_score,
            )

        return BehaviorAnomalyResult(
            user_id=user_id,
            is_anomaly=result.is_anomaly,
            anomaly_score=result.anomaly_score,
            anomaly_type=result.anomaly_type,
            risk_score=result.risk_score,
            baseline_updated=update,
            deviations=result.deviations,
            signals=result.signals,
            recommendations=result.recommendations,
        )

    def _evaluate(self, profile: BehaviorProfile, action: BehaviorAction) -> BehaviorAnomalyResult:
        at = ensure_utc(action.timestamp)
        hour = at.hour

        is_anomaly = False
        score = 0.0
        anomaly_type = "none"
        deviations = []
        signals = []
        recommendations = []

        hours = profile.preferred_login_hours
        if len(hours) >= self.config.min_sessions_for_baseline:
            avg_hour = sum(hours) / len(hours)
            diff = abs(hour - avg_hour)
            if diff > TIME_ANOMALY_HOURS:
                is_anomaly = True
                anomaly_type = "time_anomaly"
                score += TIME_WEIGHT
                significance = "high" if diff > TIME_ANOMALY_HIGH_HOURS else "medium"
                deviations.append(
                    BehaviorDeviation(
                        metric="login_hour",
                        expected=avg_hour,
                        observed=hour,
                        deviation_percent=diff / 12 * 100,
                        significance=significance,
                    )
                )
                signals.append(
                    RiskSignal(
                        type=SignalType.TIME_ANOMALY,
                        severity=Severity(significance),
                        description=f"Unusual activity time: {hour}:00 (typical: {avg_hour:.0f}:00)",
                        evidence={"hour_of_day": hour, "avg_hour": avg_hour, "time_diff": diff},
                        confidence=0.7,
                    )
                )

        average = self._average_for(profile, action.type)
        if action.amount and average > 0:
            multiplier = action.amount / average
            if multiplier > AMOUNT_ANOMALY_MULTIPLIER:
                is_anomaly = True
                anomaly_type = f"{action.type}_anomaly"
                score += AMOUNT_WEIGHT
                significance = "high" if multiplier > AMOUNT_ANOMALY_HIGH_MULTIPLIER else "medium"
                deviations.append(
                    BehaviorDeviation(
                        metric="amount",
                        expected=average,
                        observed=action.amount,
                        deviation_percent=(multiplier - 1) * 100,
                        significance=significance,
                    )
                )
                signals.append(
                    RiskSignal(
                        type=SignalType.AMOUNT_ANOMALY,
                        severity=Severity(significance),
                        description=f"Unusual amount: ${action.amount:,.2f} ({multiplier:.1f}x average)",
                        evidence={"amount": action.amount, "avg_amount": average, "multiplier": multiplier},
                        confidence=0.8,
                    )
                )

        if action.type == "trade" and profile.trading_patterns:
            matches = any(
                pattern.market_id == action.market_id or hour in pattern.hours
                for pattern in profile.trading_patterns
            )
            if not matches:
                score += PATTERN_WEIGHT
                deviations.append(
                    BehaviorDeviation(
                        metric="trading_pattern",
                        expected=len(profile.trading_patterns),
                        observed=hour,
                        deviation_percent=100.0,
                        significance="low",
                    )
                )
                if score > self.config.anomaly_threshold:
                    is_anomaly = True
                    anomaly_type = "trading_anomaly"
                    signals.append(
                        RiskSignal(
                            type=SignalType.BEHAVIORAL_ANOMALY,
                            severity=Severity.LOW,
                            description="Trading pattern deviation detected",
                            evidence={"market_id": action.market_id, "hour_of_day": hour},
                            confidence=0.6,
                        )
                    )

        if action.session_duration and profile.avg_session_duration > 0:
            ratio = action.session_duration / profile.avg_session_duration
            if ratio < SHORT_SESSION_RATIO or ratio > LONG_SESSION_RATIO:
                score += DURATION_WEIGHT
                deviations.append(
                    BehaviorDeviation(
                        metric="session_duration",
                        expected=profile.avg_session_duration,
                        observed=action.session_duration,
                        deviation_percent=abs(ratio - 1) * 100,
                        significance="high" if ratio < SHORT_SESSION_RATIO else "medium",
                    )
                )
                if score > self.config.anomaly_threshold:
                    is_anomaly = True
                    anomaly_type = "session_anomaly"
                    signals.append(
                        RiskSignal(
                            type=SignalType.PATTERN_BREAK,
                            severity=Severity.LOW,
                            description=f"Unusual session length ({ratio:.1f}x average)",
                            evidence={"session_duration": action.session_duration, "ratio": ratio},
                            confidence=0.6,
                        )
                    )

        if is_anomaly and score > 0.5:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_VERIFICATION,
                    priority=ActionPriority.MEDIUM,
                    reason="Unusual behavior pattern detected",
                )
            )
        if score > 0.7:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.ENHANCED_MONITORING,
                    priority=ActionPriority.HIGH,
                    reason="High behavior anomaly score",
                    auto_execute=True,
                )
            )

        anomaly_score = clamp(score)
        return BehaviorAnomalyResult(
            user_id=profile.user_id,
            is_anomaly=is_anomaly,
            anomaly_score=anomaly_score,
            anomaly_type=anomaly_type,
            risk_score=clamp(score * RISK_SCALE),
            baseline_updated=False,
            deviations=deviations,
            signals=signals,
            recommendations=recommendations,
        )

    def _update_profile(self, profile: BehaviorProfile, action: BehaviorAction) -> None:
        at = ensure_utc(action.timestamp)

        append_bounded(profile.preferred_login_hours, at.hour, LOGIN_HOUR_HISTORY)
        if at.weekday() not in profile.preferred_days:
            profile.preferred_days.append(at.weekday())

        if action.amount:
            if action.type == "deposit":
                profile.avg_deposit_amount = self.ema.update(profile.avg_deposit_amount, action.amount)
                profile.deposit_count += 1
            elif action.type == "withdrawal":
                profile.avg_withdrawal_amount = self.ema.update(profile.avg_withdrawal_amount, action.amount)
                profile.withdrawal_count += 1
            elif action.type == "trade":
                profile.avg_trade_size = self.ema.update(profile.avg_trade_size, action.amount)

        if action.type == "trade":
            profile.trade_count += 1
            if action.market_id:
                self._record_trading_pattern(profile, action.market_id, at.hour)

        if action.session_duration:
            profile.avg_session_duration = self.ema.update(profile.avg_session_duration, action.session_duration)

        profile.last_updated = at

    @staticmethod
    def _record_trading_pattern(profile: BehaviorProfile, market_id: str, hour: int) -> None:
        for pattern in profile.trading_patterns:
            if pattern.market_id == market_id:
                if hour not in pattern.hours:
                    pattern.hours.append(hour)
                return
        profile.trading_patterns.append(TradingPattern(market_id=market_id, hours=[hour]))
