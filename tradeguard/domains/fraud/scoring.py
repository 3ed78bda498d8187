"""
Risk Scoring Engine

Fuses analyzer outputs and rule signals into one RiskAssessment.

Each component (velocity, device, ip, behavior, multi_account,
bonus_abuse, trading, history) is scored in [0, 1] and combined with the
configured weights. Named bonuses reduce the base score, named penalties
raise it, and the result is clamped to [0, 1] before being mapped to a
risk level. Recommendations come from the risk level first, then from
specific signals, analyzers and triggered rules, de-duplicated by action.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog

from ...config import RiskThresholds, ScoringWeights
from .behavior import BehaviorAnomalyResult
from .bonus_abuse import BonusAbuseResult
from .device import DeviceAnalysisResult
from .ip_reputation import IPAnalysisResult
from .models import (
    PRIORITY_ORDER,
    ActionPriority,
    EntityType,
    FlagSeverity,
    RecommendedAction,
    RiskAssessment,
    RiskLevel,
    RiskRecommendation,
    RiskSignal,
    ScoreAdjustment,
    ScoreComponents,
    Severity,
    SignalType,
    ThreatLevel,
    UserRiskProfile,
    utcnow,
)
from .multi_account import MultiAccountResult
from .primitives import ExponentialMovingAverage, clamp
from .velocity import VelocityCheckResult
from .wash_trading import WashTradingAnalysis

logger = structlog.get_logger(__name__)

# Component score above which a summary signal is synthesized
COMPONENT_SIGNAL_THRESHOLD = 0.7
COMPONENT_SIGNAL_HIGH = 0.8

MULTIPLE_HIGH_SEVERITY_COUNT = 3
EXTREME_GEO_DISTANCE_KM = 5000

_COMPONENT_SIGNALS = {
    "velocity": (SignalType.VELOCITY_SPIKE, "Elevated velocity risk"),
    "device": (SignalType.DEVICE_ANOMALY, "Elevated device risk"),
    "ip": (SignalType.LOCATION_ANOMALY, "Elevated IP/location risk"),
    "behavior": (SignalType.BEHAVIORAL_ANOMALY, "Elevated behavioral risk"),
    "multi_account": (SignalType.MULTI_ACCOUNT, "Elevated multi-account risk"),
    "bonus_abuse": (SignalType.BONUS_ABUSE, "Elevated bonus abuse risk"),
}

_COMPONENT_LABELS = {
    "velocity": "Velocity",
    "device": "Device",
    "ip": "IP",
    "behavior": "Behavior",
    "multi_account": "Multi-account",
    "bonus_abuse": "Bonus abuse",
    "trading": "Trading",
    "history": "History",
}

_ANOMALY_TYPE_SCORES = {
    "session_anomaly": 0.15,
    "trading_anomaly": 0.2,
    "deposit_anomaly": 0.3,
    "withdrawal_anomaly": 0.35,
    "time_anomaly": 0.15,
    "location_anomaly": 0.25,
    "pattern_break": 0.2,
}

_DEVIATION_SCORES = {"high": 0.1, "medium": 0.05, "low": 0.02}

_THREAT_SCORES = {
    ThreatLevel.CRITICAL: 0.5,
    ThreatLevel.HIGH: 0.35,
    ThreatLevel.MEDIUM: 0.2,
    ThreatLevel.LOW: 0.05,
}

_LINK_WEIGHTS = {"same_device": 0.2, "same_payment_method": 0.4, "same_ip": 0.1}

_BONUS_TYPE_SCORES = {
    "bonus_hunting": 0.3,
    "wagering_manipulation": 0.4,
    "arbitrage_abuse": 0.35,
    "referral_fraud": 0.5,
}

_TRADING_SIGNAL_WEIGHTS = {
    SignalType.WASH_TRADING: 0.6,
    SignalType.SELF_TRADING: 0.5,
    SignalType.COORDINATED_TRADING: 0.5,
    SignalType.VELOCITY_SPIKE: 0.2,
    SignalType.VOLUME_MANIPULATION: 0.4,
}

_VELOCITY_SIGNAL_SCORES = {
    SignalType.DEPOSIT_VELOCITY: 0.15,
    SignalType.WITHDRAWAL_VELOCITY: 0.15,
    SignalType.BET_VELOCITY: 0.1,
    SignalType.RAPID_DEPOSIT_WITHDRAWAL: 0.25,
}

_FLAG_SCORES = {FlagSeverity.CRITICAL: 0.3, FlagSeverity.ALERT: 0.2, FlagSeverity.WARNING: 0.1}

_PROFILE_LEVEL_SCORES = {RiskLevel.CRITICAL: 0.4, RiskLevel.HIGH: 0.25, RiskLevel.MEDIUM: 0.1}


@dataclass
class ScoringContext:
    """Everything the scoring engine needs for one assessment."""

    entity_id: str
    entity_type: EntityType
    user_id: str
    velocity: Optional[VelocityCheckResult] = None
    device: Optional[DeviceAnalysisResult] = None
    ip: Optional[IPAnalysisResult] = None
    behavior: Optional[BehaviorAnomalyResult] = None
    multi_account: Optional[MultiAccountResult] = None
    bonus: Optional[BonusAbuseResult] = None
    wash_trading: Optional[WashTradingAnalysis] = None
    trading_signals: List[RiskSignal] = field(default_factory=list)
    profile: Optional[UserRiskProfile] = None
    # Signals and recommendations not owned by a scored component
    # (cycle detection, triggered rules)
    extra_signals: List[RiskSignal] = field(default_factory=list)
    extra_recommendations: List[RiskRecommendation] = field(default_factory=list)
    degraded_analyzers: List[str] = field(default_factory=list)

    def analyzer_signals(self) -> List[RiskSignal]:
        signals = []
        for result in (self.velocity, self.device, self.ip, self.behavior, self.multi_account, self.bonus):
            if result is not None:
                signals.extend(result.signals)
        signals.extend(self.trading_signals)
        signals.extend(self.extra_signals)
        return signals

    def analyzer_recommendations(self) -> List[RiskRecommendation]:
        recommendations = []
        for result in (self.device, self.ip, self.behavior, self.multi_account, self.bonus):
            if result is not None:
                recommendations.extend(result.recommendations)
        recommendations.extend(self.extra_recommendations)
        return recommendations


def dedupe_signals(signals: List[RiskSignal]) -> List[RiskSignal]:
    """One signal per type, keeping the highest confidence, in first-seen order."""
    best: Dict[SignalType, RiskSignal] = {}
    for signal in signals:
        current = best.get(signal.type)
        if current is None or signal.confidence > current.confidence:
            best[signal.type] = signal
    order = []
    for signal in signals:
        if signal.type not in order:
            order.append(signal.type)
    return [best[signal_type] for signal_type in order]


def dedupe_recommendations(recommendations: List[RiskRecommendation]) -> List[RiskRecommendation]:
    """One recommendation per action, keeping the most urgent, sorted by priority."""
    best: Dict[RecommendedAction, RiskRecommendation] = {}
    order = []
    for rec in recommendations:
        current = best.get(rec.action)
        if current is None:
            order.append(rec.action)
            best[rec.action] = rec
        elif PRIORITY_ORDER[rec.priority] < PRIORITY_ORDER[current.priority]:
            best[rec.action] = rec
    return sorted((best[action] for action in order), key=lambda r: PRIORITY_ORDER[r.priority])


class RiskScoringEngine:
    """Weighted multi-component risk scoring."""

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        thresholds: Optional[RiskThresholds] = None,
        assessment_ttl_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.weights = weights or ScoringWeights()
        self.thresholds = thresholds or RiskThresholds()
        self.assessment_ttl = timedelta(hours=assessment_ttl_hours)
        self.clock = clock

    def score(self, context: ScoringContext) -> RiskAssessment:
        """
        Score one entity.

        Args:
            context: Analyzer results, rule output and the user's risk profile

        Returns:
            RiskAssessment with risk_score in [0, 1]
        """
        now = self.clock()
        signals = dedupe_signals(context.analyzer_signals())

        scores = {
            "velocity": self._velocity_score(context.velocity, signals),
            "device": self._device_score(context.device),
            "ip": self._ip_score(context.ip),
            "behavior": self._behavior_score(context.behavior),
            "multi_account": self._multi_account_score(context.multi_account),
            "bonus_abuse": self._bonus_score(context.bonus),
            "trading": self._trading_score(context.trading_signals, context.wash_trading),
            "history": self._history_score(context.profile, now),
        }
        weights = self.weights.as_dict()
        base = sum(scores[name] * weights[name] for name in scores)

        bonuses = self._bonuses(context, now)
        penalties = self._penalties(context, signals, now)
        final = clamp(base - sum(b.value for b in bonuses) + sum(p.value for p in penalties))

        signals = dedupe_signals(signals + self._component_signals(scores))
        level = self.get_risk_level(final)
        recommendations = self.generate_recommendations(level, signals, context.analyzer_recommendations())

        components = ScoreComponents(
            velocity_score=scores["velocity"],
            device_score=scores["device"],
            ip_score=scores["ip"],
            behavior_score=scores["behavior"],
            multi_account_score=scores["multi_account"],
            bonus_abuse_score=scores["bonus_abuse"],
            trading_score=scores["trading"],
            history_score=scores["history"],
            base_score=base,
            bonuses=bonuses,
            penalties=penalties,
            final_score=final,
        )

        logger.debug(
            "Risk scored",
            entity_id=context.entity_id,
            user_id=context.user_id,
            risk_score=final,
            risk_level=level.value,
        )

        return RiskAssessment(
            entity_id=context.entity_id,
            entity_type=context.entity_type,
            risk_score=final,
            risk_level=level,
            signals=signals,
            recommendations=recommendations,
            components=components,
            user_id=context.user_id,
            degraded_analyzers=list(context.degraded_analyzers),
            assessed_at=now,
            expires_at=now + self.assessment_ttl,
        )

    def get_risk_level(self, score: float) -> RiskLevel:
        """Thresholds are inclusive at the low end."""
        if score >= self.thresholds.critical_risk_score:
            return RiskLevel.CRITICAL
        if score >= self.thresholds.high_risk_score:
            return RiskLevel.HIGH
        if score >= self.thresholds.medium_risk_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @staticmethod
    def _velocity_score(result: Optional[VelocityCheckResult], signals: List[RiskSignal]) -> float:
        score = 0.0
        if result is not None:
            score = 0.8 if not result.allowed else min(result.risk_score, 0.5)
        present = {signal.type for signal in signals}
        for signal_type, value in _VELOCITY_SIGNAL_SCORES.items():
            if signal_type in present:
                score += value
        return clamp(score)

    @staticmethod
    def _device_score(result: Optional[DeviceAnalysisResult]) -> float:
        if result is None:
            return 0.0
        if result.is_bot:
            return 1.0
        score = 0.0
        if result.is_new_device:
            score += 0.2
        if result.is_shared_device:
            score += 0.4
        if result.is_emulator:
            score += 0.7
        if result.is_virtual_machine:
            score += 0.5
        if result.is_suspicious:
            score += 0.3
        if result.trust_score < 0.3:
            score += 0.3
        elif result.trust_score < 0.5:
            score += 0.15
        if len(result.matched_users) > 1:
            score += 0.15 * (len(result.matched_users) - 1)
        return clamp(score)

    @staticmethod
    def _ip_score(result: Optional[IPAnalysisResult]) -> float:
        if result is None:
            return 0.0
        score = 0.0
        if result.is_vpn:
            score += 0.25
        if result.is_proxy:
            score += 0.3
        if result.is_tor:
            score += 0.8
        if result.is_datacenter:
            score += 0.4
        if result.reputation_score < 30:
            score += 0.4
        elif result.reputation_score < 50:
            score += 0.2
        score += _THREAT_SCORES.get(result.threat_level, 0.0)
        if len(result.previous_users) > 3:
            score += 0.15
        if result.geo_velocity_violation:
            score += 0.5
        return clamp(score)

    @staticmethod
    def _behavior_score(result: Optional[BehaviorAnomalyResult]) -> float:
        if result is None:
            return 0.0
        score = 0.4 if result.is_anomaly else 0.0
        score += _ANOMALY_TYPE_SCORES.get(result.anomaly_type, 0.0)
        for deviation in result.deviations:
            score += _DEVIATION_SCORES.get(deviation.significance, 0.0)
        return clamp(score)

    @staticmethod
    def _multi_account_score(result: Optional[MultiAccountResult]) -> float:
        if result is None or not result.is_multi_account:
            return 0.0
        score = result.confidence * 0.5 + len(result.linked_accounts) * 0.1
        for link in result.linked_accounts:
            score += _LINK_WEIGHTS.get(link.link_type, 0.0) * link.confidence
        return clamp(score)

    @staticmethod
    def _bonus_score(result: Optional[BonusAbuseResult]) -> float:
        if result is None or not result.is_abusive:
            return 0.0
        score = result.confidence * 0.5
        for abuse_type in result.abuse_types:
            score += _BONUS_TYPE_SCORES.get(abuse_type, 0.0)
        score += len(result.patterns) * 0.1
        return clamp(score)

    @staticmethod
    def _trading_score(signals: List[RiskSignal], wash: Optional[WashTradingAnalysis]) -> float:
        score = 0.0
        for signal in signals:
            score += _TRADING_SIGNAL_WEIGHTS.get(signal.type, 0.0) * signal.confidence
        if wash is not None:
            score = max(score, wash.risk_score)
        return clamp(score)

    @staticmethod
    def _history_score(profile: Optional[UserRiskProfile], now: datetime) -> float:
        if profile is None:
            return 0.0
        score = 0.0
        for flag in profile.active_flags(now):
            score += _FLAG_SCORES.get(flag.severity, 0.0)
        score += len(profile.restrictions) * 0.05
        score += _PROFILE_LEVEL_SCORES.get(profile.risk_level, 0.0)
        if profile.recent_scores:
            score += sum(profile.recent_scores) / len(profile.recent_scores) * 0.2
        return clamp(score)

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    @staticmethod
    def _bonuses(context: ScoringContext, now: datetime) -> List[ScoreAdjustment]:
        bonuses = []
        profile = context.profile

        if profile is not None:
            age = profile.account_age_months(now)
            if age > 12:
                bonuses.append(ScoreAdjustment("long_account_age", 0.1, "Account older than 12 months"))
            elif age > 6:
                bonuses.append(ScoreAdjustment("medium_account_age", 0.05, "Account older than 6 months"))

            if not profile.active_flags(now) and not profile.restrictions:
                bonuses.append(ScoreAdjustment("clean_history", 0.1, "No prior flags or restrictions"))

            if 0 < profile.win_rate < 0.7:
                bonuses.append(ScoreAdjustment("realistic_trading", 0.05, "Realistic win rate"))

        device = context.device
        if device is not None and device.is_known_device and not device.is_suspicious:
            bonuses.append(ScoreAdjustment("known_device", 0.05, "Known, trusted device"))

        ip = context.ip
        if ip is not None and ip.is_residential and not ip.is_vpn:
            bonuses.append(ScoreAdjustment("residential_ip", 0.03, "Residential connection"))

        return bonuses

    @staticmethod
    def _penalties(context: ScoringContext, signals: List[RiskSignal], now: datetime) -> List[ScoreAdjustment]:
        penalties = []
        profile = context.profile

        if profile is not None:
            age = profile.account_age_months(now)
            if age < 1:
                penalties.append(ScoreAdjustment("new_account", 0.15, "Account younger than 1 month"))
            elif age < 3:
                penalties.append(ScoreAdjustment("recent_account", 0.08, "Account younger than 3 months"))

        high = sum(1 for signal in signals if signal.severity == Severity.HIGH)
        if high >= MULTIPLE_HIGH_SEVERITY_COUNT:
            penalties.append(
                ScoreAdjustment("multiple_high_severity", 0.2, f"{high} concurrent high-severity signals")
            )

        ip = context.ip
        if ip is not None and ip.geo_velocity_violation and ip.geo_velocity.distance_km > EXTREME_GEO_DISTANCE_KM:
            penalties.append(
                ScoreAdjustment(
                    "extreme_geo_velocity",
                    0.2,
                    f"Impossible travel over {ip.geo_velocity.distance_km:,.0f} km",
                )
            )

        return penalties

    @staticmethod
    def _component_signals(scores: Dict[str, float]) -> List[RiskSignal]:
        signals = []
        for name, (signal_type, description) in _COMPONENT_SIGNALS.items():
            score = scores[name]
            if score > COMPONENT_SIGNAL_THRESHOLD:
                signals.append(
                    RiskSignal(
                        type=signal_type,
                        severity=Severity.HIGH if score > COMPONENT_SIGNAL_HIGH else Severity.MEDIUM,
                        description=description,
                        evidence={"component": name, "score": score},
                        confidence=score,
                    )
                )
        return signals

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def generate_recommendations(
        self,
        level: RiskLevel,
        signals: List[RiskSignal],
        extra: Optional[List[RiskRecommendation]] = None,
    ) -> List[RiskRecommendation]:
        """Level recommendations, then signal-specific ones, then extras."""
        recommendations = self._level_recommendations(level)
        present = {signal.type for signal in signals}

        if SignalType.BOT_DETECTED in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRANSACTION,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Automated client detected",
                    auto_execute=True,
                )
            )
        if SignalType.TOR_DETECTED in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRANSACTION,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Tor connection detected",
                    auto_execute=True,
                )
            )
        if SignalType.GEO_VELOCITY_VIOLATION in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_2FA,
                    priority=ActionPriority.HIGH,
                    reason="Impossible travel detected",
                    auto_execute=True,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.NOTIFY_USER,
                    priority=ActionPriority.HIGH,
                    reason="Login from an unexpected location",
                )
            )
        if SignalType.NEW_DEVICE in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_VERIFICATION,
                    priority=ActionPriority.MEDIUM,
                    reason="New device",
                )
            )
        if SignalType.MULTI_ACCOUNT in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                    priority=ActionPriority.HIGH,
                    reason="Linked accounts detected",
                )
            )
        if SignalType.BONUS_ABUSE in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.LIMIT_WITHDRAWALS,
                    priority=ActionPriority.HIGH,
                    reason="Bonus abuse suspected",
                    parameters={"max_per_day": 100},
                )
            )
        if SignalType.WASH_TRADING in present or SignalType.SELF_TRADING in present:
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRADE,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Wash or self trading detected",
                    auto_execute=True,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.SUSPEND_ACCOUNT,
                    priority=ActionPriority.HIGH,
                    reason="Market manipulation suspected",
                )
            )

        recommendations.extend(extra or [])
        if any(r.action != RecommendedAction.NO_ACTION for r in recommendations):
            recommendations = [r for r in recommendations if r.action != RecommendedAction.NO_ACTION]
        return dedupe_recommendations(recommendations)

    @staticmethod
    def _level_recommendations(level: RiskLevel) -> List[RiskRecommendation]:
        if level == RiskLevel.CRITICAL:
            return [
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRANSACTION,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Critical risk score",
                    auto_execute=True,
                ),
                RiskRecommendation(
                    action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Critical risk requires compliance review",
                ),
                RiskRecommendation(
                    action=RecommendedAction.SUSPEND_ACCOUNT,
                    priority=ActionPriority.HIGH,
                    reason="Critical risk score",
                ),
            ]
        if level == RiskLevel.HIGH:
            return [
                RiskRecommendation(
                    action=RecommendedAction.DELAY_WITHDRAWAL,
                    priority=ActionPriority.HIGH,
                    reason="High risk score",
                    parameters={"delay_hours": 24},
                ),
                RiskRecommendation(
                    action=RecommendedAction.MANUAL_REVIEW,
                    priority=ActionPriority.HIGH,
                    reason="High risk requires manual review",
                ),
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_2FA,
                    priority=ActionPriority.HIGH,
                    reason="High risk score",
                    auto_execute=True,
                ),
            ]
        if level == RiskLevel.MEDIUM:
            return [
                RiskRecommendation(
                    action=RecommendedAction.ENHANCED_MONITORING,
                    priority=ActionPriority.MEDIUM,
                    reason="Medium risk score",
                    auto_execute=True,
                ),
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_VERIFICATION,
                    priority=ActionPriority.MEDIUM,
                    reason="Medium risk score",
                ),
            ]
        return [
            RiskRecommendation(
                action=RecommendedAction.NO_ACTION,
                priority=ActionPriority.LOW,
                reason="Low risk",
            )
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def explain_score(components: ScoreComponents) -> str:
        """
        Human-readable summary of what drove a score.

        Components above 0.3 are listed with their score, followed by the
        applied bonuses and penalties.
        """
        parts = []
        for name, score in components.as_weighted_inputs().items():
            if score > 0.3:
                parts.append(f"{_COMPONENT_LABELS[name]}: {score * 100:.0f}%")
        for bonus in components.bonuses:
            parts.append(f"Bonus: -{bonus.value * 100:.0f}% ({bonus.name})")
        for penalty in components.penalties:
            parts.append(f"Penalty: +{penalty.value * 100:.0f}% ({penalty.name})")
        return ", ".join(parts) if parts else "No significant risk factors"

    @staticmethod
    def calculate_ema(current: float, previous: float, alpha: float = 0.3) -> float:
        """Smoothed score; alpha weights the current value."""
        return ExponentialMovingAverage(alpha, seed_with_first=False).update(previous, current)
