"""
Fraud Alerts

Turns high and critical assessments into FraudAlert records, at most one
per (user, dominant signal type) within the cooldown window. Delivery is
left to an optional async handler supplied by the caller.
"""

from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import structlog

from ...config import AlertConfig
from ...infrastructure.state_store import StateStore, composite_key
from .models import AlertType, FraudAlert, RiskAssessment, RiskLevel, SignalType, utcnow

logger = structlog.get_logger(__name__)

AlertHandler = Callable[[FraudAlert], Awaitable[None]]

ALERT_TYPES = {
    SignalType.WASH_TRADING: AlertType.WASH_TRADING_DETECTED,
    SignalType.SELF_TRADING: AlertType.WASH_TRADING_DETECTED,
    SignalType.VELOCITY_SPIKE: AlertType.VELOCITY_EXCEEDED,
    SignalType.DEPOSIT_VELOCITY: AlertType.VELOCITY_EXCEEDED,
    SignalType.WITHDRAWAL_VELOCITY: AlertType.VELOCITY_EXCEEDED,
    SignalType.BET_VELOCITY: AlertType.VELOCITY_EXCEEDED,
    SignalType.VOLUME_MANIPULATION: AlertType.VOLUME_ANOMALY,
    SignalType.AMOUNT_ANOMALY: AlertType.VOLUME_ANOMALY,
    SignalType.SPOOFING: AlertType.MANIPULATION_SUSPECTED,
    SignalType.LAYERING: AlertType.MANIPULATION_SUSPECTED,
    SignalType.FRONT_RUNNING: AlertType.MANIPULATION_SUSPECTED,
    SignalType.COORDINATED_TRADING: AlertType.COORDINATED_ACTIVITY,
    SignalType.ACCOUNT_TAKEOVER: AlertType.ACCOUNT_ANOMALY,
    SignalType.NEW_ACCOUNT_ABUSE: AlertType.ACCOUNT_ANOMALY,
    SignalType.SUSPICIOUS_PATTERN: AlertType.ACCOUNT_ANOMALY,
    SignalType.DEVICE_ANOMALY: AlertType.DEVICE_ANOMALY,
    SignalType.NEW_DEVICE: AlertType.DEVICE_ANOMALY,
    SignalType.LOCATION_ANOMALY: AlertType.IP_ANOMALY,
    SignalType.DATACENTER_IP: AlertType.IP_ANOMALY,
    SignalType.MULTI_ACCOUNT: AlertType.MULTI_ACCOUNT_DETECTED,
    SignalType.DEVICE_SHARING: AlertType.MULTI_ACCOUNT_DETECTED,
    SignalType.VPN_DETECTED: AlertType.VPN_PROXY_DETECTED,
    SignalType.PROXY_DETECTED: AlertType.VPN_PROXY_DETECTED,
    SignalType.TOR_DETECTED: AlertType.VPN_PROXY_DETECTED,
    SignalType.GEO_VELOCITY_VIOLATION: AlertType.GEO_VELOCITY_ALERT,
    SignalType.EMULATOR_DETECTED: AlertType.BOT_DETECTED,
    SignalType.BOT_DETECTED: AlertType.BOT_DETECTED,
    SignalType.RAPID_DEPOSIT_WITHDRAWAL: AlertType.DEPOSIT_WITHDRAWAL_CYCLE,
    SignalType.BONUS_ABUSE: AlertType.BONUS_ABUSE_DETECTED,
    SignalType.REFERRAL_FRAUD: AlertType.REFERRAL_FRAUD,
    SignalType.BEHAVIORAL_ANOMALY: AlertType.BEHAVIORAL_ANOMALY,
    SignalType.TIME_ANOMALY: AlertType.BEHAVIORAL_ANOMALY,
    SignalType.PATTERN_BREAK: AlertType.BEHAVIORAL_ANOMALY,
}


def alert_type_for(signal_type: SignalType) -> AlertType:
    return ALERT_TYPES.get(signal_type, AlertType.ACCOUNT_ANOMALY)


class AlertManager:
    """Cooldown de-duplication and delivery of fraud alerts."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[AlertConfig] = None,
        handler: Optional[AlertHandler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or AlertConfig()
        self.handler = handler
        self.clock = clock
        self._recent = deque(maxlen=self.config.max_recent_alerts)

    @staticmethod
    def _cooldown_key(user_id: str, signal_type: SignalType) -> str:
        return composite_key("alert", "cooldown", user_id, signal_type.value)

    async def _claim(self, user_id: str, signal_type: SignalType) -> bool:
        """Atomically check and start the cooldown for one (user, signal type)."""
        key = self._cooldown_key(user_id, signal_type)
        async with self.store.lock(key):
            now = self.clock()
            last = await self.store.get(key)
            if last is not None and now.timestamp() - float(last) < self.config.cooldown_seconds:
                return False
            await self.store.set(key, now.timestamp(), ttl_seconds=self.config.cooldown_seconds or None)
            return True

    async def process(self, assessment: RiskAssessment) -> Optional[FraudAlert]:
        """
        Emit an alert for a high or critical assessment, unless one was
        already emitted for the same user and dominant signal type within
        the cooldown window.
        """
        if assessment.risk_level not in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return None

        dominant = assessment.dominant_signal()
        if dominant is None:
            return None

        user_id = assessment.user_id or assessment.entity_id
        if not await self._claim(user_id, dominant.type):
            logger.debug("Alert suppressed by cooldown", user_id=user_id, signal_type=dominant.type.value)
            return None

        alert = FraudAlert(
            type=alert_type_for(dominant.type),
            severity="critical" if assessment.risk_level == RiskLevel.CRITICAL else "high",
            entity_id=assessment.entity_id,
            entity_type=assessment.entity_type,
            user_id=user_id,
            signal_type=dominant.type,
            description="; ".join(signal.description for signal in assessment.signals),
            evidence={
                "assessment_id": assessment.id,
                "risk_score": assessment.risk_score,
                "signals": [signal.to_dict() for signal in assessment.signals],
            },
            created_at=self.clock(),
        )
        self._recent.append(alert)

        logger.warning(
            "Fraud alert generated",
            alert_id=alert.id,
            alert_type=alert.type.value,
            user_id=user_id,
            entity_id=alert.entity_id,
            risk_score=assessment.risk_score,
        )

        if self.handler is not None:
            try:
                await self.handler(alert)
            except Exception as e:
                logger.error("Alert handler failed", alert_id=alert.id, error=str(e), exc_info=True)

        return alert

    def get_recent_alerts(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[FraudAlert]:
        """Most recent alerts first."""
        alerts = [a for a in reversed(self._recent) if user_id is None or a.user_id == user_id]
        return alerts[:limit] if limit is not None else alerts
