"""
Multi-Account Detector

Cross-references the device, IP and payment-method associations recorded
by the other analyzers to find accounts controlled by the same actor.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from ...infrastructure.state_store import StateStore, composite_key
from .device import DeviceFingerprintAnalyzer
from .ip_reputation import IPReputationAnalyzer
from .models import (
    ActionPriority,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
)
from .primitives import clamp

logger = structlog.get_logger(__name__)

LINK_CONFIDENCE = {
    "same_payment_method": 0.95,
    "same_device": 0.9,
    "same_ip": 0.6,
}

LINK_TYPE_BONUS = 0.1
COMPLIANCE_CONFIDENCE = 0.7


@dataclass(frozen=True)
class LinkedAccount(SerializableMixin):
    user_id: str
    link_type: str
    confidence: float
    evidence: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MultiAccountResult(SerializableMixin):
    user_id: str
    is_multi_account: bool
    confidence: float
    risk_score: float
    linked_accounts: List[LinkedAccount] = field(default_factory=list)
    link_counts: Dict[str, int] = field(default_factory=dict)
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)

    @property
    def link_types(self) -> List[str]:
        return sorted({link.link_type for link in self.linked_accounts})


class MultiAccountDetector:
    """Finds accounts sharing devices, IPs or payment methods."""

    def __init__(self, store: StateStore):
        self.store = store

    @staticmethod
    def payment_users_key(payment_method_id: str) -> str:
        return composite_key("payment", "users", payment_method_id)

    async def record_payment_method(self, user_id: str, payment_method_id: str) -> None:
        await self.store.sadd(self.payment_users_key(payment_method_id), user_id)

    async def _other_users(self, key: str, user_id: str) -> List[str]:
        return sorted(u for u in await self.store.smembers(key) if u != user_id)

    async def detect(
        self,
        user_id: str,
        device_hash: Optional[str] = None,
        ip: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> MultiAccountResult:
        """
        Link the user to other accounts seen on the same identifiers.

        Each other account is counted once, through its strongest link.
        """
        candidates = []
        if device_hash:
            key = DeviceFingerprintAnalyzer.device_users_key(device_hash)
            candidates.append(("same_device", "Same device fingerprint", key))
        if ip:
            key = IPReputationAnalyzer.ip_users_key(ip)
            candidates.append(("same_ip", "Same IP address", key))
        if payment_method_id:
            key = self.payment_users_key(payment_method_id)
            candidates.append(("same_payment_method", "Same payment method", key))

        links: Dict[str, LinkedAccount] = {}
        link_counts: Dict[str, int] = {}
        for link_type, evidence, key in candidates:
            confidence = LINK_CONFIDENCE[link_type]
            others = await self._other_users(key, user_id)
            link_counts[link_type] = len(others)
            for other in others:
                existing = links.get(other)
                if existing is None or confidence > existing.confidence:
                    links[other] = LinkedAccount(
                        user_id=other,
                        link_type=link_type,
                        confidence=confidence,
                        evidence=[evidence],
                    )

        linked_accounts = sorted(links.values(), key=lambda link: (-link.confidence, link.user_id))
        is_multi_account = len(linked_accounts) > 0
        confidence = 0.0
        signals = []
        recommendations = []

        if is_multi_account:
            link_types = {link.link_type for link in linked_accounts}
            mean = sum(link.confidence for link in linked_accounts) / len(linked_accounts)
            confidence = clamp(mean + LINK_TYPE_BONUS * (len(link_types) - 1))

            if confidence > 0.8:
                severity = Severity.HIGH
            elif confidence > 0.5:
                severity = Severity.MEDIUM
            else:
                severity = Severity.LOW

            signals.append(
                RiskSignal(
                    type=SignalType.MULTI_ACCOUNT,
                    severity=severity,
                    description=f"{len(linked_accounts)} linked account(s) detected",
                    evidence={
                        "linked_accounts": [
                            {"user_id": link.user_id, "type": link.link_type} for link in linked_accounts
                        ]
                    },
                    confidence=confidence,
                )
            )

            if confidence > COMPLIANCE_CONFIDENCE:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                        priority=ActionPriority.HIGH,
                        reason="High confidence multi-account detection",
                    )
                )

            logger.info(
                "Linked accounts detected",
                user_id=user_id,
                linked_count=len(linked_accounts),
                confidence=confidence,
            )

        return MultiAccountResult(
            user_id=user_id,
            is_multi_account=is_multi_account,
            confidence=confidence,
            risk_score=clamp(confidence * 0.8 + len(linked_accounts) * 0.1),
            linked_accounts=linked_accounts,
            link_counts=link_counts,
            signals=signals,
            recommendations=recommendations,
        )
