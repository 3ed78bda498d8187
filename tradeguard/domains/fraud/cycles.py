"""
Deposit / Withdrawal Cycle Detector

Finds money that goes in and comes straight back out with little or no
play in between, and small-deposit structuring ahead of a large withdrawal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Sequence

import structlog

from .models import (
    ActionPriority,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .primitives import HOUR_SECONDS, clamp

logger = structlog.get_logger(__name__)

AMOUNT_TOLERANCE = 0.2
RAPID_CYCLE_HOURS = 2.0
RAPID_CYCLE_PLAY_RATIO = 0.5
MINIMAL_PLAY_RATIO = 0.1
STRUCTURING_WINDOW = 10
STRUCTURING_MIN_DEPOSITS = 5
STRUCTURING_SMALL_DEPOSIT = 1000
STRUCTURING_WITHDRAWAL_RATIO = 0.8
WITHDRAWAL_DELAY_HOURS = 48


@dataclass(frozen=True)
class FinancialCycle(SerializableMixin):
    deposit_id: str
    withdrawal_id: str
    deposit_amount: float
    withdrawal_amount: float
    deposit_time: datetime
    withdrawal_time: datetime
    cycle_time_hours: float
    betting_activity: float
    play_through_ratio: float
    flags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CycleDetectionResult(SerializableMixin):
    user_id: str
    is_suspicious: bool
    cycle_type: str
    risk_score: float
    cycle_types: List[str] = field(default_factory=list)
    cycles: List[FinancialCycle] = field(default_factory=list)
    total_cycled_amount: float = 0.0
    avg_cycle_time_hours: float = 0.0
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)


def _completed(transactions: Sequence[Transaction], tx_type: TransactionType) -> List[Transaction]:
    return sorted(
        (t for t in transactions if t.type == tx_type and t.status == TransactionStatus.COMPLETED),
        key=lambda t: t.timestamp,
    )


class CycleDetector:
    def detect(self, user_id: str, transactions: Sequence[Transaction]) -> CycleDetectionResult:
        """
        Pair deposits with withdrawals and flag suspicious cycles.

        Every deposit is matched to the earliest later withdrawal, not yet
        claimed by another deposit, whose amount is within 20% of it.
        Only completed transactions are considered.

        Flags per cycle:
            rapid_cycle: closed within 2h with play-through below 0.5
            minimal_play: play-through at or below 0.1
        """
        deposits = _completed(transactions, TransactionType.DEPOSIT)
        withdrawals = _completed(transactions, TransactionType.WITHDRAWAL)
        # Bets count as play whatever their status
        bets = [t for t in transactions if t.type == TransactionType.BET]

        cycles = []
        used = set()
        for deposit in deposits:
            low = deposit.amount * (1 - AMOUNT_TOLERANCE)
            high = deposit.amount * (1 + AMOUNT_TOLERANCE)
            match = next(
                (
                    w
                    for w in withdrawals
                    if w.id not in used and w.timestamp > deposit.timestamp and low <= w.amount <= high
                ),
                None,
            )
            if match is None:
                continue
            used.add(match.id)

            betting = sum(b.amount for b in bets if deposit.timestamp < b.timestamp < match.timestamp)
            ratio = betting / deposit.amount if deposit.amount > 0 else 0.0
            hours = (match.timestamp - deposit.timestamp).total_seconds() / HOUR_SECONDS

            flags = []
            if hours < RAPID_CYCLE_HOURS and ratio < RAPID_CYCLE_PLAY_RATIO:
                flags.append("rapid_cycle")
            if ratio <= MINIMAL_PLAY_RATIO:
                flags.append("minimal_play")

            cycles.append(
                FinancialCycle(
                    deposit_id=deposit.id,
                    withdrawal_id=match.id,
                    deposit_amount=deposit.amount,
                    withdrawal_amount=match.amount,
                    deposit_time=deposit.timestamp,
                    withdrawal_time=match.timestamp,
                    cycle_time_hours=hours,
                    betting_activity=betting,
                    play_through_ratio=ratio,
                    flags=flags,
                )
            )

        cycle_types = []
        for name in ("rapid_cycle", "minimal_play"):
            if any(name in cycle.flags for cycle in cycles):
                cycle_types.append(name)

        signals = []
        structuring = self._structuring(deposits, withdrawals)
        if structuring is not None:
            cycle_types.append("structuring")
            signals.append(structuring)

        is_suspicious = bool(cycle_types)
        total_amount = sum(cycle.deposit_amount for cycle in cycles)
        avg_hours = sum(cycle.cycle_time_hours for cycle in cycles) / len(cycles) if cycles else 0.0
        # Most specific finding wins: structuring, then minimal_play, then rapid_cycle
        cycle_type = cycle_types[-1] if cycle_types else "none"
        recommendations = []

        if is_suspicious:
            minimal = sum(1 for cycle in cycles if "minimal_play" in cycle.flags)
            signals.append(
                RiskSignal(
                    type=SignalType.RAPID_DEPOSIT_WITHDRAWAL,
                    severity=Severity.HIGH if minimal > 2 else Severity.MEDIUM,
                    description=(
                        f"{cycle_type} pattern detected: {len(cycles)} cycles "
                        f"with avg {avg_hours:.1f}h duration"
                    ),
                    evidence={
                        "cycle_count": len(cycles),
                        "cycle_types": cycle_types,
                        "total_cycled_amount": total_amount,
                    },
                    confidence=0.85,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                    priority=ActionPriority.HIGH,
                    reason=f"Suspicious {cycle_type} pattern detected",
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.DELAY_WITHDRAWAL,
                    priority=ActionPriority.HIGH,
                    reason="Pending review of transaction patterns",
                    parameters={"delay_hours": WITHDRAWAL_DELAY_HOURS},
                )
            )
            logger.info("Deposit/withdrawal cycle detected", user_id=user_id, cycle_types=cycle_types)

        return CycleDetectionResult(
            user_id=user_id,
            is_suspicious=is_suspicious,
            cycle_type=cycle_type,
            risk_score=clamp(0.5 + len(cycles) * 0.1) if is_suspicious else 0.0,
            cycle_types=cycle_types,
            cycles=cycles,
            total_cycled_amount=total_amount,
            avg_cycle_time_hours=avg_hours,
            signals=signals,
            recommendations=recommendations,
        )

    @staticmethod
    def _structuring(deposits: List[Transaction], withdrawals: List[Transaction]):
        recent = deposits[-STRUCTURING_WINDOW:]
        if len(recent) < STRUCTURING_MIN_DEPOSITS or not withdrawals:
            return None
        if not all(d.amount < STRUCTURING_SMALL_DEPOSIT for d in recent):
            return None

        withdrawal = withdrawals[-1]
        total = sum(d.amount for d in recent)
        if withdrawal.timestamp <= recent[-1].timestamp or withdrawal.amount < total * STRUCTURING_WITHDRAWAL_RATIO:
            return None

        return RiskSignal(
            type=SignalType.RAPID_DEPOSIT_WITHDRAWAL,
            severity=Severity.HIGH,
            description=f"Potential structuring: {len(recent)} small deposits followed by large withdrawal",
            evidence={
                "deposit_count": len(recent),
                "avg_amount": total / len(recent),
                "withdrawal_amount": withdrawal.amount,
            },
            confidence=0.8,
        )
