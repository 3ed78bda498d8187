"""
Velocity Guard

Rate limits monetized actions per user over four fixed windows
(hour, day, week, 30 days). Checks run fail-fast in a fixed order:
hourly, daily, weekly and monthly counts, then the single-action amount
and the cumulative daily and weekly amounts. Only allowed actions are
counted against future windows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from ...config import VelocityConfig, VelocityLimits
from ...infrastructure.state_store import StateStore, composite_key
from ...utils.exceptions import InvalidInputError, VelocityLimitExceededError
from .models import RiskSignal, SerializableMixin, Severity, SignalType, utcnow
from .primitives import WINDOWS, RollingWindowCounter, clamp

logger = structlog.get_logger(__name__)

# Risk score reported for each kind of hard violation
VIOLATION_SCORES = {
    "hourly": 0.6,
    "daily": 0.7,
    "weekly": 0.75,
    "monthly": 0.75,
    "amount": 0.8,
    "daily_amount": 0.75,
    "weekly_amount": 0.75,
}

APPROACHING_LIMIT_RATIO = 0.8
SOFT_USAGE_WEIGHT = 0.3

_SIGNAL_TYPES = {
    "deposit": SignalType.DEPOSIT_VELOCITY,
    "withdrawal": SignalType.WITHDRAWAL_VELOCITY,
    "bet": SignalType.BET_VELOCITY,
}


@dataclass(frozen=True)
class VelocityCheckResult(SerializableMixin):
    allowed: bool
    action_type: str
    limit_type: Optional[str]
    current: float
    limit: float
    remaining: float
    reset_at: datetime
    risk_score: float
    signals: List[RiskSignal] = field(default_factory=list)
    usage: Dict[str, Dict[str, float]] = field(default_factory=dict)


class VelocityGuard:
    """Per-user, per-action rolling window limits."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[VelocityConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or VelocityConfig()
        self.clock = clock

    def limits_for(self, action_type: str) -> VelocityLimits:
        limits = self.config.limits_for(action_type)
        if limits is None:
            raise InvalidInputError(
                f"Unknown velocity action type: {action_type}",
                field="action_type",
                details={"known": self.config.action_types},
            )
        return limits

    @staticmethod
    def _key(user_id: str, action_type: str, window: str) -> str:
        return composite_key("velocity", user_id, action_type, window)

    async def _load_counters(self, user_id: str, action_type: str, now: datetime) -> Dict[str, RollingWindowCounter]:
        counters = {}
        for window, seconds in WINDOWS.items():
            stored = await self.store.get(self._key(user_id, action_type, window))
            counters[window] = RollingWindowCounter.current(stored, now, seconds)
        return counters

    async def _save_counters(self, user_id: str, action_type: str, counters: Dict[str, RollingWindowCounter]) -> None:
        for window, counter in counters.items():
            await self.store.set(
                self._key(user_id, action_type, window),
                counter.to_dict(),
                ttl_seconds=WINDOWS[window],
            )

    async def check(self, user_id: str, action_type: str, amount: float = 0.0) -> VelocityCheckResult:
        """
        Check and, if allowed, record one action.

        Args:
            user_id: Acting user
            action_type: Configured action type (deposit, withdrawal, bet, trade, login, ...)
            amount: Monetary amount of the action, 0 for non-monetary actions

        Returns:
            VelocityCheckResult; `current` includes the attempted action

        Raises:
            InvalidInputError: If the action type has no configured limits
        """
        limits = self.limits_for(action_type)
        if amount < 0:
            raise InvalidInputError("Velocity amount cannot be negative", field="amount")

        async with self.store.lock(composite_key("velocity", user_id, action_type)):
            now = self.clock()
            counters = await self._load_counters(user_id, action_type, now)
            result = self._evaluate(action_type, limits, counters, amount, now)

            if result.allowed:
                for counter in counters.values():
                    counter.record(amount)
            await self._save_counters(user_id, action_type, counters)

        if not result.allowed:
            logger.info(
                "Velocity limit exceeded",
                user_id=user_id,
                action_type=action_type,
                limit_type=result.limit_type,
                current=result.current,
                limit=result.limit,
            )

        return VelocityCheckResult(
            allowed=result.allowed,
            action_type=result.action_type,
            limit_type=result.limit_type,
            current=result.current,
            limit=result.limit,
            remaining=result.remaining,
            reset_at=result.reset_at,
            risk_score=result.risk_score,
            signals=result.signals,
            usage=self._snapshot(counters),
        )

    async def enforce(self, user_id: str, action_type: str, amount: float = 0.0) -> VelocityCheckResult:
        """Like check(), but raise VelocityLimitExceededError on rejection."""
        result = await self.check(user_id, action_type, amount)
        if not result.allowed:
            raise VelocityLimitExceededError(
                limit_type=result.limit_type,
                current=result.current,
                limit=result.limit,
                action_type=action_type,
            )
        return result

    async def usage(self, user_id: str, action_type: str) -> Dict[str, Dict[str, float]]:
        """Read-only snapshot of the live counters for one action type."""
        self.limits_for(action_type)
        counters = await self._load_counters(user_id, action_type, self.clock())
        return self._snapshot(counters)

    @staticmethod
    def _snapshot(counters: Dict[str, RollingWindowCounter]) -> Dict[str, Dict[str, float]]:
        return {
            window: {"count": counter.count, "amount": counter.amount}
            for window, counter in counters.items()
        }

    def _evaluate(
        self,
        action_type: str,
        limits: VelocityLimits,
        counters: Dict[str, RollingWindowCounter],
        amount: float,
        now: datetime,
    ) -> VelocityCheckResult:
        hour = counters["hourly"]
        day = counters["daily"]
        week = counters["weekly"]

        count_limits = [
            ("hourly", limits.per_hour),
            ("daily", limits.per_day),
            ("weekly", limits.per_week),
            ("monthly", limits.per_month),
        ]
        for window, limit in count_limits:
            counter = counters[window]
            if counter.count >= limit:
                current = counter.count + 1
                return self._rejected(
                    action_type,
                    window,
                    current,
                    limit,
                    0,
                    counter.reset_at,
                    self._count_signal(action_type, window, current, limit),
                )

        if amount > 0:
            if limits.max_amount and amount > limits.max_amount:
                return self._rejected(
                    action_type,
                    "amount",
                    amount,
                    limits.max_amount,
                    0,
                    hour.reset_at,
                    self._amount_signal(action_type, amount, limits.max_amount),
                )

            cumulative = [
                ("daily_amount", day, limits.max_amount_per_day, "daily"),
                ("weekly_amount", week, limits.max_amount_per_week, "weekly"),
            ]
            for limit_type, counter, limit, period in cumulative:
                if limit and counter.amount + amount > limit:
                    current = counter.amount + amount
                    return self._rejected(
                        action_type,
                        limit_type,
                        current,
                        limit,
                        max(0.0, limit - counter.amount),
                        counter.reset_at,
                        self._amount_signal(action_type, current, limit, period),
                    )

        hourly_usage = hour.count / limits.per_hour
        daily_usage = day.count / limits.per_day
        signals = []

        if hourly_usage > APPROACHING_LIMIT_RATIO:
            signals.append(
                RiskSignal(
                    type=SignalType.VELOCITY_SPIKE,
                    severity=Severity.LOW,
                    description=f"Approaching hourly {action_type} limit: {hour.count}/{limits.per_hour}",
                    evidence={"usage": hourly_usage, "action_type": action_type},
                    confidence=0.7,
                )
            )

        return VelocityCheckResult(
            allowed=True,
            action_type=action_type,
            limit_type=None,
            current=hour.count + 1,
            limit=limits.per_hour,
            remaining=limits.per_hour - hour.count - 1,
            reset_at=hour.reset_at,
            risk_score=clamp(max(hourly_usage * SOFT_USAGE_WEIGHT, daily_usage * SOFT_USAGE_WEIGHT)),
            signals=signals,
        )

    @staticmethod
    def _rejected(
        action_type: str,
        limit_type: str,
        current: float,
        limit: float,
        remaining: float,
        reset_at: datetime,
        signal: RiskSignal,
    ) -> VelocityCheckResult:
        return VelocityCheckResult(
            allowed=False,
            action_type=action_type,
            limit_type=limit_type,
            current=current,
            limit=limit,
            remaining=remaining,
            reset_at=reset_at,
            risk_score=VIOLATION_SCORES[limit_type],
            signals=[signal],
        )

    @staticmethod
    def _count_signal(action_type: str, period: str, current: float, limit: float) -> RiskSignal:
        return RiskSignal(
            type=_SIGNAL_TYPES.get(action_type, SignalType.VELOCITY_SPIKE),
            severity=Severity.HIGH,
            description=f"{period} {action_type} limit exceeded: {current}/{limit}",
            evidence={"action_type": action_type, "period": period, "current": current, "limit": limit},
            confidence=0.95,
        )

    @staticmethod
    def _amount_signal(action_type: str, amount: float, limit: float, period: Optional[str] = None) -> RiskSignal:
        prefix = f"{period} " if period else ""
        return RiskSignal(
            type=SignalType.AMOUNT_ANOMALY,
            severity=Severity.HIGH,
            description=f"{prefix}{action_type} amount limit exceeded: ${amount:,.2f}/${limit:,.2f}",
            evidence={"action_type": action_type, "amount": amount, "limit": limit, "period": period},
            confidence=0.95,
        )
