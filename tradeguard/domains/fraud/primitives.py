"""
Shared numeric primitives.

ExponentialMovingAverage and RollingWindowCounter are the only places where
smoothing and window-reset semantics live. VelocityGuard, BehaviorProfiler
and the profile store all go through them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, TypeVar

T = TypeVar("T")

HOUR_SECONDS = 3600
DAY_SECONDS = 24 * HOUR_SECONDS
WEEK_SECONDS = 7 * DAY_SECONDS
MONTH_SECONDS = 30 * DAY_SECONDS

# Velocity windows in check order
WINDOWS = {
    "hourly": HOUR_SECONDS,
    "daily": DAY_SECONDS,
    "weekly": WEEK_SECONDS,
    "monthly": MONTH_SECONDS,
}


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


class ExponentialMovingAverage:
    """
    Exponential moving average with a fixed smoothing factor.

    alpha is the weight of the new sample. A baseline of exactly zero is
    treated as "no history yet" when seed_with_first is set, so the first
    sample becomes the average instead of being diluted towards zero.
    """

    def __init__(self, alpha: float, seed_with_first: bool = True):
        if not 0 < alpha <= 1:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha
        self.seed_with_first = seed_with_first

    def update(self, previous: float, sample: float) -> float:
        if self.seed_with_first and previous == 0:
            return sample
        return self.alpha * sample + (1 - self.alpha) * previous


def append_bounded(history: List[T], value: T, max_length: int) -> List[T]:
    """Append value, dropping the oldest entries beyond max_length."""
    history.append(value)
    if len(history) > max_length:
        del history[: len(history) - max_length]
    return history


@dataclass
class RollingWindowCounter:
    """
    Count and cumulative amount for one fixed window.

    A counter is opened lazily on first use and replaced, never incremented,
    once reset_at has passed.
    """

    count: int
    amount: float
    reset_at: datetime

    @classmethod
    def open(cls, now: datetime, window_seconds: int) -> "RollingWindowCounter":
        return cls(count=0, amount=0.0, reset_at=now + timedelta(seconds=window_seconds))

    @classmethod
    def current(
        cls,
        stored: Optional[Dict[str, Any]],
        now: datetime,
        window_seconds: int,
    ) -> "RollingWindowCounter":
        """Rehydrate a stored counter, or open a fresh one if absent or expired."""
        if stored:
            counter = cls.from_dict(stored)
            if not counter.is_expired(now):
                return counter
        return cls.open(now, window_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.reset_at

    def record(self, amount: float = 0.0) -> None:
        self.count += 1
        self.amount += amount

    def seconds_until_reset(self, now: datetime) -> float:
        return max(0.0, (self.reset_at - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "amount": self.amount,
            "reset_at": self.reset_at.timestamp(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollingWindowCounter":
        return cls(
            count=int(data["count"]),
            amount=float(data["amount"]),
            reset_at=datetime.fromtimestamp(float(data["reset_at"]), tz=timezone.utc),
        )
