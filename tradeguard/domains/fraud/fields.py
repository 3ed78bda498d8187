"""
Rule Field Registry

Rule conditions address analyzer output through dotted field paths such as
``device.is_bot`` or ``deposits.hourly.count``. Every valid path is an
explicit registration mapping the path to an accessor over an
EvaluationContext; there is no reflective traversal of arbitrary objects.
A path whose source is absent from the context resolves to None.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .behavior import BehaviorAnomalyResult
from .bonus_abuse import BonusAbuseResult
from .cycles import CycleDetectionResult
from .device import DeviceAnalysisResult
from .geo import GeoVelocityCheck
from .ip_reputation import IPAnalysisResult
from .models import Trade, Transaction, TransactionType
from .multi_account import MultiAccountResult
from .primitives import WINDOWS
from .wash_trading import TradeActivityResult, WashTradingAnalysis

Accessor = Callable[["EvaluationContext"], Any]


@dataclass
class EvaluationContext:
    """Flattened view of one analysis that rule conditions are evaluated against."""

    user_id: str
    transaction: Optional[Transaction] = None
    trade: Optional[Trade] = None
    # action type -> window -> {"count": ..., "amount": ...}
    velocity_usage: Dict[str, Dict[str, Dict[str, float]]] = field(default_factory=dict)
    device: Optional[DeviceAnalysisResult] = None
    ip: Optional[IPAnalysisResult] = None
    behavior: Optional[BehaviorAnomalyResult] = None
    multi_account: Optional[MultiAccountResult] = None
    bonus: Optional[BonusAbuseResult] = None
    cycles: Optional[CycleDetectionResult] = None
    trade_activity: Optional[TradeActivityResult] = None
    wash_trading: Optional[WashTradingAnalysis] = None
    time_since_last_deposit: Optional[float] = None
    referral_score: Optional[float] = None
    custom: Dict[str, Any] = field(default_factory=dict)

    @property
    def geo_velocity(self) -> Optional[GeoVelocityCheck]:
        return self.ip.geo_velocity if self.ip is not None else None


FIELD_REGISTRY: Dict[str, Accessor] = {}


def register_field(path: str, accessor: Accessor) -> None:
    """Make a field path available to rule conditions."""
    if not path or path != path.strip():
        raise ValueError(f"Invalid field path: {path!r}")
    FIELD_REGISTRY[path] = accessor


def is_registered(path: str) -> bool:
    return path in FIELD_REGISTRY


def registered_fields() -> List[str]:
    return sorted(FIELD_REGISTRY)


def resolve(path: str, context: EvaluationContext) -> Any:
    """Look up a registered field; unknown paths raise KeyError."""
    return FIELD_REGISTRY[path](context)


def _attribute(source: str, name: str) -> Accessor:
    def accessor(context: EvaluationContext) -> Any:
        component = getattr(context, source)
        if component is None:
            return None
        return getattr(component, name)

    return accessor


def _register_attributes(source: str, names: List[str], prefix: Optional[str] = None) -> None:
    for name in names:
        register_field(f"{prefix or source}.{name}", _attribute(source, name))


# Velocity usage: <plural action>.<window>.<count|amount>
_VELOCITY_ACTIONS = {
    "deposits": "deposit",
    "withdrawals": "withdrawal",
    "bets": "bet",
    "trades": "trade",
    "logins": "login",
}


def _usage(action_type: str, window: str, metric: str) -> Accessor:
    def accessor(context: EvaluationContext) -> Any:
        usage = context.velocity_usage.get(action_type)
        if not usage or window not in usage:
            return None
        return usage[window].get(metric)

    return accessor


for _plural, _action in _VELOCITY_ACTIONS.items():
    for _window in WINDOWS:
        for _metric in ("count", "amount"):
            register_field(f"{_plural}.{_window}.{_metric}", _usage(_action, _window, _metric))


# Transaction and trade
_register_attributes("transaction", ["id", "amount", "currency", "payment_method_id"])
register_field("transaction.type", lambda c: c.transaction.type.value if c.transaction else None)
register_field("transaction.status", lambda c: c.transaction.status.value if c.transaction else None)
register_field("time_since_last_deposit", lambda c: c.time_since_last_deposit)


def _withdrawal_amount(context: EvaluationContext) -> Optional[float]:
    tx = context.transaction
    if tx is None or tx.type != TransactionType.WITHDRAWAL:
        return None
    return tx.amount


register_field("withdrawal_amount", _withdrawal_amount)

_register_attributes("trade", ["id", "market_id", "quantity", "price", "total_value", "counterparty_id"])
register_field("trade.side", lambda c: c.trade.side.value if c.trade else None)


# Device
_register_attributes(
    "device",
    [
        "device_id",
        "is_new_device",
        "is_known_device",
        "is_shared_device",
        "is_suspicious",
        "is_emulator",
        "is_virtual_machine",
        "is_bot",
        "trust_score",
        "risk_score",
        "device_count",
    ],
)
register_field("device.account_count", lambda c: len(c.device.matched_users) + 1 if c.device else None)


# IP and geo velocity
_register_attributes(
    "ip",
    [
        "ip",
        "is_vpn",
        "is_proxy",
        "is_tor",
        "is_datacenter",
        "is_residential",
        "is_mobile",
        "is_suspicious",
        "reputation_score",
        "abuse_confidence",
        "risk_score",
    ],
)
register_field("ip.threat_level", lambda c: c.ip.threat_level.value if c.ip else None)
register_field("ip.previous_user_count", lambda c: len(c.ip.previous_users) if c.ip else None)
register_field(
    "ip.location.country_code",
    lambda c: c.ip.location.country_code if c.ip and c.ip.location else None,
)
register_field(
    "ip.location.asn",
    lambda c: c.ip.location.asn if c.ip and c.ip.location else None,
)
_register_attributes(
    "geo_velocity",
    ["is_possible", "distance_km", "time_diff_hours", "required_time_hours", "risk_score"],
)


# Behavior
def _deviation(metric: str) -> Callable[[EvaluationContext], Optional[Any]]:
    def find(context: EvaluationContext):
        if context.behavior is None:
            return None
        for deviation in context.behavior.deviations:
            if deviation.metric == metric:
                return deviation
        return None

    return find


def _time_deviation(context: EvaluationContext) -> Optional[float]:
    if context.behavior is None:
        return None
    deviation = _deviation("login_hour")(context)
    return abs(deviation.observed - deviation.expected) if deviation else 0.0


def _amount_deviation(context: EvaluationContext) -> Optional[float]:
    if context.behavior is None:
        return None
    deviation = _deviation("amount")(context)
    if deviation is None or deviation.expected <= 0:
        return 0.0
    return deviation.observed / deviation.expected


def _pattern_score(context: EvaluationContext) -> Optional[float]:
    # Consistency with the baseline: 1.0 is fully typical
    if context.behavior is None:
        return None
    return 1.0 - context.behavior.anomaly_score


def _session_anomaly_score(context: EvaluationContext) -> Optional[float]:
    if context.behavior is None:
        return None
    deviation = _deviation("session_duration")(context)
    if deviation is None:
        return 0.0
    return 1.0 if deviation.significance == "high" else 0.85


_register_attributes("behavior", ["is_anomaly", "anomaly_score", "anomaly_type", "risk_score"])
register_field("behavior.time_deviation", _time_deviation)
register_field("behavior.amount_deviation", _amount_deviation)
register_field("behavior.pattern_score", _pattern_score)
register_field("behavior.session_anomaly_score", _session_anomaly_score)


# Multi-account
def _linked_accounts(link_type: str) -> Accessor:
    """Accounts on the identifier including the user, or None without data."""

    def accessor(context: EvaluationContext) -> Optional[int]:
        if context.multi_account is None or link_type not in context.multi_account.link_counts:
            return None
        return context.multi_account.link_counts[link_type] + 1

    return accessor


_register_attributes("multi_account", ["is_multi_account", "confidence", "risk_score"])
register_field("multi_account.linked_count", lambda c: len(c.multi_account.linked_accounts) if c.multi_account else None)
register_field("multi_account.same_device_accounts", _linked_accounts("same_device"))
register_field("multi_account.same_ip_accounts", _linked_accounts("same_ip"))
register_field("multi_account.same_payment_accounts", _linked_accounts("same_payment_method"))
register_field("referral.self_referral_score", lambda c: c.referral_score)


# Bonus abuse and deposit/withdrawal cycles
_register_attributes(
    "bonus",
    ["is_abusive", "confidence", "risk_score", "bonus_bet_ratio", "arbitrage_score", "wager_speed"],
)


def _play_through_ratio(context: EvaluationContext) -> Optional[float]:
    """Play-through of the most recent completed deposit/withdrawal cycle."""
    if context.cycles is None or not context.cycles.cycles:
        return None
    return context.cycles.cycles[-1].play_through_ratio


register_field("bonus.play_through_ratio", _play_through_ratio)
_register_attributes("cycles", ["is_suspicious", "cycle_type", "risk_score", "total_cycled_amount"])
register_field("cycles.cycle_count", lambda c: len(c.cycles.cycles) if c.cycles else None)


# Trading
def _self_trading_count(context: EvaluationContext) -> Optional[int]:
    if context.trade_activity is None and context.wash_trading is None:
        return None
    count = 0
    if context.trade_activity is not None:
        count += len(context.trade_activity.matching_trade_ids)
    if context.wash_trading is not None:
        count += context.wash_trading.self_trade_count
    return count


def _coordination_score(context: EvaluationContext) -> Optional[float]:
    if context.wash_trading is None:
        return None
    related = context.wash_trading.related_account_trades
    return max((r.confidence for r in related), default=0.0)


register_field("trading.wash_trading_score", lambda c: c.wash_trading.risk_score if c.wash_trading else None)
register_field("trading.is_wash_trading", lambda c: c.wash_trading.is_wash_trading if c.wash_trading else None)
register_field("trading.self_trading_count", _self_trading_count)
register_field("trading.coordination_score", _coordination_score)
register_field(
    "trading.circular_pattern_count",
    lambda c: len(c.wash_trading.circular_patterns) if c.wash_trading else None,
)
register_field(
    "trading.velocity_multiplier",
    lambda c: c.trade_activity.velocity_multiplier if c.trade_activity else None,
)
register_field(
    "trading.volume_multiplier",
    lambda c: c.trade_activity.volume_multiplier if c.trade_activity else None,
)
register_field(
    "trading.trades_last_minute",
    lambda c: c.trade_activity.trades_last_minute if c.trade_activity else None,
)
register_field("trading.daily_volume", lambda c: c.trade_activity.daily_volume if c.trade_activity else None)
