"""
Fraud Rules Engine

Declarative condition -> action rules evaluated against an
EvaluationContext. Rules are data: the active rule set fully determines
engine behavior. Rules run in priority order (1 is highest); a rule
triggers only when all of its conditions pass. Per-rule cooldowns and
hourly trigger caps are tracked per user.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from ...utils.exceptions import RuleConfigurationError
from .fields import EvaluationContext, is_registered, resolve
from .models import (
    ActionPriority,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
    utcnow,
)

logger = structlog.get_logger(__name__)


class RuleCategory(str, Enum):
    VELOCITY = "velocity"
    DEVICE = "device"
    IP = "ip"
    BEHAVIOR = "behavior"
    MULTI_ACCOUNT = "multi_account"
    BONUS = "bonus"
    TRADING = "trading"
    FINANCIAL = "financial"


class RuleOperator(str, Enum):
    """Rule comparison operators."""

    EQ = "eq"  # ==
    NEQ = "neq"  # !=
    GT = "gt"  # >
    GTE = "gte"  # >=
    LT = "lt"  # <
    LTE = "lte"  # <=
    IN = "in"  # value in list
    NOT_IN = "not_in"  # value not in list
    CONTAINS = "contains"  # string contains value
    REGEX = "regex"  # re.search(pattern, value)
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


_NUMERIC_OPERATORS = {RuleOperator.GT, RuleOperator.GTE, RuleOperator.LT, RuleOperator.LTE}
_LIST_OPERATORS = {RuleOperator.IN, RuleOperator.NOT_IN}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RuleCondition(BaseModel):
    """One field comparison."""

    field: str = Field(..., min_length=1)
    operator: RuleOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_value(self):
        if self.operator in _LIST_OPERATORS and not isinstance(self.value, list):
            raise ValueError(f"Operator {self.operator.value} requires a list value")
        if self.operator in _NUMERIC_OPERATORS and not _is_number(self.value):
            raise ValueError(f"Operator {self.operator.value} requires a numeric value")
        if self.operator == RuleOperator.REGEX:
            try:
                re.compile(str(self.value))
            except re.error as e:
                raise ValueError(f"Invalid regex {self.value!r}: {e}") from e
        return self

    def evaluate(self, actual: Any) -> bool:
        """Compare a resolved field value against the expected value."""
        op = self.operator
        expected = self.value

        if op == RuleOperator.EXISTS:
            return actual is not None
        if op == RuleOperator.NOT_EXISTS:
            return actual is None
        if op == RuleOperator.EQ:
            return actual == expected
        if op == RuleOperator.NEQ:
            return actual != expected
        if op in _NUMERIC_OPERATORS:
            if not _is_number(actual):
                return False
            if op == RuleOperator.GT:
                return actual > expected
            if op == RuleOperator.GTE:
                return actual >= expected
            if op == RuleOperator.LT:
                return actual < expected
            return actual <= expected
        if op == RuleOperator.IN:
            return actual is not None and actual in expected
        if op == RuleOperator.NOT_IN:
            return actual is not None and actual not in expected
        if op == RuleOperator.CONTAINS:
            return isinstance(actual, str) and isinstance(expected, str) and expected in actual
        if op == RuleOperator.REGEX:
            if not isinstance(actual, str):
                return False
            try:
                return re.search(str(expected), actual) is not None
            except re.error:
                return False
        return False

    def explain(self, actual: Any) -> str:
        """Explain condition evaluation for audit purposes."""
        return f"{self.field} ({actual}) {self.operator.value} {self.value} = {self.evaluate(actual)}"


class RuleAction(BaseModel):
    type: RecommendedAction
    parameters: Dict[str, Any] = Field(default_factory=dict)


class FraudRule(BaseModel):
    """A prioritized condition -> action rule."""

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    category: RuleCategory
    enabled: bool = True
    priority: int = Field(1, ge=1, description="1 is the highest priority")
    conditions: List[RuleCondition] = Field(..., min_length=1)
    actions: List[RuleAction] = Field(default_factory=list)
    cooldown_seconds: Optional[int] = Field(None, ge=0)
    max_triggers_per_hour: Optional[int] = Field(None, ge=1)


@dataclass(frozen=True)
class ConditionResult(SerializableMixin):
    field: str
    operator: str
    expected: Any
    actual: Any
    passed: bool


@dataclass(frozen=True)
class RuleEvaluationResult(SerializableMixin):
    rule_id: str
    rule_name: str
    category: RuleCategory
    priority: int
    triggered: bool
    conditions: List[ConditionResult] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)


@dataclass
class _TriggerState:
    last_triggered: datetime
    hour_count: int
    hour_reset_at: datetime


# ---------------------------------------------------------------------------
# Default rule sets
# ---------------------------------------------------------------------------


def _cond(field_path: str, operator: str, value: Any = None) -> Dict[str, Any]:
    return {"field": field_path, "operator": operator, "value": value}


def _act(action: str, **parameters: Any) -> Dict[str, Any]:
    return {"type": action, "parameters": parameters}


VELOCITY_RULES = [
    {
        "id": "velocity_deposits_hourly",
        "name": "Excessive hourly deposits",
        "category": "velocity",
        "priority": 1,
        "conditions": [_cond("deposits.hourly.count", "gt", 5)],
        "actions": [_act("delay_withdrawal", delay_minutes=60), _act("notify_admin")],
        "cooldown_seconds": 3600,
        "max_triggers_per_hour": 1,
    },
    {
        "id": "velocity_deposits_daily",
        "name": "Excessive daily deposits",
        "category": "velocity",
        "priority": 1,
        "conditions": [_cond("deposits.daily.count", "gt", 10)],
        "actions": [_act("limit_deposits", max_per_day=5), _act("enhanced_monitoring")],
        "cooldown_seconds": 86400,
        "max_triggers_per_hour": 1,
    },
    {
        "id": "velocity_withdrawals_daily",
        "name": "Excessive daily withdrawals",
        "category": "velocity",
        "priority": 1,
        "conditions": [_cond("withdrawals.daily.count", "gt", 5)],
        "actions": [_act("delay_withdrawal", delay_hours=24), _act("require_verification")],
        "cooldown_seconds": 86400,
        "max_triggers_per_hour": 1,
    },
    {
        "id": "velocity_bets_hourly",
        "name": "Excessive hourly bets",
        "category": "velocity",
        "priority": 2,
        "conditions": [_cond("bets.hourly.count", "gt", 100)],
        "actions": [_act("cool_down_period", duration_minutes=30), _act("notify_admin")],
        "cooldown_seconds": 1800,
        "max_triggers_per_hour": 2,
    },
    {
        "id": "velocity_large_deposit",
        "name": "Large single deposit",
        "category": "velocity",
        "priority": 1,
        "conditions": [_cond("transaction.type", "eq", "deposit"), _cond("transaction.amount", "gt", 10000)],
        "actions": [_act("manual_review"), _act("flag_for_compliance")],
        "cooldown_seconds": 0,
    },
    {
        "id": "velocity_rapid_withdrawal",
        "name": "Withdrawal shortly after deposit",
        "category": "velocity",
        "priority": 1,
        "conditions": [_cond("time_since_last_deposit", "lt", 3600), _cond("withdrawal_amount", "gte", 500)],
        "actions": [_act("delay_withdrawal", delay_hours=24), _act("manual_review")],
        "cooldown_seconds": 3600,
    },
]

DEVICE_RULES = [
    {
        "id": "device_new_device_withdrawal",
        "name": "Withdrawal from new device",
        "category": "device",
        "priority": 1,
        "conditions": [_cond("device.is_new_device", "eq", True), _cond("transaction.type", "eq", "withdrawal")],
        "actions": [_act("require_2fa"), _act("delay_withdrawal", delay_hours=24)],
        "cooldown_seconds": 86400,
    },
    {
        "id": "device_emulator_detected",
        "name": "Emulator detected",
        "category": "device",
        "priority": 1,
        "conditions": [_cond("device.is_emulator", "eq", True)],
        "actions": [_act("block_transaction"), _act("notify_admin")],
        "cooldown_seconds": 0,
    },
    {
        "id": "device_bot_detected",
        "name": "Automated client detected",
        "category": "device",
        "priority": 1,
        "conditions": [_cond("device.is_bot", "eq", True)],
        "actions": [_act("block_transaction"), _act("suspend_account")],
        "cooldown_seconds": 0,
    },
    {
        "id": "device_multiple_accounts",
        "name": "Device used by multiple accounts",
        "category": "device",
        "priority": 2,
        "conditions": [_cond("device.account_count", "gt", 1)],
        "actions": [_act("enhanced_monitoring"), _act("notify_admin")],
        "cooldown_seconds": 86400,
    },
    {
        "id": "device_low_trust_score",
        "name": "Low device trust",
        "category": "device",
        "priority": 2,
        "conditions": [_cond("device.trust_score", "lt", 0.3)],
        "actions": [_act("require_verification"), _act("limit_withdrawals", max_per_day=100)],
        "cooldown_seconds": 3600,
    },
]

IP_RULES = [
    {
        "id": "ip_vpn_detected",
        "name": "VPN connection",
        "category": "ip",
        "priority": 2,
        "conditions": [_cond("ip.is_vpn", "eq", True)],
        "actions": [_act("require_verification"), _act("enhanced_monitoring")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "ip_tor_detected",
        "name": "Tor connection",
        "category": "ip",
        "priority": 1,
        "conditions": [_cond("ip.is_tor", "eq", True)],
        "actions": [_act("block_transaction"), _act("notify_admin")],
        "cooldown_seconds": 0,
    },
    {
        "id": "ip_datacenter",
        "name": "Datacenter IP",
        "category": "ip",
        "priority": 2,
        "conditions": [_cond("ip.is_datacenter", "eq", True)],
        "actions": [_act("enhanced_monitoring"), _act("require_2fa")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "ip_blocked_country",
        "name": "Connection from blocked country",
        "category": "ip",
        "priority": 1,
        "conditions": [_cond("ip.location.country_code", "in", ["KP", "IR", "SY", "CU"])],
        "actions": [_act("block_transaction"), _act("flag_for_compliance")],
        "cooldown_seconds": 0,
    },
    {
        "id": "ip_geo_velocity",
        "name": "Impossible travel",
        "category": "ip",
        "priority": 1,
        "conditions": [_cond("geo_velocity.is_possible", "eq", False)],
        "actions": [_act("require_2fa"), _act("delay_withdrawal", delay_hours=24), _act("notify_admin")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "ip_low_reputation",
        "name": "Low IP reputation",
        "category": "ip",
        "priority": 2,
        "conditions": [_cond("ip.reputation_score", "lt", 30)],
        "actions": [_act("enhanced_monitoring"), _act("limit_withdrawals", max_amount=500)],
        "cooldown_seconds": 3600,
    },
]

BEHAVIOR_RULES = [
    {
        "id": "behavior_unusual_time",
        "name": "Activity at unusual time",
        "category": "behavior",
        "priority": 3,
        "conditions": [_cond("behavior.time_deviation", "gt", 3)],
        "actions": [_act("require_2fa")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "behavior_unusual_amount",
        "name": "Unusual amount",
        "category": "behavior",
        "priority": 2,
        "conditions": [_cond("behavior.amount_deviation", "gt", 5)],
        "actions": [_act("manual_review"), _act("enhanced_monitoring")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "behavior_pattern_break",
        "name": "Break from usual pattern",
        "category": "behavior",
        "priority": 2,
        "conditions": [_cond("behavior.pattern_score", "lt", 0.5)],
        "actions": [_act("require_verification"), _act("enhanced_monitoring")],
        "cooldown_seconds": 86400,
    },
    {
        "id": "behavior_session_anomaly",
        "name": "Session anomaly",
        "category": "behavior",
        "priority": 2,
        "conditions": [_cond("behavior.session_anomaly_score", "gt", 0.8)],
        "actions": [_act("require_2fa"), _act("notify_admin")],
        "cooldown_seconds": 1800,
    },
]

MULTI_ACCOUNT_RULES = [
    {
        "id": "multi_account_same_device",
        "name": "Accounts sharing a device",
        "category": "multi_account",
        "priority": 1,
        "conditions": [_cond("multi_account.same_device_accounts", "gt", 1)],
        "actions": [_act("flag_for_compliance"), _act("enhanced_monitoring"), _act("notify_admin")],
        "cooldown_seconds": 86400,
    },
    {
        "id": "multi_account_same_ip",
        "name": "Accounts sharing an IP",
        "category": "multi_account",
        "priority": 2,
        "conditions": [_cond("multi_account.same_ip_accounts", "gt", 2)],
        "actions": [_act("enhanced_monitoring")],
        "cooldown_seconds": 86400,
    },
    {
        "id": "multi_account_same_payment",
        "name": "Accounts sharing a payment method",
        "category": "multi_account",
        "priority": 1,
        "conditions": [_cond("multi_account.same_payment_accounts", "gt", 1)],
        "actions": [_act("suspend_account"), _act("flag_for_compliance")],
        "cooldown_seconds": 0,
    },
    {
        "id": "multi_account_referral_abuse",
        "name": "Self-referral",
        "category": "multi_account",
        "priority": 1,
        "conditions": [_cond("referral.self_referral_score", "gt", 0.7)],
        "actions": [_act("suspend_account"), _act("flag_for_compliance")],
        "cooldown_seconds": 0,
    },
]

BONUS_RULES = [
    {
        "id": "bonus_rapid_wagering",
        "name": "Rapid bonus wagering",
        "category": "bonus",
        "priority": 2,
        "conditions": [_cond("bonus.wager_speed", "gt", 10)],
        "actions": [_act("manual_review"), _act("enhanced_monitoring")],
        "cooldown_seconds": 3600,
    },
    {
        "id": "bonus_arbitrage_pattern",
        "name": "Bonus arbitrage",
        "category": "bonus",
        "priority": 1,
        "conditions": [_cond("bonus.arbitrage_score", "gt", 0.8)],
        "actions": [_act("flag_for_compliance"), _act("suspend_account")],
        "cooldown_seconds": 0,
    },
    {
        "id": "bonus_minimal_play",
        "name": "Withdrawal after minimal play",
        "category": "bonus",
        "priority": 2,
        "conditions": [
            _cond("bonus.play_through_ratio", "lt", 0.5),
            _cond("transaction.type", "eq", "withdrawal"),
        ],
        "actions": [_act("delay_withdrawal", delay_hours=48), _act("manual_review")],
        "cooldown_seconds": 3600,
    },
]

TRADING_RULES = [
    {
        "id": "trading_wash_trading",
        "name": "Wash trading",
        "category": "trading",
        "priority": 1,
        "conditions": [_cond("trading.wash_trading_score", "gt", 0.7)],
        "actions": [_act("suspend_account"), _act("flag_for_compliance")],
        "cooldown_seconds": 0,
    },
    {
        "id": "trading_self_trading",
        "name": "Self trading",
        "category": "trading",
        "priority": 1,
        "conditions": [_cond("trading.self_trading_count", "gt", 0)],
        "actions": [_act("block_trade"), _act("notify_admin")],
        "cooldown_seconds": 0,
    },
    {
        "id": "trading_velocity_spike",
        "name": "Trading velocity spike",
        "category": "trading",
        "priority": 2,
        "conditions": [_cond("trading.velocity_multiplier", "gt", 5)],
        "actions": [_act("cool_down_period", duration_minutes=15), _act("enhanced_monitoring")],
        "cooldown_seconds": 900,
    },
    {
        "id": "trading_coordinated_activity",
        "name": "Coordinated trading",
        "category": "trading",
        "priority": 1,
        "conditions": [_cond("trading.coordination_score", "gt", 0.8)],
        "actions": [_act("manual_review"), _act("flag_for_compliance")],
        "cooldown_seconds": 3600,
    },
]

DEFAULT_RULE_SETS = {
    RuleCategory.VELOCITY: VELOCITY_RULES,
    RuleCategory.DEVICE: DEVICE_RULES,
    RuleCategory.IP: IP_RULES,
    RuleCategory.BEHAVIOR: BEHAVIOR_RULES,
    RuleCategory.MULTI_ACCOUNT: MULTI_ACCOUNT_RULES,
    RuleCategory.BONUS: BONUS_RULES,
    RuleCategory.TRADING: TRADING_RULES,
}


def default_rules() -> List[FraudRule]:
    """Fresh copies of every built-in rule."""
    return [FraudRule.model_validate(rule) for rules in DEFAULT_RULE_SETS.values() for rule in rules]


# Signal type inference: whole rule id segments first, then category
_ID_SIGNAL_TYPES = [
    ("geo_velocity", SignalType.GEO_VELOCITY_VIOLATION),
    ("emulator", SignalType.EMULATOR_DETECTED),
    ("vpn", SignalType.VPN_DETECTED),
    ("tor", SignalType.TOR_DETECTED),
    ("proxy", SignalType.PROXY_DETECTED),
    ("datacenter", SignalType.DATACENTER_IP),
    ("device_sharing", SignalType.DEVICE_SHARING),
    ("new_device", SignalType.NEW_DEVICE),
    ("bot", SignalType.BOT_DETECTED),
    ("wash_trading", SignalType.WASH_TRADING),
    ("self_trading", SignalType.SELF_TRADING),
    ("referral", SignalType.REFERRAL_FRAUD),
]

_CATEGORY_SIGNAL_TYPES = {
    RuleCategory.VELOCITY: SignalType.VELOCITY_SPIKE,
    RuleCategory.DEVICE: SignalType.DEVICE_ANOMALY,
    RuleCategory.IP: SignalType.LOCATION_ANOMALY,
    RuleCategory.BEHAVIOR: SignalType.BEHAVIORAL_ANOMALY,
    RuleCategory.MULTI_ACCOUNT: SignalType.MULTI_ACCOUNT,
    RuleCategory.BONUS: SignalType.BONUS_ABUSE,
    RuleCategory.TRADING: SignalType.SUSPICIOUS_PATTERN,
    RuleCategory.FINANCIAL: SignalType.AMOUNT_ANOMALY,
}

RULE_SIGNAL_CONFIDENCE = 0.9

_RULE_ACTION_PRIORITIES = {1: ActionPriority.HIGH, 2: ActionPriority.MEDIUM}


def signal_type_for(rule_id: str, category: RuleCategory) -> SignalType:
    """Match fragments against whole segments, so "history" never reads as "tor"."""
    segments = [s for s in re.split(r"[_\-.:]+", rule_id.lower()) if s]
    for fragment, signal_type in _ID_SIGNAL_TYPES:
        parts = fragment.split("_")
        width = len(parts)
        if any(segments[i : i + width] == parts for i in range(len(segments) - width + 1)):
            return signal_type
    return _CATEGORY_SIGNAL_TYPES[category]


def severity_for(priority: int) -> Severity:
    if priority == 1:
        return Severity.HIGH
    if priority == 2:
        return Severity.MEDIUM
    return Severity.LOW


class FraudRulesEngine:
    """
    Evaluates the active rule set against an EvaluationContext.

    Rule outcomes are pure functions of the context; only the cooldown and
    hourly-cap bookkeeping is stateful, keyed by (rule id, user id).
    """

    def __init__(
        self,
        rules: Optional[Iterable[Union[FraudRule, Dict[str, Any]]]] = None,
        enabled_categories: Optional[Iterable[Union[RuleCategory, str]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.clock = clock
        self._rules: Dict[str, FraudRule] = {}
        self._triggers: Dict[Tuple[str, str], _TriggerState] = {}
        self.enabled_categories = (
            {RuleCategory(c) for c in enabled_categories} if enabled_categories is not None else set(RuleCategory)
        )

        for rule in default_rules() if rules is None else rules:
            self._add(rule)

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(rule: Union[FraudRule, Dict[str, Any]]) -> FraudRule:
        rule_id = rule.id if isinstance(rule, FraudRule) else rule.get("id")
        try:
            validated = FraudRule.model_validate(rule if isinstance(rule, dict) else rule.model_dump())
        except ValidationError as e:
            raise RuleConfigurationError(
                f"Invalid rule definition: {e.errors()[0]['msg']}",
                rule_id=rule_id,
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        for condition in validated.conditions:
            if not is_registered(condition.field):
                raise RuleConfigurationError(
                    f"Unknown field path: {condition.field}",
                    rule_id=validated.id,
                    field=condition.field,
                )
        return validated

    def _add(self, rule: Union[FraudRule, Dict[str, Any]]) -> FraudRule:
        validated = self._validate(rule)
        self._rules[validated.id] = validated
        return validated

    def add_rule(self, rule: Union[FraudRule, Dict[str, Any]]) -> FraudRule:
        """Add a rule, replacing any existing rule with the same id."""
        validated = self._add(rule)
        logger.info("Fraud rule added", rule_id=validated.id, category=validated.category.value)
        return validated

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self._triggers = {k: v for k, v in self._triggers.items() if k[0] != rule_id}
            logger.info("Fraud rule removed", rule_id=rule_id)
        return removed

    def _set_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        self._rules[rule_id] = rule.model_copy(update={"enabled": enabled})
        logger.info("Fraud rule updated", rule_id=rule_id, enabled=enabled)
        return True

    def enable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, True)

    def disable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, False)

    def get_rule(self, rule_id: str) -> Optional[FraudRule]:
        return self._rules.get(rule_id)

    def get_rules(self) -> List[FraudRule]:
        return sorted(self._rules.values(), key=lambda r: (r.priority, r.id))

    def get_rules_by_category(self, category: Union[RuleCategory, str]) -> List[FraudRule]:
        category = RuleCategory(category)
        return [rule for rule in self.get_rules() if rule.category == category]

    def enable_category(self, category: Union[RuleCategory, str]) -> None:
        self.enabled_categories.add(RuleCategory(category))
        logger.info("Rule category enabled", category=RuleCategory(category).value)

    def disable_category(self, category: Union[RuleCategory, str]) -> None:
        self.enabled_categories.discard(RuleCategory(category))
        logger.info("Rule category disabled", category=RuleCategory(category).value)

    def active_rules(self) -> List[FraudRule]:
        return [r for r in self.get_rules() if r.enabled and r.category in self.enabled_categories]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def evaluate_rule(rule: FraudRule, context: EvaluationContext) -> RuleEvaluationResult:
        """Evaluate every condition of one rule. Has no side effects."""
        results = []
        for condition in rule.conditions:
            actual = resolve(condition.field, context)
            results.append(
                ConditionResult(
                    field=condition.field,
                    operator=condition.operator.value,
                    expected=condition.value,
                    actual=actual,
                    passed=condition.evaluate(actual),
                )
            )

        triggered = all(result.passed for result in results)
        return RuleEvaluationResult(
            rule_id=rule.id,
            rule_name=rule.name,
            category=rule.category,
            priority=rule.priority,
            triggered=triggered,
            conditions=results,
            actions=list(rule.actions) if triggered else [],
        )

    def can_trigger(self, rule: FraudRule, user_id: str, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        state = self._triggers.get((rule.id, user_id))
        if state is None:
            return True
        if rule.cooldown_seconds and now < state.last_triggered + timedelta(seconds=rule.cooldown_seconds):
            return False
        if rule.max_triggers_per_hour and now < state.hour_reset_at:
            return state.hour_count < rule.max_triggers_per_hour
        return True

    def _record_trigger(self, rule: FraudRule, user_id: str, now: datetime) -> None:
        key = (rule.id, user_id)
        state = self._triggers.get(key)
        if state is None or now >= state.hour_reset_at:
            state = _TriggerState(last_triggered=now, hour_count=0, hour_reset_at=now + timedelta(hours=1))
            self._triggers[key] = state
        state.last_triggered = now
        state.hour_count += 1

    def evaluate(self, context: EvaluationContext) -> List[RuleEvaluationResult]:
        """
        Evaluate active rules in priority order.

        Returns:
            Results of the rules that triggered, highest priority first
        """
        now = self.clock()
        triggered = []

        for rule in self.active_rules():
            if not self.can_trigger(rule, context.user_id, now):
                logger.debug("Rule skipped by rate limit", rule_id=rule.id, user_id=context.user_id)
                continue

            result = self.evaluate_rule(rule, context)
            if result.triggered:
                self._record_trigger(rule, context.user_id, now)
                triggered.append(result)
                logger.debug("Rule triggered", rule_id=rule.id, user_id=context.user_id)

        return triggered

    @staticmethod
    def rules_to_signals(results: Iterable[RuleEvaluationResult]) -> List[RiskSignal]:
        signals = []
        for result in results:
            if not result.triggered:
                continue
            signals.append(
                RiskSignal(
                    type=signal_type_for(result.rule_id, result.category),
                    severity=severity_for(result.priority),
                    description=f"Rule triggered: {result.rule_name}",
                    evidence={
                        "rule_id": result.rule_id,
                        "rule_name": result.rule_name,
                        "category": result.category.value,
                        "conditions": [
                            {
                                "field": c.field,
                                "operator": c.operator,
                                "expected": c.expected,
                                "actual": c.actual,
                            }
                            for c in result.conditions
                        ],
                    },
                    confidence=RULE_SIGNAL_CONFIDENCE,
                )
            )
        return signals

    @staticmethod
    def get_actions_to_execute(results: Iterable[RuleEvaluationResult]) -> List[RuleAction]:
        """Actions of triggered rules, de-duplicated by type, first occurrence wins."""
        seen = set()
        actions = []
        for result in results:
            if not result.triggered:
                continue
            for action in result.actions:
                if action.type in seen:
                    continue
                seen.add(action.type)
                actions.append(action)
        return actions

    @staticmethod
    def actions_to_recommendations(results: Iterable[RuleEvaluationResult]) -> List[RiskRecommendation]:
        """Recommendations for triggered rule actions, one per action type."""
        seen = set()
        recommendations = []
        for result in results:
            if not result.triggered:
                continue
            for action in result.actions:
                if action.type in seen:
                    continue
                seen.add(action.type)
                recommendations.append(
                    RiskRecommendation(
                        action=action.type,
                        priority=_RULE_ACTION_PRIORITIES.get(result.priority, ActionPriority.LOW),
                        reason=f"Rule triggered: {result.rule_name}",
                        parameters=dict(action.parameters),
                    )
                )
        return recommendations
