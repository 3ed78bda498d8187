"""
Fraud Domain Models

Inputs (trades, transactions, fingerprints, geolocations) are frozen
pydantic models: validated once at the boundary, never mutated by the engine.
Per-user state (behavior and risk profiles) are mutable pydantic models so
they round-trip through the state store as plain JSON.
Analyzer outputs are dataclasses with to_dict() for serialization.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class SignalType(str, Enum):
    """Closed set of evidence types any analyzer may emit."""

    VELOCITY_SPIKE = "velocity_spike"
    DEPOSIT_VELOCITY = "deposit_velocity"
    WITHDRAWAL_VELOCITY = "withdrawal_velocity"
    BET_VELOCITY = "bet_velocity"
    AMOUNT_ANOMALY = "amount_anomaly"
    DEVICE_ANOMALY = "device_anomaly"
    NEW_DEVICE = "new_device"
    DEVICE_SHARING = "device_sharing"
    EMULATOR_DETECTED = "emulator_detected"
    BOT_DETECTED = "bot_detected"
    VPN_DETECTED = "vpn_detected"
    PROXY_DETECTED = "proxy_detected"
    TOR_DETECTED = "tor_detected"
    DATACENTER_IP = "datacenter_ip"
    LOCATION_ANOMALY = "location_anomaly"
    GEO_VELOCITY_VIOLATION = "geo_velocity_violation"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"
    TIME_ANOMALY = "time_anomaly"
    PATTERN_BREAK = "pattern_break"
    MULTI_ACCOUNT = "multi_account"
    BONUS_ABUSE = "bonus_abuse"
    REFERRAL_FRAUD = "referral_fraud"
    RAPID_DEPOSIT_WITHDRAWAL = "rapid_deposit_withdrawal"
    WASH_TRADING = "wash_trading"
    SELF_TRADING = "self_trading"
    VOLUME_MANIPULATION = "volume_manipulation"
    COORDINATED_TRADING = "coordinated_trading"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    ACCOUNT_TAKEOVER = "account_takeover"
    NEW_ACCOUNT_ABUSE = "new_account_abuse"
    SPOOFING = "spoofing"
    LAYERING = "layering"
    FRONT_RUNNING = "front_running"


class RecommendedAction(str, Enum):
    BLOCK_TRANSACTION = "block_transaction"
    BLOCK_TRADE = "block_trade"
    DELAY_WITHDRAWAL = "delay_withdrawal"
    REQUIRE_2FA = "require_2fa"
    REQUIRE_VERIFICATION = "require_verification"
    SUSPEND_ACCOUNT = "suspend_account"
    FLAG_FOR_COMPLIANCE = "flag_for_compliance"
    MANUAL_REVIEW = "manual_review"
    ENHANCED_MONITORING = "enhanced_monitoring"
    LIMIT_DEPOSITS = "limit_deposits"
    LIMIT_WITHDRAWALS = "limit_withdrawals"
    COOL_DOWN_PERIOD = "cool_down_period"
    NOTIFY_ADMIN = "notify_admin"
    NOTIFY_USER = "notify_user"
    NO_ACTION = "no_action"


class ActionPriority(str, Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {
    ActionPriority.IMMEDIATE: 0,
    ActionPriority.HIGH: 1,
    ActionPriority.MEDIUM: 2,
    ActionPriority.LOW: 3,
}


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EntityType(str, Enum):
    USER = "user"
    TRADE = "trade"
    TRANSACTION = "transaction"
    MARKET = "market"
    DEVICE = "device"
    IP = "ip"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BET = "bet"
    WIN = "win"
    LOSS = "loss"
    BONUS = "bonus"
    REFUND = "refund"
    FEE = "fee"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class FlagSeverity(str, Enum):
    WARNING = "warning"
    ALERT = "alert"
    CRITICAL = "critical"


class AlertType(str, Enum):
    WASH_TRADING_DETECTED = "wash_trading_detected"
    VELOCITY_EXCEEDED = "velocity_exceeded"
    VOLUME_ANOMALY = "volume_anomaly"
    MANIPULATION_SUSPECTED = "manipulation_suspected"
    COORDINATED_ACTIVITY = "coordinated_activity"
    ACCOUNT_ANOMALY = "account_anomaly"
    DEVICE_ANOMALY = "device_anomaly"
    IP_ANOMALY = "ip_anomaly"
    MULTI_ACCOUNT_DETECTED = "multi_account_detected"
    VPN_PROXY_DETECTED = "vpn_proxy_detected"
    GEO_VELOCITY_ALERT = "geo_velocity_alert"
    BOT_DETECTED = "bot_detected"
    DEPOSIT_WITHDRAWAL_CYCLE = "deposit_withdrawal_cycle"
    BONUS_ABUSE_DETECTED = "bonus_abuse_detected"
    REFERRAL_FRAUD = "referral_fraud"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"


class AlertStatus(str, Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    FALSE_POSITIVE = "false_positive"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class GeoLocation(BaseModel):
    """Resolved location of an IP address, supplied by a GeoIP provider."""

    model_config = ConfigDict(frozen=True)

    country: str = "Unknown"
    country_code: str = "XX"
    region: str = "Unknown"
    city: str = "Unknown"
    latitude: float = Field(0.0, ge=-90, le=90)
    longitude: float = Field(0.0, ge=-180, le=180)
    timezone: str = "UTC"
    asn: str = "Unknown"
    organization: str = "Unknown"


class IPIntelligence(BaseModel):
    """Classification flags resolved by an external IP provider."""

    model_config = ConfigDict(frozen=True)

    is_vpn: Optional[bool] = None
    is_proxy: Optional[bool] = None
    is_tor: Optional[bool] = None
    is_datacenter: Optional[bool] = None
    is_residential: Optional[bool] = None
    is_mobile: Optional[bool] = None
    location: Optional[GeoLocation] = None


class DeviceFingerprint(BaseModel):
    """Raw client signals reported by the browser or app."""

    model_config = ConfigDict(frozen=True)

    user_agent: Optional[str] = None
    platform: Optional[str] = None
    screen_resolution: Optional[str] = None
    color_depth: Optional[int] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    canvas_hash: Optional[str] = None
    webgl_hash: Optional[str] = None
    webgl_vendor: Optional[str] = None
    webgl_renderer: Optional[str] = None
    audio_hash: Optional[str] = None
    plugins: Optional[List[str]] = None
    cookies_enabled: Optional[bool] = None
    webdriver: bool = False
    automation: bool = False
    headless: bool = False
    session_id: Optional[str] = None


class _TimestampedInput(BaseModel):
    @field_validator("timestamp", mode="after", check_fields=False)
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Trade(_TimestampedInput):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    market_id: str = Field(..., min_length=1)
    side: TradeSide
    quantity: float = Field(..., gt=0)
    price: float = Field(..., ge=0)
    total_value: Optional[float] = Field(None, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    counterparty_id: Optional[str] = None
    device_id: Optional[str] = None
    ip: Optional[str] = None
    session_id: Optional[str] = None

    @model_validator(mode="after")
    def fill_total_value(self):
        if self.total_value is None:
            object.__setattr__(self, "total_value", self.quantity * self.price)
        return self


class Transaction(_TimestampedInput):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    type: TransactionType
    amount: float = Field(..., ge=0)
    currency: str = "USD"
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method_id: Optional[str] = None
    device_id: Optional[str] = None
    ip: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class BonusUsage(_TimestampedInput):
    """A claimed promotional bonus and its wagering progress."""

    model_config = ConfigDict(frozen=True)

    bonus_id: str
    status: str = "active"
    amount: float = Field(0.0, ge=0)
    wager_requirement: float = Field(0.0, ge=0)
    claimed_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("claimed_at", "completed_at", mode="after")
    @classmethod
    def normalize_dates(cls, v):
        return ensure_utc(v) if v is not None else v


class BetRecord(_TimestampedInput):
    model_config = ConfigDict(frozen=True)

    amount: float = Field(..., ge=0)
    timestamp: datetime
    odds: Optional[float] = Field(None, gt=0)


# ---------------------------------------------------------------------------
# Per-user state
# ---------------------------------------------------------------------------


class TradingPattern(BaseModel):
    market_id: str
    hours: List[int] = Field(default_factory=list)


class BehaviorProfile(BaseModel):
    """Rolling behavioral baseline for one user."""

    user_id: str
    avg_session_duration: float = 0.0
    preferred_login_hours: List[int] = Field(default_factory=list)
    preferred_days: List[int] = Field(default_factory=list)
    avg_deposit_amount: float = 0.0
    avg_withdrawal_amount: float = 0.0
    avg_trade_size: float = 0.0
    deposit_count: int = 0
    withdrawal_count: int = 0
    trade_count: int = 0
    trading_patterns: List[TradingPattern] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)


class AccountFlag(BaseModel):
    flag: str
    severity: FlagSeverity
    reason: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.resolved_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


class UserRiskProfile(BaseModel):
    """Aggregate risk state for one user, updated after every assessment."""

    user_id: str
    overall_risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    account_flags: List[AccountFlag] = Field(default_factory=list)
    restrictions: List[str] = Field(default_factory=list)
    known_devices: List[str] = Field(default_factory=list)
    known_ips: List[str] = Field(default_factory=list)
    velocity_usage: Dict[str, int] = Field(default_factory=dict)
    recent_scores: List[float] = Field(default_factory=list)
    win_rate: float = 0.0
    account_created_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_assessment: Optional[datetime] = None

    def active_flags(self, now: Optional[datetime] = None) -> List[AccountFlag]:
        return [flag for flag in self.account_flags if flag.is_active(now)]

    def account_age_months(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        opened = self.account_created_at or self.created_at
        return max(0.0, (now - opened).total_seconds() / (30 * 24 * 3600))


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_serialize(v) for v in value]
    return value


class SerializableMixin:
    """to_dict() for dataclass results."""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class RiskSignal(SerializableMixin):
    """One atomic, typed piece of evidence."""

    type: SignalType
    severity: Severity
    description: str
    confidence: float
    evidence: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    detected_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RiskRecommendation(SerializableMixin):
    action: RecommendedAction
    priority: ActionPriority
    reason: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    auto_execute: bool = False


@dataclass(frozen=True)
class ScoreAdjustment(SerializableMixin):
    """A named bonus (reduces risk) or penalty (increases risk)."""

    name: str
    value: float
    reason: str


@dataclass(frozen=True)
class ScoreComponents(SerializableMixin):
    velocity_score: float = 0.0
    device_score: float = 0.0
    ip_score: float = 0.0
    behavior_score: float = 0.0
    multi_account_score: float = 0.0
    bonus_abuse_score: float = 0.0
    trading_score: float = 0.0
    history_score: float = 0.0
    base_score: float = 0.0
    bonuses: List[ScoreAdjustment] = field(default_factory=list)
    penalties: List[ScoreAdjustment] = field(default_factory=list)
    final_score: float = 0.0

    def as_weighted_inputs(self) -> Dict[str, float]:
        return {
            "velocity": self.velocity_score,
            "device": self.device_score,
            "ip": self.ip_score,
            "behavior": self.behavior_score,
            "multi_account": self.multi_account_score,
            "bonus_abuse": self.bonus_abuse_score,
            "trading": self.trading_score,
            "history": self.history_score,
        }


@dataclass(frozen=True)
class RiskAssessment(SerializableMixin):
    """Aggregate, scored output of the engine for one entity."""

    entity_id: str
    entity_type: EntityType
    risk_score: float
    risk_level: RiskLevel
    signals: List[RiskSignal]
    recommendations: List[RiskRecommendation]
    components: ScoreComponents
    user_id: Optional[str] = None
    degraded_analyzers: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    assessed_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def has_action(self, action: RecommendedAction) -> bool:
        return any(rec.action == action for rec in self.recommendations)

    def dominant_signal(self) -> Optional[RiskSignal]:
        """Highest severity signal, ties broken by confidence then order."""
        if not self.signals:
            return None
        return max(
            enumerate(self.signals),
            key=lambda item: (SEVERITY_RANK[item[1].severity], item[1].confidence, -item[0]),
        )[1]


@dataclass(frozen=True)
class FraudAlert(SerializableMixin):
    type: AlertType
    severity: str
    entity_id: str
    entity_type: EntityType
    user_id: str
    signal_type: SignalType
    description: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.NEW
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
