"""
TradeGuard - Configuration Management

Environment-driven configuration for the fraud detection engine. Every
section has documented defaults and can be overridden through environment
variables (see each class's env_prefix) or by passing an instance directly
to the component that consumes it.
"""

from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RiskThresholds(BaseSettings):
    """Risk level cut-offs and realtime trade thresholds."""

    critical_risk_score: float = Field(0.9, description="Score at or above which risk is critical", ge=0, le=1)
    high_risk_score: float = Field(0.7, description="Score at or above which risk is high", ge=0, le=1)
    medium_risk_score: float = Field(0.4, description="Score at or above which risk is medium", ge=0, le=1)
    max_velocity_per_minute: int = Field(10, description="Max trades per trailing minute", ge=1)
    min_time_between_trades: float = Field(5.0, description="Min seconds between consecutive trades", ge=0)
    max_daily_volume: float = Field(1_000_000, description="Max traded value per calendar day", gt=0)
    suspicious_volume_multiplier: float = Field(5.0, description="Trade size multiple of average that is suspicious", gt=1)

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_RISK_")

    @model_validator(mode="after")
    def validate_ordering(self):
        """Thresholds must be strictly increasing from medium to critical."""
        if not self.medium_risk_score < self.high_risk_score < self.critical_risk_score:
            raise ValueError("Risk thresholds must satisfy medium < high < critical")
        return self


class VelocityLimits(BaseModel):
    """Count and amount limits for one action type."""

    per_hour: int = Field(..., ge=1)
    per_day: int = Field(..., ge=1)
    per_week: int = Field(..., ge=1)
    per_month: int = Field(..., ge=1)
    max_amount: Optional[float] = Field(None, description="Max single action amount", gt=0)
    max_amount_per_day: Optional[float] = Field(None, description="Max cumulative daily amount", gt=0)
    max_amount_per_week: Optional[float] = Field(None, description="Max cumulative weekly amount", gt=0)


class VelocityConfig(BaseSettings):
    """Velocity limits per action type."""

    deposit: VelocityLimits = Field(
        default_factory=lambda: VelocityLimits(
            per_hour=5,
            per_day=10,
            per_week=30,
            per_month=100,
            max_amount=10_000,
            max_amount_per_day=50_000,
            max_amount_per_week=100_000,
        )
    )
    withdrawal: VelocityLimits = Field(
        default_factory=lambda: VelocityLimits(
            per_hour=3,
            per_day=5,
            per_week=15,
            per_month=50,
            max_amount=10_000,
            max_amount_per_day=25_000,
            max_amount_per_week=75_000,
        )
    )
    bet: VelocityLimits = Field(
        default_factory=lambda: VelocityLimits(per_hour=100, per_day=500, per_week=2000, per_month=5000)
    )
    trade: VelocityLimits = Field(
        default_factory=lambda: VelocityLimits(per_hour=50, per_day=200, per_week=1000, per_month=3000)
    )
    login: VelocityLimits = Field(
        default_factory=lambda: VelocityLimits(per_hour=10, per_day=30, per_week=100, per_month=300)
    )
    extra: Dict[str, VelocityLimits] = Field(
        default_factory=dict, description="Limits for additional action types"
    )

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_VELOCITY_", env_nested_delimiter="__")

    def limits_for(self, action_type: str) -> Optional[VelocityLimits]:
        """Return the limits configured for an action type, if any."""
        if action_type in ("deposit", "withdrawal", "bet", "trade", "login"):
            return getattr(self, action_type)
        return self.extra.get(action_type)

    @property
    def action_types(self) -> List[str]:
        return ["deposit", "withdrawal", "bet", "trade", "login"] + list(self.extra)


class DeviceConfig(BaseSettings):
    """Device fingerprint policy."""

    max_devices_per_user: int = Field(5, description="Devices per user before warning", ge=1)
    suspicious_device_sharing: int = Field(3, description="Shared users that trigger compliance", ge=1)
    required_signals: List[str] = Field(
        default_factory=lambda: ["user_agent", "screen_resolution", "timezone", "language"],
        description="Fingerprint fields that must be present",
    )
    block_known_emulators: bool = Field(True, description="Block emulated devices")
    block_known_vms: bool = Field(False, description="Block virtual machines")

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_DEVICE_")


class IPConfig(BaseSettings):
    """IP reputation policy."""

    block_vpn: bool = Field(False, description="Block VPN connections")
    block_proxy: bool = Field(False, description="Block proxy connections")
    block_tor: bool = Field(True, description="Block Tor exit nodes")
    block_datacenter: bool = Field(False, description="Require verification for datacenter IPs")
    allowed_countries: List[str] = Field(default_factory=list, description="Allow-list, empty means all")
    blocked_countries: List[str] = Field(
        default_factory=lambda: ["KP", "IR", "SY", "CU"],
        description="ISO country codes that are always blocked",
    )
    suspicious_ip_threshold: int = Field(30, description="Reputation below which an IP is suspicious", ge=0, le=100)
    known_datacenter_asns: List[str] = Field(
        default_factory=lambda: ["AS9009", "AS16509", "AS14618", "AS15169", "AS8075"],
        description="ASNs of hosting and VPN providers",
    )
    tor_exit_nodes: List[str] = Field(default_factory=list, description="Static Tor exit node list")

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_IP_")

    @field_validator("blocked_countries", "allowed_countries")
    @classmethod
    def normalize_country_codes(cls, v):
        return [code.upper() for code in v]


class BehaviorConfig(BaseSettings):
    """Behavioral baseline policy."""

    min_sessions_for_baseline: int = Field(5, description="Samples before time anomalies apply", ge=1)
    anomaly_threshold: float = Field(2.5, description="Running score above which soft triggers count", gt=0)
    enable_ml_scoring: bool = Field(False, description="Reserved; no model is shipped")
    baseline_policy: Literal["update_always", "update_if_not_anomalous"] = Field(
        "update_always", description="Whether anomalous actions update the baseline"
    )

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_BEHAVIOR_")


class ScoringWeights(BaseSettings):
    """Component weights of the risk score. Must sum to 1.0."""

    velocity: float = Field(0.15, ge=0, le=1)
    device: float = Field(0.15, ge=0, le=1)
    ip: float = Field(0.15, ge=0, le=1)
    behavior: float = Field(0.15, ge=0, le=1)
    multi_account: float = Field(0.15, ge=0, le=1)
    bonus_abuse: float = Field(0.10, ge=0, le=1)
    trading: float = Field(0.10, ge=0, le=1)
    history: float = Field(0.05, ge=0, le=1)

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_WEIGHT_")

    @model_validator(mode="after")
    def validate_total(self):
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.6f}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {
            "velocity": self.velocity,
            "device": self.device,
            "ip": self.ip,
            "behavior": self.behavior,
            "multi_account": self.multi_account,
            "bonus_abuse": self.bonus_abuse,
            "trading": self.trading,
            "history": self.history,
        }


class AlertConfig(BaseSettings):
    """Fraud alert de-duplication."""

    cooldown_seconds: int = Field(300, description="Per user and signal type alert cooldown", ge=0)
    max_recent_alerts: int = Field(1000, ge=1)

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_ALERT_")


class StateStoreConfig(BaseSettings):
    """Backing store for per-user engine state."""

    backend: Literal["memory", "redis"] = Field("memory", description="State store backend")
    redis_url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    operation_timeout_seconds: float = Field(0.05, description="Upper bound per store call", gt=0, le=5)
    key_prefix: str = Field("tradeguard", description="Namespace for all keys")

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_STORE_")


class LoggingConfig(BaseSettings):
    """Structured logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field("INFO")
    format: Literal["json", "console"] = Field("json")
    sensitive_fields: List[str] = Field(
        default_factory=lambda: ["password", "card_number", "cvv", "ssn", "token"]
    )

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_LOG_")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class FraudDetectionSettings(BaseSettings):
    """Aggregate configuration for a FraudDetectionClient."""

    thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    velocity: VelocityConfig = Field(default_factory=VelocityConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    ip: IPConfig = Field(default_factory=IPConfig)
    behavior: BehaviorConfig = Field(default_factory=BehaviorConfig)
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    store: StateStoreConfig = Field(default_factory=StateStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    assessment_ttl_hours: int = Field(24, description="Assessment validity", ge=1)
    analyzer_timeout_seconds: float = Field(2.0, description="Per analyzer timeout in a fan-out", gt=0)
    transaction_history_limit: int = Field(500, ge=1)
    trade_history_limit: int = Field(1000, ge=1)

    model_config = SettingsConfigDict(env_prefix="TRADEGUARD_")


@lru_cache()
def get_settings() -> FraudDetectionSettings:
    """Get cached settings instance."""
    return FraudDetectionSettings()
