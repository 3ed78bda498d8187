"""
Fraud detection domain.

Real-time risk assessment of transactions and trades: velocity limits,
device fingerprinting, IP reputation, behavioral baselines, multi-account
linkage, bonus abuse, deposit/withdrawal cycles, wash trading, a
declarative rules engine and weighted risk scoring.
"""

from .alerts import AlertManager
from .client import FraudDetectionClient
from .models import (
    ActionPriority,
    AlertType,
    BetRecord,
    BonusUsage,
    DeviceFingerprint,
    EntityType,
    FraudAlert,
    GeoLocation,
    IPIntelligence,
    RecommendedAction,
    RiskAssessment,
    RiskLevel,
    RiskRecommendation,
    RiskSignal,
    Severity,
    SignalType,
    Trade,
    TradeSide,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRiskProfile,
)
from .rules import FraudRule, FraudRulesEngine, RuleCategory, RuleCondition, RuleOperator
from .scoring import RiskScoringEngine

__all__ = [
    'FraudDetectionClient',
    'FraudRulesEngine',
    'RiskScoringEngine',
    'AlertManager',
    'FraudRule',
    'RuleCategory',
    'RuleCondition',
    'RuleOperator',
    'Transaction',
    'TransactionType',
    'TransactionStatus',
    'Trade',
    'TradeSide',
    'DeviceFingerprint',
    'GeoLocation',
    'IPIntelligence',
    'BonusUsage',
    'BetRecord',
    'RiskAssessment',
    'RiskLevel',
    'RiskSignal',
    'RiskRecommendation',
    'RecommendedAction',
    'ActionPriority',
    'Severity',
    'SignalType',
    'EntityType',
    'FraudAlert',
    'AlertType',
    'UserRiskProfile',
]
