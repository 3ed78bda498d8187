"""
TradeGuard - real-time fraud and risk detection for trading and betting platforms.
"""

from .config import FraudDetectionSettings, get_settings
from .domains.fraud import FraudDetectionClient, RiskAssessment, RiskLevel, Trade, Transaction
from .utils.exceptions import FraudDetectionError, InvalidInputError
from .utils.logger import configure_logging, get_logger

__version__ = "1.0.0"

__all__ = [
    'FraudDetectionClient',
    'FraudDetectionSettings',
    'get_settings',
    'RiskAssessment',
    'RiskLevel',
    'Trade',
    'Transaction',
    'FraudDetectionError',
    'InvalidInputError',
    'configure_logging',
    'get_logger',
]
