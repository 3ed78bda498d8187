"""
Fraud Detection Client

Façade over the fraud engine. For each transaction or trade it:

1. Validates the input (the only failure surfaced to the caller)
2. Fans out to the leaf analyzers concurrently, each bounded by a timeout
3. Builds the rule context and evaluates the active rules
4. Scores the combined result into a RiskAssessment
5. Updates the user's risk profile and emits an alert when warranted

A failing or slow analyzer never aborts an analysis: its component is
reported in `degraded_analyzers` and contributes nothing to the score.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from ...config import FraudDetectionSettings, get_settings
from ...infrastructure.state_store import StateStore, composite_key, create_state_store
from ...utils.exceptions import AnalyzerError, DeviceFingerprintError, InvalidInputError
from .alerts import AlertHandler, AlertManager
from .behavior import BehaviorAction, BehaviorProfiler
from .bonus_abuse import BonusAbuseDetector
from .cycles import CycleDetector
from .device import DeviceFingerprintAnalyzer, compute_device_hash
from .fields import EvaluationContext
from .ip_reputation import IPIntelligenceProvider, IPReputationAnalyzer
from .models import (
    BetRecord,
    BonusUsage,
    DeviceFingerprint,
    EntityType,
    FraudAlert,
    IPIntelligence,
    RiskAssessment,
    Trade,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRiskProfile,
    utcnow,
)
from .multi_account import MultiAccountDetector
from .profiles import ProfileStore
from .rules import FraudRule, FraudRulesEngine
from .scoring import RiskScoringEngine, ScoringContext
from .velocity import VelocityGuard
from .wash_trading import TradeActivityMonitor, WashTradingAnalysis, WashTradingAnalyzer

M = TypeVar("M", bound=BaseModel)

WASH_TRADING_WINDOW = timedelta(hours=24)


@dataclass
class FraudDetectionStats:
    trades_analyzed: int = 0
    transactions_analyzed: int = 0
    alerts_generated: int = 0
    trades_flagged: int = 0
    transactions_flagged: int = 0
    degraded_analyses: int = 0
    total_latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        analyzed = self.trades_analyzed + self.transactions_analyzed
        return {
            "trades_analyzed": self.trades_analyzed,
            "transactions_analyzed": self.transactions_analyzed,
            "alerts_generated": self.alerts_generated,
            "trades_flagged": self.trades_flagged,
            "transactions_flagged": self.transactions_flagged,
            "degraded_analyses": self.degraded_analyses,
            "average_latency_ms": self.total_latency_ms / analyzed if analyzed else 0.0,
        }


class FraudDetectionClient:
    """
    Real-time fraud detection for transactions and trades.

    Collaborators (state store, logger, IP intelligence provider, alert
    handler, clock) are injected; every one has a working default.
    """

    def __init__(
        self,
        settings: Optional[FraudDetectionSettings] = None,
        store: Optional[StateStore] = None,
        logger=None,
        ip_provider: Optional[IPIntelligenceProvider] = None,
        alert_handler: Optional[AlertHandler] = None,
        rules: Optional[Iterable[Union[FraudRule, Dict[str, Any]]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = logger or structlog.get_logger(__name__)
        self.store = store or create_state_store(self.settings.store)

        self.velocity_guard = VelocityGuard(self.store, self.settings.velocity, clock=clock)
        self.device_analyzer = DeviceFingerprintAnalyzer(self.store, self.settings.device)
        self.ip_analyzer = IPReputationAnalyzer(self.store, self.settings.ip, provider=ip_provider, clock=clock)
        self.behavior_profiler = BehaviorProfiler(self.store, self.settings.behavior)
        self.multi_account_detector = MultiAccountDetector(self.store)
        self.bonus_detector = BonusAbuseDetector()
        self.cycle_detector = CycleDetector()
        self.wash_trading_analyzer = WashTradingAnalyzer(self.settings.thresholds)
        self.trade_monitor = TradeActivityMonitor(self.settings.thresholds)

        self.rules_engine = FraudRulesEngine(rules, clock=clock)
        self.scoring_engine = RiskScoringEngine(
            self.settings.weights,
            self.settings.thresholds,
            assessment_ttl_hours=self.settings.assessment_ttl_hours,
            clock=clock,
        )
        self.profiles = ProfileStore(self.store, clock=clock, level_for=self.scoring_engine.get_risk_level)
        self.alerts = AlertManager(self.store, self.settings.alerts, handler=alert_handler, clock=clock)

        self._stats = FraudDetectionStats()

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(model: Type[M], value: Any, name: str) -> Optional[M]:
        if value is None or isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ValidationError as e:
            errors = e.errors(include_url=False, include_context=False, include_input=False)
            raise InvalidInputError(
                f"Invalid {name}: {errors[0]['msg']}",
                field=name,
                details={"errors": errors},
            ) from e

    def _parse_many(self, model: Type[M], values: Optional[Sequence[Any]], name: str) -> List[M]:
        return [self._parse(model, value, name) for value in values or []]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def _history_key(kind: str, user_id: str) -> str:
        return composite_key("history", kind, user_id)

    async def _load_history(self, kind: str, model: Type[M], user_id: str) -> List[M]:
        stored = await self.store.get(self._history_key(kind, user_id)) or []
        return [model.model_validate(item) for item in stored]

    async def _append_history(self, kind: str, model: Type[M], item: M, limit: int) -> List[M]:
        """Append under the user's history lock and return the prior entries."""
        key = self._history_key(kind, item.user_id)
        async with self.store.lock(key):
            stored = await self.store.get(key) or []
            previous = [model.model_validate(entry) for entry in stored]
            stored.append(item.model_dump(mode="json"))
            await self.store.set(key, stored[-limit:])
        return previous

    async def get_transaction_history(self, user_id: str) -> List[Transaction]:
        return await self._load_history("transactions", Transaction, user_id)

    async def get_trade_history(self, user_id: str) -> List[Trade]:
        return await self._load_history("trades", Trade, user_id)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _bounded(self, coro: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(coro, timeout=self.settings.analyzer_timeout_seconds)

    async def _run_analyzers(self, user_id: str, tasks: Dict[str, Awaitable[Any]]) -> Tuple[Dict[str, Any], List[str]]:
        """
        Run analyzers concurrently and join.

        Returns:
            (results by analyzer name, names of analyzers that failed)
        """
        names = list(tasks)
        outcomes = await asyncio.gather(*(self._bounded(tasks[name]) for name in names), return_exceptions=True)

        results = {}
        degraded = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, Exception):
                if isinstance(outcome, asyncio.TimeoutError):
                    message = f"timed out after {self.settings.analyzer_timeout_seconds}s"
                else:
                    message = str(outcome) or type(outcome).__name__
                error = AnalyzerError(name, message, cause=outcome)
                degraded.append(name)
                self.logger.warning("Analyzer degraded", user_id=user_id, **error.to_dict())
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[name] = outcome
        return results, degraded

    @staticmethod
    async def _call(func: Callable[..., Any], *args: Any) -> Any:
        """Run a synchronous detector as one fan-out task."""
        return func(*args)

    async def _velocity_usage(self, user_id: str, skip: Optional[str]) -> Dict[str, Dict[str, Dict[str, float]]]:
        usage = {}
        for action_type in self.settings.velocity.action_types:
            if action_type != skip:
                usage[action_type] = await self.velocity_guard.usage(user_id, action_type)
        return usage

    def _device_hash(self, user_id: str, fingerprint: Optional[DeviceFingerprint], device_id: Optional[str]):
        if fingerprint is None:
            return device_id
        try:
            return compute_device_hash(fingerprint)
        except DeviceFingerprintError:
            # The device analyzer reports the failure
            return device_id

    def _device_task(self, user_id: str, fingerprint: Optional[DeviceFingerprint], device_id: Optional[str]):
        if fingerprint is None and not device_id:
            return None
        return self.device_analyzer.analyze(user_id, fingerprint=fingerprint, device_hash=device_id)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze_transaction(
        self,
        transaction: Union[Transaction, Dict[str, Any]],
        device_fingerprint: Optional[Union[DeviceFingerprint, Dict[str, Any]]] = None,
        ip: Optional[str] = None,
        ip_data: Optional[Union[IPIntelligence, Dict[str, Any]]] = None,
        bonus_history: Optional[Sequence[Union[BonusUsage, Dict[str, Any]]]] = None,
        betting_history: Optional[Sequence[Union[BetRecord, Dict[str, Any]]]] = None,
        referral_score: Optional[float] = None,
    ) -> RiskAssessment:
        """
        Assess a deposit, withdrawal, bet or other monetized transaction.

        Args:
            transaction: Transaction model or dict
            device_fingerprint: Raw client signals, if collected
            ip: Client IP, defaults to transaction.ip
            ip_data: Pre-resolved IP intelligence
            bonus_history: The user's bonus claims, for bonus abuse checks
            betting_history: The user's bets, for bonus abuse checks
            referral_score: Self-referral likelihood from the referral system

        Returns:
            RiskAssessment

        Raises:
            InvalidInputError: If any input fails validation
        """
        started = time.perf_counter()
        tx = self._parse(Transaction, transaction, "transaction")
        fingerprint = self._parse(DeviceFingerprint, device_fingerprint, "device_fingerprint")
        intelligence = self._parse(IPIntelligence, ip_data, "ip_data")
        bonuses = self._parse_many(BonusUsage, bonus_history, "bonus_history")
        bets = self._parse_many(BetRecord, betting_history, "betting_history")
        ip = ip or tx.ip
        user_id = tx.user_id

        previous = await self._append_history(
            "transactions", Transaction, tx, self.settings.transaction_history_limit
        )
        history = previous + [tx]
        device_hash = self._device_hash(user_id, fingerprint, tx.device_id)

        action_type = tx.type.value
        velocity_action = action_type if self.settings.velocity.limits_for(action_type) else None

        tasks: Dict[str, Awaitable[Any]] = {}
        if velocity_action:
            tasks["velocity"] = self.velocity_guard.check(user_id, velocity_action, tx.amount)
        tasks["velocity_usage"] = self._velocity_usage(user_id, velocity_action)
        device_task = self._device_task(user_id, fingerprint, tx.device_id)
        if device_task is not None:
            tasks["device"] = device_task
        if ip:
            tasks["ip"] = self.ip_analyzer.analyze(user_id, ip, intelligence, at=tx.timestamp)
        tasks["behavior"] = self.behavior_profiler.analyze(
            user_id, BehaviorAction(type=action_type, timestamp=tx.timestamp, amount=tx.amount)
        )
        tasks["multi_account"] = self.multi_account_detector.detect(
            user_id, device_hash=device_hash, ip=ip, payment_method_id=tx.payment_method_id
        )
        if bonuses or bets:
            tasks["bonus"] = self._call(self.bonus_detector.detect, user_id, bonuses, bets)
        tasks["cycles"] = self._call(self.cycle_detector.detect, user_id, history)

        results, degraded = await self._run_analyzers(user_id, tasks)

        if tx.payment_method_id:
            await self.multi_account_detector.record_payment_method(user_id, tx.payment_method_id)

        velocity_usage = dict(results.get("velocity_usage", {}))
        if "velocity" in results:
            velocity_usage[velocity_action] = results["velocity"].usage

        cycles = results.get("cycles")
        context = EvaluationContext(
            user_id=user_id,
            transaction=tx,
            velocity_usage=velocity_usage,
            device=results.get("device"),
            ip=results.get("ip"),
            behavior=results.get("behavior"),
            multi_account=results.get("multi_account"),
            bonus=results.get("bonus"),
            cycles=cycles,
            time_since_last_deposit=self._time_since_last_deposit(tx, previous),
            referral_score=referral_score,
        )

        assessment = await self._assess(
            context,
            entity_id=tx.id,
            entity_type=EntityType.TRANSACTION,
            velocity=results.get("velocity"),
            extra_signals=list(cycles.signals) if cycles else [],
            extra_recommendations=list(cycles.recommendations) if cycles else [],
            degraded=degraded,
            device_hash=device_hash,
            ip=ip,
        )

        flagged = assessment.risk_score >= self.settings.thresholds.medium_risk_score
        self._stats.transactions_analyzed += 1
        if flagged:
            self._stats.transactions_flagged += 1
        self._record_latency(started, degraded)

        self.logger.info(
            "Transaction analyzed",
            transaction_id=tx.id,
            user_id=user_id,
            transaction_type=action_type,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level.value,
            degraded_analyzers=degraded,
        )
        return assessment

    async def analyze_trade(
        self,
        trade: Union[Trade, Dict[str, Any]],
        device_fingerprint: Optional[Union[DeviceFingerprint, Dict[str, Any]]] = None,
        ip_data: Optional[Union[IPIntelligence, Dict[str, Any]]] = None,
        related_users: Optional[Sequence[str]] = None,
    ) -> RiskAssessment:
        """
        Assess one trade.

        Runs the realtime trade checks against the user's recent trades and a
        wash trading pass over the last 24 hours, including trades of any
        related users supplied by the caller.

        Raises:
            InvalidInputError: If any input fails validation
        """
        started = time.perf_counter()
        trade = self._parse(Trade, trade, "trade")
        fingerprint = self._parse(DeviceFingerprint, device_fingerprint, "device_fingerprint")
        intelligence = self._parse(IPIntelligence, ip_data, "ip_data")
        user_id = trade.user_id
        related_users = [u for u in related_users or [] if u != user_id]

        previous = await self._append_history("trades", Trade, trade, self.settings.trade_history_limit)
        device_hash = self._device_hash(user_id, fingerprint, trade.device_id)

        tasks: Dict[str, Awaitable[Any]] = {
            "velocity": self.velocity_guard.check(user_id, "trade", trade.total_value),
            "velocity_usage": self._velocity_usage(user_id, "trade"),
        }
        device_task = self._device_task(user_id, fingerprint, trade.device_id)
        if device_task is not None:
            tasks["device"] = device_task
        if trade.ip:
            tasks["ip"] = self.ip_analyzer.analyze(user_id, trade.ip, intelligence, at=trade.timestamp)
        tasks["behavior"] = self.behavior_profiler.analyze(
            user_id,
            BehaviorAction(
                type="trade",
                timestamp=trade.timestamp,
                amount=trade.total_value,
                market_id=trade.market_id,
            ),
        )
        tasks["multi_account"] = self.multi_account_detector.detect(user_id, device_hash=device_hash, ip=trade.ip)
        tasks["trade_activity"] = self._call(self.trade_monitor.check, trade, previous)
        tasks["wash_trading"] = self.analyze_wash_trading(
            user_id, trades=previous + [trade], related_users=related_users, until=trade.timestamp
        )

        results, degraded = await self._run_analyzers(user_id, tasks)

        velocity_usage = dict(results.get("velocity_usage", {}))
        if "velocity" in results:
            velocity_usage["trade"] = results["velocity"].usage

        activity = results.get("trade_activity")
        wash = results.get("wash_trading")
        context = EvaluationContext(
            user_id=user_id,
            trade=trade,
            velocity_usage=velocity_usage,
            device=results.get("device"),
            ip=results.get("ip"),
            behavior=results.get("behavior"),
            multi_account=results.get("multi_account"),
            trade_activity=activity,
            wash_trading=wash,
        )

        trading_signals = (list(activity.signals) if activity else []) + (list(wash.signals) if wash else [])
        assessment = await self._assess(
            context,
            entity_id=trade.id,
            entity_type=EntityType.TRADE,
            velocity=results.get("velocity"),
            trading_signals=trading_signals,
            wash_trading=wash,
            degraded=degraded,
            device_hash=device_hash,
            ip=trade.ip,
        )

        self._stats.trades_analyzed += 1
        if assessment.risk_score >= self.settings.thresholds.medium_risk_score:
            self._stats.trades_flagged += 1
        self._record_latency(started, degraded)

        self.logger.info(
            "Trade analyzed",
            trade_id=trade.id,
            user_id=user_id,
            market_id=trade.market_id,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level.value,
            degraded_analyzers=degraded,
        )
        return assessment

    async def analyze_wash_trading(
        self,
        user_id: str,
        trades: Optional[Sequence[Union[Trade, Dict[str, Any]]]] = None,
        related_users: Optional[Sequence[str]] = None,
        until: Optional[datetime] = None,
    ) -> WashTradingAnalysis:
        """
        Wash trading analysis over the trailing 24 hours.

        Uses the stored trade history when no trades are given. Trades of
        related users are always taken from their stored history.
        """
        until = until or self.clock()
        since = until - WASH_TRADING_WINDOW

        if trades is None:
            user_trades = await self.get_trade_history(user_id)
        else:
            user_trades = self._parse_many(Trade, trades, "trades")

        related_users = [u for u in related_users or [] if u != user_id]
        related_trades = []
        for related_id in related_users:
            related_trades.extend(await self.get_trade_history(related_id))

        window = [t for t in user_trades + related_trades if since <= t.timestamp <= until]
        return self.wash_trading_analyzer.analyze(user_id, window, related_users)

    async def _assess(
        self,
        context: EvaluationContext,
        entity_id: str,
        entity_type: EntityType,
        velocity=None,
        trading_signals=None,
        wash_trading=None,
        extra_signals=None,
        extra_recommendations=None,
        degraded: Optional[List[str]] = None,
        device_hash: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RiskAssessment:
        """Rules, scoring, profile update and alerting for one analysis."""
        user_id = context.user_id
        triggered = self.rules_engine.evaluate(context)
        for result in triggered:
            self.logger.info("Fraud rule triggered", rule_id=result.rule_id, user_id=user_id, entity_id=entity_id)

        profile = await self.profiles.get_or_create(user_id)
        scoring_context = ScoringContext(
            entity_id=entity_id,
            entity_type=entity_type,
            user_id=user_id,
            velocity=velocity,
            device=context.device,
            ip=context.ip,
            behavior=context.behavior,
            multi_account=context.multi_account,
            bonus=context.bonus,
            wash_trading=wash_trading,
            trading_signals=list(trading_signals or []),
            profile=profile,
            extra_signals=list(extra_signals or []) + self.rules_engine.rules_to_signals(triggered),
            extra_recommendations=list(extra_recommendations or [])
            + self.rules_engine.actions_to_recommendations(triggered),
            degraded_analyzers=list(degraded or []),
        )
        assessment = self.scoring_engine.score(scoring_context)

        await self.profiles.record_assessment(
            user_id,
            assessment,
            device_hash=device_hash,
            ip=ip,
            velocity_usage=context.velocity_usage,
        )

        alert = await self.alerts.process(assessment)
        if alert is not None:
            self._stats.alerts_generated += 1

        return assessment

    @staticmethod
    def _time_since_last_deposit(tx: Transaction, previous: Sequence[Transaction]) -> Optional[float]:
        deposits = [
            t.timestamp
            for t in previous
            if t.type == TransactionType.DEPOSIT
            and t.status == TransactionStatus.COMPLETED
            and t.timestamp <= tx.timestamp
        ]
        if not deposits:
            return None
        return (tx.timestamp - max(deposits)).total_seconds()

    def _record_latency(self, started: float, degraded: List[str]) -> None:
        self._stats.total_latency_ms += (time.perf_counter() - started) * 1000
        if degraded:
            self._stats.degraded_analyses += 1

    # ------------------------------------------------------------------
    # Direct analyzer access
    # ------------------------------------------------------------------

    async def check_velocity(self, user_id: str, action_type: str, amount: float = 0.0):
        """Check and record one action against the velocity limits."""
        return await self.velocity_guard.check(user_id, action_type, amount)

    async def analyze_device(self, user_id: str, fingerprint: Union[DeviceFingerprint, Dict[str, Any]]):
        return await self.device_analyzer.analyze(
            user_id, fingerprint=self._parse(DeviceFingerprint, fingerprint, "device_fingerprint")
        )

    async def analyze_ip(
        self,
        user_id: str,
        ip: str,
        ip_data: Optional[Union[IPIntelligence, Dict[str, Any]]] = None,
    ):
        return await self.ip_analyzer.analyze(user_id, ip, self._parse(IPIntelligence, ip_data, "ip_data"))

    # ------------------------------------------------------------------
    # Profiles, alerts, engines
    # ------------------------------------------------------------------

    async def get_user_risk_profile(self, user_id: str) -> Optional[UserRiskProfile]:
        return await self.profiles.get(user_id)

    async def update_user_metadata(
        self,
        user_id: str,
        account_created_at: Optional[datetime] = None,
        win_rate: Optional[float] = None,
    ) -> UserRiskProfile:
        return await self.profiles.update_metadata(user_id, account_created_at=account_created_at, win_rate=win_rate)

    def get_recent_alerts(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[FraudAlert]:
        return self.alerts.get_recent_alerts(user_id=user_id, limit=limit)

    def get_rules_engine(self) -> FraudRulesEngine:
        return self.rules_engine

    def get_scoring_engine(self) -> RiskScoringEngine:
        return self.scoring_engine

    # ------------------------------------------------------------------
    # Stats and lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats = FraudDetectionStats()

    async def ping(self) -> bool:
        return await self.store.ping()

    async def close(self) -> None:
        await self.store.close()
