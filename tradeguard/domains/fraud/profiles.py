"""
User Risk Profiles

Aggregate per-user risk state, updated after every assessment: smoothed
overall score, account flags, restrictions, known devices and IPs, and
the latest velocity usage. Flags and restrictions are only ever added;
flags lapse through their own expiry.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import structlog

from ...infrastructure.state_store import StateStore, composite_key
from .models import (
    AccountFlag,
    FlagSeverity,
    RiskAssessment,
    RiskLevel,
    UserRiskProfile,
    ensure_utc,
    utcnow,
)
from .primitives import ExponentialMovingAverage, append_bounded
from .scoring import RiskScoringEngine

logger = structlog.get_logger(__name__)

PROFILE_SCORE_ALPHA = 0.3
RECENT_SCORE_HISTORY = 10
FLAG_TTL = timedelta(days=7)


class ProfileStore:
    """Loads, updates and persists UserRiskProfile records."""

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], datetime] = utcnow,
        level_for: Optional[Callable[[float], RiskLevel]] = None,
    ):
        self.store = store
        self.clock = clock
        self.level_for = level_for or RiskScoringEngine().get_risk_level
        self.ema = ExponentialMovingAverage(PROFILE_SCORE_ALPHA, seed_with_first=False)

    @staticmethod
    def _key(user_id: str) -> str:
        return composite_key("risk", "profile", user_id)

    async def get(self, user_id: str) -> Optional[UserRiskProfile]:
        stored = await self.store.get(self._key(user_id))
        return UserRiskProfile.model_validate(stored) if stored else None

    async def get_or_create(self, user_id: str) -> UserRiskProfile:
        profile = await self.get(user_id)
        if profile is None:
            profile = UserRiskProfile(user_id=user_id, created_at=self.clock())
        return profile

    async def save(self, profile: UserRiskProfile) -> None:
        await self.store.set(self._key(profile.user_id), profile.model_dump(mode="json"))

    async def update_metadata(
        self,
        user_id: str,
        account_created_at: Optional[datetime] = None,
        win_rate: Optional[float] = None,
    ) -> UserRiskProfile:
        """Record account facts supplied by the platform."""
        async with self.store.lock(self._key(user_id)):
            profile = await self.get_or_create(user_id)
            if account_created_at is not None:
                profile.account_created_at = ensure_utc(account_created_at)
            if win_rate is not None:
                profile.win_rate = win_rate
            await self.save(profile)
        return profile

    async def add_flag(self, user_id: str, flag: AccountFlag) -> UserRiskProfile:
        async with self.store.lock(self._key(user_id)):
            profile = await self.get_or_create(user_id)
            self._append_flag(profile, flag)
            await self.save(profile)
        return profile

    def _append_flag(self, profile: UserRiskProfile, flag: AccountFlag) -> None:
        now = self.clock()
        if any(existing.flag == flag.flag for existing in profile.active_flags(now)):
            return
        profile.account_flags.append(flag)
        logger.warning(
            "Account flag added",
            user_id=profile.user_id,
            flag=flag.flag,
            severity=flag.severity.value,
        )

    async def record_assessment(
        self,
        user_id: str,
        assessment: RiskAssessment,
        device_hash: Optional[str] = None,
        ip: Optional[str] = None,
        velocity_usage: Optional[Dict[str, Dict[str, Dict[str, float]]]] = None,
    ) -> UserRiskProfile:
        """
        Fold one assessment into the user's profile.

        The overall score is an exponential moving average (alpha 0.3) of
        assessment scores starting from zero, and the profile level follows
        that smoothed score rather than the latest assessment. High and critical
        assessments add a 7-day flag named after the dominant signal, and
        critical ones add their auto-executed actions as restrictions.
        """
        async with self.store.lock(self._key(user_id)):
            profile = await self.get_or_create(user_id)
            now = self.clock()

            profile.overall_risk_score = self.ema.update(profile.overall_risk_score, assessment.risk_score)
            profile.risk_level = self.level_for(profile.overall_risk_score)
            append_bounded(profile.recent_scores, assessment.risk_score, RECENT_SCORE_HISTORY)
            profile.last_assessment = now

            if assessment.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                dominant = assessment.dominant_signal()
                name = dominant.type.value if dominant else "score"
                critical = assessment.risk_level == RiskLevel.CRITICAL
                self._append_flag(
                    profile,
                    AccountFlag(
                        flag=f"high_risk_{name}",
                        severity=FlagSeverity.CRITICAL if critical else FlagSeverity.ALERT,
                        reason=f"Risk score {assessment.risk_score:.2f} ({assessment.risk_level.value})",
                        created_at=now,
                        expires_at=now + FLAG_TTL,
                    ),
                )

            if assessment.risk_level == RiskLevel.CRITICAL:
                for rec in assessment.recommendations:
                    if rec.auto_execute and rec.action.value not in profile.restrictions:
                        profile.restrictions.append(rec.action.value)

            if device_hash and device_hash not in profile.known_devices:
                profile.known_devices.append(device_hash)
            if ip and ip not in profile.known_ips:
                profile.known_ips.append(ip)

            for action_type, windows in (velocity_usage or {}).items():
                for window, usage in windows.items():
                    profile.velocity_usage[f"{action_type}_{window}"] = int(usage.get("count", 0))

            await self.save(profile)

        return profile
