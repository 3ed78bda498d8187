"""
Device Fingerprint Analyzer

Turns raw client signals into a stable device hash, classifies the device
(new, shared, emulator, virtual machine, bot) and derives a trust score.
Device->users and user->devices associations are append-only.
"""

import hashlib
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ...config import DeviceConfig
from ...infrastructure.state_store import StateStore, composite_key
from ...utils.exceptions import DeviceFingerprintError
from .models import (
    ActionPriority,
    DeviceFingerprint,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
)
from .primitives import clamp

logger = structlog.get_logger(__name__)

HASH_LENGTH = 32

# Order matters: it defines the hash input
HASH_FIELDS = (
    "user_agent",
    "platform",
    "screen_resolution",
    "timezone",
    "language",
    "hardware_concurrency",
    "canvas_hash",
    "webgl_hash",
)

KNOWN_EMULATOR_PATTERNS = (
    "bluestacks",
    "nox",
    "memu",
    "ldplayer",
    "genymotion",
    "andy",
    "droid4x",
    "windroy",
)

SOFTWARE_RENDERERS = ("swiftshader", "llvmpipe")

VM_INDICATORS = ("vmware", "virtualbox", "hyper-v", "parallels", "qemu", "xen", "kvm")

KNOWN_BOT_PATTERNS = ("headless", "phantomjs", "selenium", "webdriver", "puppeteer", "playwright")

# Trust deductions
NEW_DEVICE_PENALTY = 0.2
SHARED_DEVICE_PENALTY = 0.3
EMULATOR_PENALTY = 0.5
VM_PENALTY = 0.3
MISSING_SIGNAL_PENALTY = 0.1


@dataclass(frozen=True)
class DeviceAnalysisResult(SerializableMixin):
    device_id: str
    is_new_device: bool
    is_known_device: bool
    is_shared_device: bool
    is_suspicious: bool
    is_emulator: bool
    is_virtual_machine: bool
    is_bot: bool
    trust_score: float
    risk_score: float
    matched_users: List[str] = field(default_factory=list)
    missing_signals: List[str] = field(default_factory=list)
    device_count: int = 0
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)


def compute_device_hash(fingerprint: DeviceFingerprint) -> str:
    """
    Stable digest over the reported signals.

    Missing or empty fields are omitted, not zero-filled, so the hash
    depends on which signals a client reports.
    """
    parts = [str(getattr(fingerprint, name)) for name in HASH_FIELDS if getattr(fingerprint, name)]
    if not parts:
        raise DeviceFingerprintError("Fingerprint carries no hashable signal")
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:HASH_LENGTH]


def detect_emulator(fingerprint: DeviceFingerprint) -> bool:
    user_agent = (fingerprint.user_agent or "").lower()
    if any(pattern in user_agent for pattern in KNOWN_EMULATOR_PATTERNS):
        return True
    renderer = (fingerprint.webgl_renderer or "").lower()
    return any(name in renderer for name in SOFTWARE_RENDERERS)


def detect_virtual_machine(fingerprint: DeviceFingerprint) -> bool:
    renderer = (fingerprint.webgl_renderer or "").lower()
    vendor = (fingerprint.webgl_vendor or "").lower()
    return any(indicator in renderer or indicator in vendor for indicator in VM_INDICATORS)


def detect_bot(fingerprint: DeviceFingerprint) -> bool:
    if fingerprint.webdriver or fingerprint.automation or fingerprint.headless:
        return True
    user_agent = (fingerprint.user_agent or "").lower()
    if any(pattern in user_agent for pattern in KNOWN_BOT_PATTERNS):
        return True
    # Real browsers report plugins or accept cookies
    return fingerprint.plugins is not None and len(fingerprint.plugins) == 0 and not fingerprint.cookies_enabled


class DeviceFingerprintAnalyzer:
    """Device identity and trust."""

    def __init__(self, store: StateStore, config: Optional[DeviceConfig] = None):
        self.store = store
        self.config = config or DeviceConfig()

    @staticmethod
    def _user_devices_key(user_id: str) -> str:
        return composite_key("device", "by_user", user_id)

    @staticmethod
    def device_users_key(device_hash: str) -> str:
        return composite_key("device", "users", device_hash)

    def missing_signals(self, fingerprint: DeviceFingerprint) -> List[str]:
        return [name for name in self.config.required_signals if not getattr(fingerprint, name, None)]

    async def get_user_devices(self, user_id: str) -> List[str]:
        return list(await self.store.get(self._user_devices_key(user_id)) or [])

    async def get_device_users(self, device_hash: str) -> List[str]:
        return sorted(await self.store.smembers(self.device_users_key(device_hash)))

    async def analyze(
        self,
        user_id: str,
        fingerprint: Optional[DeviceFingerprint] = None,
        device_hash: Optional[str] = None,
    ) -> DeviceAnalysisResult:
        """
        Analyze a device sighting for a user.

        Either a raw fingerprint or a precomputed device hash is required.
        With only a hash, the device can still be recognized as new or
        shared, but no client-side classification is possible.
        """
        if fingerprint is not None:
            try:
                device_hash = compute_device_hash(fingerprint)
            except DeviceFingerprintError as e:
                raise DeviceFingerprintError(e.message, user_id=user_id) from e
        elif not device_hash:
            raise DeviceFingerprintError("Either a fingerprint or a device hash is required", user_id=user_id)

        signals = []
        recommendations = []

        async with self.store.lock(composite_key("device", user_id)):
            user_devices = await self.get_user_devices(user_id)
            is_new_device = device_hash not in user_devices

            matched_users = [u for u in await self.get_device_users(device_hash) if u != user_id]
            is_shared_device = len(matched_users) > 0

            if is_new_device:
                user_devices.append(device_hash)
                await self.store.set(self._user_devices_key(user_id), user_devices)
            await self.store.sadd(self.device_users_key(device_hash), user_id)

        is_emulator = fingerprint is not None and detect_emulator(fingerprint)
        is_virtual_machine = fingerprint is not None and detect_virtual_machine(fingerprint)
        is_bot = fingerprint is not None and detect_bot(fingerprint)
        missing = self.missing_signals(fingerprint) if fingerprint is not None else []

        trust = 1.0
        is_suspicious = False

        if is_new_device:
            trust -= NEW_DEVICE_PENALTY
            signals.append(
                RiskSignal(
                    type=SignalType.NEW_DEVICE,
                    severity=Severity.LOW,
                    description="New device detected",
                    evidence={"device_hash": device_hash},
                    confidence=0.9,
                )
            )

        if is_shared_device:
            trust -= SHARED_DEVICE_PENALTY
            is_suspicious = True
            signals.append(
                RiskSignal(
                    type=SignalType.DEVICE_SHARING,
                    severity=Severity.MEDIUM,
                    description=f"Device shared with {len(matched_users)} other account(s)",
                    evidence={"device_hash": device_hash, "matched_users": matched_users},
                    confidence=0.85,
                )
            )
            if len(matched_users) >= self.config.suspicious_device_sharing:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.FLAG_FOR_COMPLIANCE,
                        priority=ActionPriority.HIGH,
                        reason="Device sharing detected - potential multi-accounting",
                    )
                )

        if is_emulator:
            trust -= EMULATOR_PENALTY
            is_suspicious = True
            signals.append(
                RiskSignal(
                    type=SignalType.EMULATOR_DETECTED,
                    severity=Severity.HIGH,
                    description="Emulator detected",
                    evidence={"user_agent": fingerprint.user_agent, "webgl_renderer": fingerprint.webgl_renderer},
                    confidence=0.9,
                )
            )
            if self.config.block_known_emulators:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.BLOCK_TRANSACTION,
                        priority=ActionPriority.IMMEDIATE,
                        reason="Emulator use not allowed",
                        auto_execute=True,
                    )
                )

        if is_virtual_machine:
            trust -= VM_PENALTY
            signals.append(
                RiskSignal(
                    type=SignalType.DEVICE_ANOMALY,
                    severity=Severity.MEDIUM,
                    description="Virtual machine detected",
                    evidence={"webgl_renderer": fingerprint.webgl_renderer, "webgl_vendor": fingerprint.webgl_vendor},
                    confidence=0.85,
                )
            )
            if self.config.block_known_vms:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.BLOCK_TRANSACTION,
                        priority=ActionPriority.IMMEDIATE,
                        reason="Virtual machine use not allowed",
                        auto_execute=True,
                    )
                )

        if missing:
            trust -= MISSING_SIGNAL_PENALTY * len(missing)
            is_suspicious = is_suspicious or len(missing) >= 3

        if is_bot:
            trust = 0.0
            is_suspicious = True
            signals.append(
                RiskSignal(
                    type=SignalType.BOT_DETECTED,
                    severity=Severity.HIGH,
                    description="Automated bot detected",
                    evidence={
                        "webdriver": fingerprint.webdriver,
                        "automation": fingerprint.automation,
                        "headless": fingerprint.headless,
                    },
                    confidence=0.95,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRANSACTION,
                    priority=ActionPriority.IMMEDIATE,
                    reason="Bot activity detected",
                    auto_execute=True,
                )
            )

        if is_new_device and len(user_devices) > self.config.max_devices_per_user:
            logger.warning(
                "User exceeds device limit",
                user_id=user_id,
                device_count=len(user_devices),
                max_devices=self.config.max_devices_per_user,
            )
            signals.append(
                RiskSignal(
                    type=SignalType.DEVICE_ANOMALY,
                    severity=Severity.MEDIUM,
                    description=f"User has {len(user_devices)} devices (max: {self.config.max_devices_per_user})",
                    evidence={"device_count": len(user_devices)},
                    confidence=0.8,
                )
            )

        trust = clamp(trust)
        logger.debug(
            "Device analyzed",
            user_id=user_id,
            device_hash=device_hash,
            trust_score=trust,
            is_bot=is_bot,
            is_shared=is_shared_device,
        )

        return DeviceAnalysisResult(
            device_id=device_hash,
            is_new_device=is_new_device,
            is_known_device=not is_new_device,
            is_shared_device=is_shared_device,
            is_suspicious=is_suspicious,
            is_emulator=is_emulator,
            is_virtual_machine=is_virtual_machine,
            is_bot=is_bot,
            trust_score=trust,
            risk_score=clamp(1.0 - trust),
            matched_users=matched_users,
            missing_signals=missing,
            device_count=len(user_devices),
            signals=signals,
            recommendations=recommendations,
        )
