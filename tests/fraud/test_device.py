"""
Unit Tests for Device Fingerprint Analyzer

Tests device hashing, client classification, trust scoring and the
device-to-user associations used for multi-account linkage.
"""

import pytest

from tradeguard.config import DeviceConfig
from tradeguard.domains.fraud.device import (
    DeviceFingerprintAnalyzer,
    compute_device_hash,
    detect_bot,
    detect_emulator,
    detect_virtual_machine,
)
from tradeguard.domains.fraud.models import ActionPriority, DeviceFingerprint, RecommendedAction, SignalType
from tradeguard.utils.exceptions import DeviceFingerprintError
from tests.conftest import make_fingerprint


@pytest.mark.unit
class TestDeviceHash:
    """Test fingerprint hashing."""

    def test_stable(self):
        assert compute_device_hash(make_fingerprint()) == compute_device_hash(make_fingerprint())

    def test_length(self):
        assert len(compute_device_hash(make_fingerprint())) == 32

    def test_differs_per_device(self):
        assert compute_device_hash(make_fingerprint()) != compute_device_hash(
            make_fingerprint(screen_resolution="2560x1440")
        )

    def test_ignores_non_identity_fields(self):
        assert compute_device_hash(make_fingerprint()) == compute_device_hash(
            make_fingerprint(cookies_enabled=False, session_id="abc")
        )

    def test_empty_fingerprint_rejected(self):
        with pytest.raises(DeviceFingerprintError):
            compute_device_hash(DeviceFingerprint())


@pytest.mark.unit
class TestClientClassification:
    """Test emulator, VM and bot detection."""

    def test_regular_browser(self):
        fingerprint = make_fingerprint()

        assert not detect_emulator(fingerprint)
        assert not detect_virtual_machine(fingerprint)
        assert not detect_bot(fingerprint)

    def test_emulator_user_agent(self):
        assert detect_emulator(make_fingerprint(user_agent="Mozilla/5.0 (Linux; Android 9) BlueStacks"))

    def test_software_renderer(self):
        assert detect_emulator(make_fingerprint(webgl_renderer="Google SwiftShader"))

    def test_virtual_machine(self):
        assert detect_virtual_machine(make_fingerprint(webgl_renderer="VMware SVGA 3D"))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"webdriver": True},
            {"automation": True},
            {"headless": True},
            {"user_agent": "Mozilla/5.0 HeadlessChrome/120.0"},
            {"plugins": [], "cookies_enabled": False},
        ],
    )
    def test_bot_indicators(self, overrides):
        assert detect_bot(make_fingerprint(**overrides))


@pytest.mark.unit
class TestDeviceFingerprintAnalyzer:
    """Test device analysis against stored associations."""

    @pytest.fixture
    def analyzer(self, store):
        return DeviceFingerprintAnalyzer(store, DeviceConfig())

    @pytest.mark.asyncio
    async def test_new_device(self, analyzer):
        """Test first sighting of a clean device."""
        result = await analyzer.analyze("user-1", make_fingerprint())

        assert result.is_new_device is True
        assert result.is_known_device is False
        assert result.trust_score == pytest.approx(0.8)
        assert result.risk_score == pytest.approx(0.2)
        assert [s.type for s in result.signals] == [SignalType.NEW_DEVICE]

    @pytest.mark.asyncio
    async def test_known_device(self, analyzer):
        """Test a returning device is trusted."""
        await analyzer.analyze("user-1", make_fingerprint())
        result = await analyzer.analyze("user-1", make_fingerprint())

        assert result.is_known_device is True
        assert result.trust_score == 1.0
        assert result.signals == []
        assert result.device_count == 1

    @pytest.mark.asyncio
    async def test_webdriver_is_bot(self, analyzer):
        """Test webdriver fingerprint is a bot with zero trust and an immediate block."""
        result = await analyzer.analyze("user-1", make_fingerprint(webdriver=True))

        assert result.is_bot is True
        assert result.trust_score == 0.0
        assert result.risk_score == 1.0
        assert result.is_suspicious is True
        block = [r for r in result.recommendations if r.action == RecommendedAction.BLOCK_TRANSACTION]
        assert block and block[0].priority == ActionPriority.IMMEDIATE
        assert block[0].auto_execute is True

    @pytest.mark.asyncio
    async def test_shared_device(self, analyzer):
        """Test a device seen on another account."""
        await analyzer.analyze("user-1", make_fingerprint())
        result = await analyzer.analyze("user-2", make_fingerprint())

        assert result.is_shared_device is True
        assert result.matched_users == ["user-1"]
        assert result.is_suspicious is True
        assert result.trust_score == pytest.approx(0.5)
        assert SignalType.DEVICE_SHARING in [s.type for s in result.signals]

    @pytest.mark.asyncio
    async def test_heavily_shared_device_flagged_for_compliance(self, analyzer):
        for user in ("user-1", "user-2", "user-3"):
            await analyzer.analyze(user, make_fingerprint())

        result = await analyzer.analyze("user-4", make_fingerprint())

        assert len(result.matched_users) == 3
        assert RecommendedAction.FLAG_FOR_COMPLIANCE in [r.action for r in result.recommendations]

    @pytest.mark.asyncio
    async def test_emulator_blocked(self, analyzer):
        result = await analyzer.analyze("user-1", make_fingerprint(user_agent="Genymotion Android"))

        assert result.is_emulator is True
        assert result.trust_score == pytest.approx(0.3)
        assert result.recommendations[0].action == RecommendedAction.BLOCK_TRANSACTION

    @pytest.mark.asyncio
    async def test_missing_signals_reduce_trust(self, analyzer):
        """Test each missing required signal costs 0.1 trust."""
        fingerprint = make_fingerprint(timezone=None, language=None)

        result = await analyzer.analyze("user-1", fingerprint)

        assert sorted(result.missing_signals) == ["language", "timezone"]
        assert result.trust_score == pytest.approx(0.6)
        assert result.is_suspicious is False

    @pytest.mark.asyncio
    async def test_device_limit_warning(self, store):
        analyzer = DeviceFingerprintAnalyzer(store, DeviceConfig(max_devices_per_user=2))
        for resolution in ("800x600", "1024x768"):
            await analyzer.analyze("user-1", make_fingerprint(screen_resolution=resolution))

        result = await analyzer.analyze("user-1", make_fingerprint(screen_resolution="1280x720"))

        assert result.device_count == 3
        assert SignalType.DEVICE_ANOMALY in [s.type for s in result.signals]

    @pytest.mark.asyncio
    async def test_hash_only_sighting(self, analyzer):
        """Test a precomputed hash without client signals."""
        result = await analyzer.analyze("user-1", device_hash="abc123")

        assert result.device_id == "abc123"
        assert result.is_new_device is True
        assert result.is_bot is False
        assert await analyzer.get_device_users("abc123") == ["user-1"]

    @pytest.mark.asyncio
    async def test_requires_fingerprint_or_hash(self, analyzer):
        with pytest.raises(DeviceFingerprintError) as exc_info:
            await analyzer.analyze("user-1")

        assert exc_info.value.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_unhashable_fingerprint_carries_user(self, analyzer):
        with pytest.raises(DeviceFingerprintError) as exc_info:
            await analyzer.analyze("user-1", DeviceFingerprint())

        assert exc_info.value.details["user_id"] == "user-1"
