"""
Unit Tests for Multi-Account Detector

Tests account linkage through shared devices, IPs and payment methods.
"""

import pytest

from tradeguard.domains.fraud.device import DeviceFingerprintAnalyzer
from tradeguard.domains.fraud.ip_reputation import IPReputationAnalyzer
from tradeguard.domains.fraud.models import RecommendedAction, Severity, SignalType
from tradeguard.domains.fraud.multi_account import MultiAccountDetector

DEVICE = "device-hash-1"
IP = "203.0.113.5"


@pytest.mark.unit
class TestMultiAccountDetector:
    """Test linked account detection."""

    @pytest.fixture
    def detector(self, store):
        return MultiAccountDetector(store)

    async def seen_on_device(self, store, *users):
        await store.sadd(DeviceFingerprintAnalyzer.device_users_key(DEVICE), *users)

    async def seen_on_ip(self, store, *users):
        await store.sadd(IPReputationAnalyzer.ip_users_key(IP), *users)

    @pytest.mark.asyncio
    async def test_no_links(self, detector):
        result = await detector.detect("user-1", device_hash=DEVICE, ip=IP)

        assert result.is_multi_account is False
        assert result.confidence == 0.0
        assert result.risk_score == 0.0
        assert result.link_counts == {"same_device": 0, "same_ip": 0}
        assert result.signals == []

    @pytest.mark.asyncio
    async def test_same_device(self, detector, store):
        """Test one other account on the same device."""
        await self.seen_on_device(store, "user-1", "user-2")

        result = await detector.detect("user-1", device_hash=DEVICE)

        assert result.is_multi_account is True
        assert [a.user_id for a in result.linked_accounts] == ["user-2"]
        assert result.link_types == ["same_device"]
        assert result.confidence == pytest.approx(0.9)
        assert result.risk_score == pytest.approx(0.82)
        assert result.signals[0].type == SignalType.MULTI_ACCOUNT
        assert result.signals[0].severity == Severity.HIGH
        assert result.recommendations[0].action == RecommendedAction.FLAG_FOR_COMPLIANCE

    @pytest.mark.asyncio
    async def test_same_ip_only(self, detector, store):
        """Test a weak IP link stays below compliance."""
        await self.seen_on_ip(store, "user-2")

        result = await detector.detect("user-1", ip=IP)

        assert result.confidence == pytest.approx(0.6)
        assert result.signals[0].severity == Severity.MEDIUM
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_strongest_link_wins(self, detector, store):
        """Test an account linked twice counts once, through its strongest link."""
        await self.seen_on_device(store, "user-2")
        await self.seen_on_ip(store, "user-2")

        result = await detector.detect("user-1", device_hash=DEVICE, ip=IP)

        assert len(result.linked_accounts) == 1
        assert result.linked_accounts[0].link_type == "same_device"
        assert result.link_counts == {"same_device": 1, "same_ip": 1}

    @pytest.mark.asyncio
    async def test_multiple_link_types_raise_confidence(self, detector, store):
        await self.seen_on_device(store, "user-2")
        await self.seen_on_ip(store, "user-3")

        result = await detector.detect("user-1", device_hash=DEVICE, ip=IP)

        assert result.link_types == ["same_device", "same_ip"]
        assert result.confidence == pytest.approx((0.9 + 0.6) / 2 + 0.1)

    @pytest.mark.asyncio
    async def test_payment_method_linkage(self, detector):
        """Test accounts sharing a payment method."""
        await detector.record_payment_method("user-2", "card-42")

        result = await detector.detect("user-1", payment_method_id="card-42")

        assert result.linked_accounts[0].link_type == "same_payment_method"
        assert result.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_own_records_are_ignored(self, detector, store):
        await detector.record_payment_method("user-1", "card-42")
        await self.seen_on_device(store, "user-1")

        result = await detector.detect("user-1", device_hash=DEVICE, payment_method_id="card-42")

        assert result.is_multi_account is False
