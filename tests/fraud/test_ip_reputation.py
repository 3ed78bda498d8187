"""
Unit Tests for IP Reputation Analyzer

Tests connection classification, reputation scoring, country policy and
impossible travel between consecutive connections.
"""

from datetime import timedelta

import pytest

from tradeguard.config import IPConfig
from tradeguard.domains.fraud.ip_reputation import IPIntelligenceProvider, IPReputationAnalyzer
from tradeguard.domains.fraud.models import (
    GeoLocation,
    IPIntelligence,
    RecommendedAction,
    SignalType,
    ThreatLevel,
)
from tradeguard.utils.exceptions import IPAnalysisError
from tests.conftest import BASE_TIME

IP = "203.0.113.5"


def located(latitude=0.0, longitude=0.0, country_code="FR", asn="AS3215", **flags):
    location = GeoLocation(
        country="Country " + country_code,
        country_code=country_code,
        latitude=latitude,
        longitude=longitude,
        asn=asn,
    )
    return IPIntelligence(location=location, **flags)


class StaticProvider(IPIntelligenceProvider):
    def __init__(self, intelligence):
        self.intelligence = intelligence
        self.lookups = []

    async def lookup(self, ip):
        self.lookups.append(ip)
        return self.intelligence


@pytest.mark.unit
class TestIPReputationAnalyzer:
    """Test IP analysis."""

    @pytest.fixture
    def analyzer(self, store, clock):
        return IPReputationAnalyzer(store, IPConfig(), clock=clock)

    @pytest.mark.asyncio
    async def test_clean_residential_ip(self, analyzer):
        """Test an unremarkable connection."""
        result = await analyzer.analyze("user-1", IP)

        assert result.is_residential is True
        assert result.reputation_score == 100
        assert result.threat_level == ThreatLevel.NONE
        assert result.risk_score == 0.0
        assert result.signals == []
        assert result.geo_velocity is None

    @pytest.mark.asyncio
    async def test_tor_exit_node(self, analyzer):
        """Test Tor connections are critical and blocked."""
        result = await analyzer.analyze("user-1", IP, IPIntelligence(is_tor=True))

        assert result.is_tor is True
        assert result.reputation_score == 40
        assert result.threat_level == ThreatLevel.CRITICAL
        assert result.abuse_confidence == 0.9
        assert result.risk_score == pytest.approx(0.6)
        assert result.recommendations[0].action == RecommendedAction.BLOCK_TRANSACTION

    @pytest.mark.asyncio
    async def test_static_tor_exit_list(self, store, clock):
        analyzer = IPReputationAnalyzer(store, IPConfig(tor_exit_nodes=[IP]), clock=clock)

        result = await analyzer.analyze("user-1", IP)

        assert result.is_tor is True

    @pytest.mark.asyncio
    async def test_datacenter_asn(self, analyzer):
        """Test hosting ASNs are treated as datacenter VPN egress."""
        result = await analyzer.analyze("user-1", IP, located(asn="AS16509"))

        assert result.is_datacenter is True
        assert result.is_vpn is True
        assert result.is_residential is False
        assert result.reputation_score == 55
        assert result.threat_level == ThreatLevel.LOW
        types = [s.type for s in result.signals]
        assert SignalType.VPN_DETECTED in types
        assert SignalType.DATACENTER_IP in types

    @pytest.mark.asyncio
    async def test_proxy(self, analyzer):
        result = await analyzer.analyze("user-1", IP, IPIntelligence(is_proxy=True))

        assert result.is_proxy is True
        assert result.reputation_score == 70
        assert result.threat_level == ThreatLevel.MEDIUM
        assert result.abuse_confidence == 0.5

    @pytest.mark.asyncio
    async def test_blocked_country(self, analyzer):
        """Test blocked countries zero the reputation and block."""
        result = await analyzer.analyze("user-1", IP, located(country_code="KP"))

        assert result.reputation_score == 0
        assert result.threat_level == ThreatLevel.CRITICAL
        assert result.is_suspicious is True
        assert RecommendedAction.BLOCK_TRANSACTION in [r.action for r in result.recommendations]

    @pytest.mark.asyncio
    async def test_allow_list(self, store, clock):
        """Test countries outside a non-empty allow-list are blocked."""
        analyzer = IPReputationAnalyzer(store, IPConfig(allowed_countries=["fr"]), clock=clock)

        outside = await analyzer.analyze("user-1", IP, located(country_code="DE"))
        inside = await analyzer.analyze("user-2", IP, located(country_code="FR"))

        assert outside.reputation_score == 0
        assert inside.reputation_score == 100

    @pytest.mark.asyncio
    async def test_unknown_country_exempt_from_allow_list(self, store, clock):
        analyzer = IPReputationAnalyzer(store, IPConfig(allowed_countries=["FR"]), clock=clock)

        result = await analyzer.analyze("user-1", IP, located(country_code="XX"))

        assert result.reputation_score == 100

    @pytest.mark.asyncio
    async def test_shared_ip(self, analyzer):
        """Test an IP used by more than two other accounts."""
        for user in ("user-1", "user-2", "user-3"):
            await analyzer.analyze(user, IP)

        result = await analyzer.analyze("user-4", IP)

        assert result.previous_users == ["user-1", "user-2", "user-3"]
        assert result.reputation_score == 90
        assert await analyzer.get_ip_users(IP) == ["user-1", "user-2", "user-3", "user-4"]

    @pytest.mark.asyncio
    async def test_impossible_travel(self, analyzer):
        """Test 9,000 km between connections two hours apart."""
        first = await analyzer.analyze("user-1", IP, located(0, 0), at=BASE_TIME)
        second = await analyzer.analyze(
            "user-1", "198.51.100.7", located(0, 81), at=BASE_TIME + timedelta(hours=2)
        )

        assert first.geo_velocity is None
        assert second.geo_velocity is not None
        assert second.geo_velocity.is_possible is False
        assert second.geo_velocity_violation is True
        assert second.reputation_score == 60
        assert second.threat_level == ThreatLevel.HIGH
        assert SignalType.GEO_VELOCITY_VIOLATION in [s.type for s in second.signals]
        assert RecommendedAction.REQUIRE_2FA in [r.action for r in second.recommendations]

    @pytest.mark.asyncio
    async def test_plausible_travel(self, analyzer):
        await analyzer.analyze("user-1", IP, located(48.8566, 2.3522), at=BASE_TIME)
        result = await analyzer.analyze("user-1", IP, located(51.5074, -0.1278), at=BASE_TIME + timedelta(hours=3))

        assert result.geo_velocity.is_possible is True
        assert result.geo_velocity_violation is False

    @pytest.mark.asyncio
    async def test_check_geo_velocity_does_not_record(self, analyzer):
        await analyzer.analyze("user-1", IP, located(0, 0), at=BASE_TIME)

        probe = await analyzer.check_geo_velocity(
            "user-1", GeoLocation(latitude=0, longitude=81), at=BASE_TIME + timedelta(hours=2)
        )
        again = await analyzer.check_geo_velocity(
            "user-1", GeoLocation(latitude=0, longitude=0), at=BASE_TIME + timedelta(hours=2)
        )

        assert probe.is_possible is False
        assert again.distance_km == 0.0

    @pytest.mark.asyncio
    async def test_provider_lookup(self, store, clock):
        """Test the provider is consulted when no intelligence is passed."""
        provider = StaticProvider(IPIntelligence(is_vpn=True))
        analyzer = IPReputationAnalyzer(store, IPConfig(), provider=provider, clock=clock)

        result = await analyzer.analyze("user-1", IP)

        assert provider.lookups == [IP]
        assert result.is_vpn is True

    @pytest.mark.asyncio
    async def test_ipv6_normalized(self, analyzer):
        result = await analyzer.analyze("user-1", "2001:DB8::1")
        assert result.ip == "2001:db8::1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_ip", ["not-an-ip", "999.1.1.1", ""])
    async def test_invalid_ip(self, analyzer, bad_ip):
        with pytest.raises(IPAnalysisError) as exc_info:
            await analyzer.analyze("user-1", bad_ip)

        assert exc_info.value.error_code == "IP_ANALYSIS_ERROR"
