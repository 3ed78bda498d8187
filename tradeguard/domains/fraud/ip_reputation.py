"""
IP Reputation Analyzer

Classifies a connection (VPN, proxy, Tor, datacenter, residential),
computes a 0-100 reputation and runs the impossible-travel check against
the user's last known location.

External intelligence is optional. Whatever the provider leaves unset is
estimated locally from the configured ASN and Tor exit lists.
"""

import ipaddress
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from ...config import IPConfig
from ...infrastructure.state_store import StateStore, composite_key
from ...utils.exceptions import IPAnalysisError
from .geo import GeoVelocityCheck, check_travel
from .models import (
    ActionPriority,
    GeoLocation,
    IPIntelligence,
    RecommendedAction,
    RiskRecommendation,
    RiskSignal,
    SerializableMixin,
    Severity,
    SignalType,
    ThreatLevel,
    ensure_utc,
    utcnow,
)
from .primitives import clamp

logger = structlog.get_logger(__name__)

# Reputation deductions
TOR_PENALTY = 60
VPN_PENALTY = 25
PROXY_PENALTY = 30
DATACENTER_PENALTY = 20
SHARED_IP_PENALTY = 10
GEO_VELOCITY_PENALTY = 40

# Other accounts on one IP before it counts as shared
SHARED_IP_MIN_USERS = 2

_THREAT_RANK = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
    ThreatLevel.CRITICAL: 4,
}


def _raise_threat(current: ThreatLevel, candidate: ThreatLevel) -> ThreatLevel:
    return candidate if _THREAT_RANK[candidate] > _THREAT_RANK[current] else current


class IPIntelligenceProvider(ABC):
    """External GeoIP / VPN / Tor lookup collaborator."""

    @abstractmethod
    async def lookup(self, ip: str) -> IPIntelligence:
        """Resolve classification flags and location for an address."""


@dataclass(frozen=True)
class IPAnalysisResult(SerializableMixin):
    ip: str
    is_vpn: bool
    is_proxy: bool
    is_tor: bool
    is_datacenter: bool
    is_residential: bool
    is_mobile: bool
    is_suspicious: bool
    reputation_score: int
    threat_level: ThreatLevel
    abuse_confidence: float
    risk_score: float
    location: Optional[GeoLocation] = None
    previous_users: List[str] = field(default_factory=list)
    geo_velocity: Optional[GeoVelocityCheck] = None
    signals: List[RiskSignal] = field(default_factory=list)
    recommendations: List[RiskRecommendation] = field(default_factory=list)

    @property
    def geo_velocity_violation(self) -> bool:
        return self.geo_velocity is not None and not self.geo_velocity.is_possible


class IPReputationAnalyzer:
    """Connection classification, reputation and impossible travel."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[IPConfig] = None,
        provider: Optional[IPIntelligenceProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or IPConfig()
        self.provider = provider
        self.clock = clock
        self._tor_exit_nodes = set(self.config.tor_exit_nodes)
        self._datacenter_asns = set(self.config.known_datacenter_asns)

    @staticmethod
    def ip_users_key(ip: str) -> str:
        return composite_key("ip", "users", ip)

    @staticmethod
    def _last_seen_key(user_id: str) -> str:
        return composite_key("ip", "last_seen", user_id)

    @staticmethod
    def validate(ip: str) -> str:
        try:
            return str(ipaddress.ip_address(ip.strip()))
        except (ValueError, AttributeError) as e:
            raise IPAnalysisError(f"Invalid IP address: {ip!r}", ip=str(ip)) from e

    async def get_ip_users(self, ip: str) -> List[str]:
        return sorted(await self.store.smembers(self.ip_users_key(ip)))

    async def analyze(
        self,
        user_id: str,
        ip: str,
        external: Optional[IPIntelligence] = None,
        at: Optional[datetime] = None,
    ) -> IPAnalysisResult:
        """
        Analyze one connection from a user.

        Args:
            user_id: Connecting user
            ip: IPv4 or IPv6 address
            external: Pre-resolved intelligence; looked up through the
                provider when omitted and a provider is configured
            at: When the connection happened, defaults to the clock

        Raises:
            IPAnalysisError: If the address cannot be parsed
        """
        ip = self.validate(ip)
        at = ensure_utc(at) if at is not None else self.clock()

        if external is None and self.provider is not None:
            external = await self.provider.lookup(ip)
        external = external or IPIntelligence()
        location = external.location

        asn = location.asn if location else None
        is_datacenter = external.is_datacenter if external.is_datacenter is not None else asn in self._datacenter_asns
        is_vpn = external.is_vpn if external.is_vpn is not None else asn in self._datacenter_asns
        is_proxy = bool(external.is_proxy)
        is_tor = external.is_tor if external.is_tor is not None else ip in self._tor_exit_nodes
        is_residential = (
            external.is_residential
            if external.is_residential is not None
            else not (is_vpn or is_proxy or is_tor or is_datacenter)
        )
        is_mobile = bool(external.is_mobile)

        signals = []
        recommendations = []
        reputation = 100
        threat = ThreatLevel.NONE

        if is_tor:
            reputation -= TOR_PENALTY
            threat = ThreatLevel.CRITICAL
            signals.append(
                RiskSignal(
                    type=SignalType.TOR_DETECTED,
                    severity=Severity.HIGH,
                    description="Tor exit node detected",
                    evidence={"ip": ip},
                    confidence=0.95,
                )
            )
            if self.config.block_tor:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.BLOCK_TRANSACTION,
                        priority=ActionPriority.IMMEDIATE,
                        reason="Tor connections not allowed",
                        auto_execute=True,
                    )
                )

        if is_vpn:
            reputation -= VPN_PENALTY
            threat = _raise_threat(threat, ThreatLevel.LOW)
            signals.append(
                RiskSignal(
                    type=SignalType.VPN_DETECTED,
                    severity=Severity.MEDIUM,
                    description="VPN connection detected",
                    evidence={"ip": ip},
                    confidence=0.8,
                )
            )
            if self.config.block_vpn:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.BLOCK_TRANSACTION,
                        priority=ActionPriority.HIGH,
                        reason="VPN connections not allowed",
                        auto_execute=True,
                    )
                )

        if is_proxy:
            reputation -= PROXY_PENALTY
            threat = _raise_threat(threat, ThreatLevel.MEDIUM)
            signals.append(
                RiskSignal(
                    type=SignalType.PROXY_DETECTED,
                    severity=Severity.MEDIUM,
                    description="Proxy connection detected",
                    evidence={"ip": ip},
                    confidence=0.85,
                )
            )
            if self.config.block_proxy:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.BLOCK_TRANSACTION,
                        priority=ActionPriority.HIGH,
                        reason="Proxy connections not allowed",
                        auto_execute=True,
                    )
                )

        if is_datacenter:
            reputation -= DATACENTER_PENALTY
            signals.append(
                RiskSignal(
                    type=SignalType.DATACENTER_IP,
                    severity=Severity.LOW,
                    description="Datacenter IP detected",
                    evidence={"ip": ip, "asn": asn},
                    confidence=0.9,
                )
            )
            if self.config.block_datacenter:
                recommendations.append(
                    RiskRecommendation(
                        action=RecommendedAction.REQUIRE_VERIFICATION,
                        priority=ActionPriority.MEDIUM,
                        reason="Datacenter IP requires verification",
                    )
                )

        if location is not None and self._is_country_blocked(location.country_code):
            reputation = 0
            threat = ThreatLevel.CRITICAL
            signals.append(
                RiskSignal(
                    type=SignalType.LOCATION_ANOMALY,
                    severity=Severity.HIGH,
                    description=f"Access from blocked country: {location.country}",
                    evidence={"country": location.country, "country_code": location.country_code},
                    confidence=0.95,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.BLOCK_TRANSACTION,
                    priority=ActionPriority.IMMEDIATE,
                    reason=f"Country {location.country} is blocked",
                    auto_execute=True,
                )
            )

        previous_users = [u for u in await self.get_ip_users(ip) if u != user_id]
        await self.store.sadd(self.ip_users_key(ip), user_id)

        if len(previous_users) > SHARED_IP_MIN_USERS:
            reputation -= SHARED_IP_PENALTY
            signals.append(
                RiskSignal(
                    type=SignalType.LOCATION_ANOMALY,
                    severity=Severity.LOW,
                    description=f"IP used by {len(previous_users) + 1} accounts",
                    evidence={"ip_users": len(previous_users) + 1},
                    confidence=0.7,
                )
            )

        geo_velocity = None
        if location is not None:
            geo_velocity = await self._check_and_record_location(user_id, location, at)

        if geo_velocity is not None and not geo_velocity.is_possible:
            reputation -= GEO_VELOCITY_PENALTY
            threat = _raise_threat(threat, ThreatLevel.HIGH)
            signals.append(
                RiskSignal(
                    type=SignalType.GEO_VELOCITY_VIOLATION,
                    severity=Severity.HIGH,
                    description=(
                        f"Impossible travel: {geo_velocity.distance_km:.0f}km "
                        f"in {geo_velocity.time_diff_hours:.1f}h"
                    ),
                    evidence={
                        "distance_km": geo_velocity.distance_km,
                        "time_diff_hours": geo_velocity.time_diff_hours,
                        "required_time_hours": geo_velocity.required_time_hours,
                        "previous_country": geo_velocity.previous_country,
                        "current_country": geo_velocity.current_country,
                    },
                    confidence=0.9,
                )
            )
            recommendations.append(
                RiskRecommendation(
                    action=RecommendedAction.REQUIRE_2FA,
                    priority=ActionPriority.HIGH,
                    reason="Unusual location change detected",
                    auto_execute=True,
                )
            )

        reputation = max(0, reputation)
        if is_tor:
            abuse_confidence = 0.9
        elif is_vpn or is_proxy:
            abuse_confidence = 0.5
        else:
            abuse_confidence = 0.1

        logger.debug(
            "IP analyzed",
            user_id=user_id,
            ip=ip,
            reputation=reputation,
            threat_level=threat.value,
        )

        return IPAnalysisResult(
            ip=ip,
            is_vpn=is_vpn,
            is_proxy=is_proxy,
            is_tor=is_tor,
            is_datacenter=is_datacenter,
            is_residential=is_residential,
            is_mobile=is_mobile,
            is_suspicious=reputation < self.config.suspicious_ip_threshold,
            reputation_score=reputation,
            threat_level=threat,
            abuse_confidence=abuse_confidence,
            risk_score=clamp((100 - reputation) / 100),
            location=location,
            previous_users=previous_users,
            geo_velocity=geo_velocity,
            signals=signals,
            recommendations=recommendations,
        )

    def _is_country_blocked(self, country_code: str) -> bool:
        code = country_code.upper()
        if code in self.config.blocked_countries:
            return True
        # Unknown locations are not held against an allow-list
        return bool(self.config.allowed_countries) and code != "XX" and code not in self.config.allowed_countries

    async def check_geo_velocity(
        self, user_id: str, location: GeoLocation, at: Optional[datetime] = None
    ) -> Optional[GeoVelocityCheck]:
        """Compare against the last known location without recording the new one."""
        at = ensure_utc(at) if at is not None else self.clock()
        last_seen = await self.store.get(self._last_seen_key(user_id))
        return self._compare(last_seen, location, at)

    async def _check_and_record_location(
        self, user_id: str, location: GeoLocation, at: datetime
    ) -> Optional[GeoVelocityCheck]:
        key = self._last_seen_key(user_id)
        async with self.store.lock(key):
            last_seen = await self.store.get(key)
            result = self._compare(last_seen, location, at)
            await self.store.set(
                key,
                {
                    "latitude": location.latitude,
                    "longitude": location.longitude,
                    "country": location.country,
                    "timestamp": at.timestamp(),
                },
            )
        return result

    @staticmethod
    def _compare(last_seen: Optional[dict], location: GeoLocation, at: datetime) -> Optional[GeoVelocityCheck]:
        if not last_seen:
            return None
        return check_travel(
            last_seen["latitude"],
            last_seen["longitude"],
            datetime.fromtimestamp(last_seen["timestamp"], tz=timezone.utc),
            location.latitude,
            location.longitude,
            at,
            previous_country=last_seen.get("country", ""),
            current_country=location.country,
        )
