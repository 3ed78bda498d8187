"""
Shared test fixtures and factories for the TradeGuard test suite.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from tradeguard.config import FraudDetectionSettings
from tradeguard.domains.fraud.models import DeviceFingerprint, Trade, Transaction
from tradeguard.infrastructure.state_store import InMemoryStateStore

BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

_ids = itertools.count(1)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, isolated tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()


def make_transaction(user_id="user-1", type="deposit", amount=100.0, timestamp=None, **overrides) -> Transaction:
    data = {
        "id": f"tx-{next(_ids)}",
        "user_id": user_id,
        "type": type,
        "amount": amount,
        "timestamp": timestamp or BASE_TIME,
    }
    data.update(overrides)
    return Transaction(**data)


def make_trade(
    user_id="user-1",
    side="buy",
    quantity=10.0,
    price=100.0,
    market_id="BTC-USD",
    timestamp=None,
    **overrides,
) -> Trade:
    data = {
        "id": f"trade-{next(_ids)}",
        "user_id": user_id,
        "market_id": market_id,
        "side": side,
        "quantity": quantity,
        "price": price,
        "timestamp": timestamp or BASE_TIME,
    }
    data.update(overrides)
    return Trade(**data)


def make_fingerprint(**overrides) -> DeviceFingerprint:
    data = {
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
        "platform": "Win32",
        "screen_resolution": "1920x1080",
        "color_depth": 24,
        "timezone": "Europe/Paris",
        "language": "en-US",
        "hardware_concurrency": 8,
        "canvas_hash": "c4nv45",
        "webgl_hash": "w3bgl",
        "webgl_vendor": "Google Inc. (NVIDIA)",
        "webgl_renderer": "ANGLE (NVIDIA GeForce RTX 3060)",
        "plugins": ["PDF Viewer"],
        "cookies_enabled": True,
    }
    data.update(overrides)
    return DeviceFingerprint(**data)


@pytest.fixture
def clock():
    """Clock starting at a fixed instant; tests advance it explicitly."""
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory state store whose TTLs follow the test clock."""
    return InMemoryStateStore(clock=clock.monotonic)


@pytest.fixture
def settings():
    """Default engine settings with in-memory state."""
    return FraudDetectionSettings()
