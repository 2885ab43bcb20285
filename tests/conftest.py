import os
from datetime import datetime, timedelta
from typing import Dict, List
from unittest.mock import AsyncMock

import pytest

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["ENABLE_REDIS"] = "false"

from risk_sentinel.config import AlertPolicy, PriceTrackerConfig
from risk_sentinel.database import RiskStore
from risk_sentinel.events import EventBus, ALL_EVENTS
from risk_sentinel.models import (
    CascadeRiskScore, MonitoringEvent, PositionSnapshot, PriceQuote, RecommendedAction,
    RiskComponents, StoredSnapshot
)
from risk_sentinel.price_tracker import PriceSource


class FakeClock:
    """Deterministic, manually advanced replacement for datetime.utcnow"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0):
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)


class StubPriceSource(PriceSource):
    """Price source returning scripted prices or raising scripted errors"""

    name = "stub"

    def __init__(self, prices: Dict[str, float] = None):
        self.prices = dict(prices or {})
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []

    def fail_next(self, asset: str, error: Exception, times: int = 1):
        self.failures.setdefault(asset, []).extend([error] * times)

    async def get_price(self, asset: str) -> PriceQuote:
        self.calls.append(asset)
        pending = self.failures.get(asset)
        if pending:
            raise pending.pop(0)
        return PriceQuote(price=self.prices[asset], confidence=0.99)


class EventRecorder:
    """Collects every event published on a bus"""

    def __init__(self, bus: EventBus):
        self.events: List[MonitoringEvent] = []
        bus.subscribe(ALL_EVENTS, self.events.append)

    def of_type(self, event_type: str) -> List[MonitoringEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def price_source():
    return StubPriceSource({"SOL": 100.0, "USDC": 1.0})


@pytest.fixture
def tracker_config():
    """Tracker settings with no retry delay and no history coalescing"""
    return PriceTrackerConfig(
        assets=["SOL"],
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        history_sample_interval_seconds=0,
        fetch_timeout_seconds=1.0
    )


@pytest.fixture
def alert_policy():
    return AlertPolicy()


@pytest.fixture
def mock_store():
    """RiskStore with every coroutine mocked and no monitored accounts"""
    store = AsyncMock(spec=RiskStore)
    store.get_active_accounts.return_value = []
    store.get_latest_snapshot.return_value = None
    return store


def make_position(account_id: str, collateral: float, debt: float,
                  leverage: float = None, threshold: float = 0.8) -> PositionSnapshot:
    if leverage is None:
        equity = collateral - debt
        leverage = collateral / equity if equity > 0 else float("inf")
    return PositionSnapshot(
        account_id=account_id,
        collateral_value=collateral,
        debt_value=debt,
        leverage=leverage,
        liquidation_price=90.0,
        oracle_price=100.0,
        liquidation_threshold=threshold
    )


def make_stored_snapshot(account_id: str, collateral: float, debt: float,
                         created_at: datetime = None, threshold: float = 0.8) -> StoredSnapshot:
    equity = collateral - debt
    return StoredSnapshot(
        account_id=account_id,
        health_factor=collateral * threshold / debt if debt else 999.0,
        collateral_value=collateral,
        debt_value=debt,
        leverage=collateral / equity if equity > 0 else 999.0,
        liquidation_price=90.0,
        oracle_price=100.0,
        liquidation_threshold=threshold,
        created_at=created_at or datetime(2024, 1, 1, 11, 59, 0)
    )


def make_score(account_id: str, risk_score: float, cascade_probability: float = None,
               action: RecommendedAction = RecommendedAction.MONITOR) -> CascadeRiskScore:
    if cascade_probability is None:
        cascade_probability = (risk_score / 100.0) ** 2
    return CascadeRiskScore(
        account_id=account_id,
        risk_score=risk_score,
        volatility_value=1.0,
        cascade_probability=cascade_probability,
        time_to_liquidation_hours=12.0,
        estimated_losses_usd=250.0,
        recommended_action=action,
        components=RiskComponents(health_factor_risk=32.0, volatility_risk=30.0, cascade_risk=3.0)
    )


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def stored_snapshot_factory():
    return make_stored_snapshot


@pytest.fixture
def score_factory():
    return make_score
