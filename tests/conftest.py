"""
Core Sentry - Shared Test Fixtures
==================================
"""

import pytest

from coresentry.api.schemas import TelemetrySample, Thresholds
from coresentry.core.action_dispatcher import ActionDispatcher
from coresentry.core.advisory_client import AdvisoryClient, MockAdvisoryTransport
from coresentry.core.decision_engine import DecisionEngine
from coresentry.core.gate import DecisionGate
from coresentry.core.threshold_store import ThresholdStore


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_sample(**overrides) -> TelemetrySample:
    """Sample that breaches nothing under the standard test thresholds."""
    values = {
        "function": "handleRequest (server.js)",
        "usedHeap": 40,
        "totalHeap": 100,
        "activeRequests": 10,
        "blockDuration": 30,
    }
    values.update(overrides)
    return TelemetrySample.model_validate(values)


@pytest.fixture
def thresholds() -> Thresholds:
    """Thresholds used throughout the scenarios: block 50ms, heap 85%, io 100."""
    return Thresholds(block=50, heap=85, io=100)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> MockAdvisoryTransport:
    return MockAdvisoryTransport({"action": "NONE", "reason": "All good"})


@pytest.fixture
def reclaimer():
    calls = []

    def collect() -> int:
        calls.append(1)
        return 0

    collect.calls = calls
    return collect


@pytest.fixture
def engine(transport, thresholds, clock, reclaimer) -> DecisionEngine:
    """Engine with a mock advisory, a fake clock and a recording reclaimer."""
    return DecisionEngine(
        AdvisoryClient(transport, timeout_seconds=1.0),
        thresholds=ThresholdStore(thresholds),
        dispatcher=ActionDispatcher(memory_reclaimer=reclaimer),
        gate=DecisionGate(cooldown_ms=10000, clock=clock),
    )
