"""
Core Sentry - Decision Engine Tests
===================================

Tests for the gate, the full decision cycle and its failure paths.
"""

import asyncio
import pytest

from coresentry.api.schemas import Thresholds
from coresentry.config import Settings
from coresentry.constants import ActionKind, EnginePhase, GateDecision
from coresentry.core.advisory_client import (
    AdvisoryClient,
    AdvisoryTransport,
    AdvisoryUnavailable,
    MockAdvisoryTransport,
)
from coresentry.core.decision_engine import DecisionEngine
from coresentry.core.gate import DecisionGate
from coresentry.core.threshold_store import ThresholdStore
from coresentry.schemas.events import DecisionEvent, TelemetryEvent
from tests.conftest import FakeClock, make_sample


class BlockingTransport(AdvisoryTransport):
    """Holds every request until ``release`` is set."""

    def __init__(self, reply: str = '{"action": "NONE", "reason": "ok"}'):
        self.reply = reply
        self.release = asyncio.Event()
        self.calls = 0

    async def evaluate(self, endpoint, payload):
        self.calls += 1
        await self.release.wait()
        return {"response": self.reply}


class FlakyTransport(AdvisoryTransport):
    """Fails the first ``failures`` calls, then answers NONE."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = 0

    async def evaluate(self, endpoint, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise AdvisoryUnavailable("connection refused")
        return {"response": '{"action": "NONE", "reason": "ok"}'}


def build_engine(transport, clock, thresholds=None, timeout=1.0) -> DecisionEngine:
    return DecisionEngine(
        AdvisoryClient(transport, timeout_seconds=timeout),
        thresholds=ThresholdStore(thresholds or Thresholds(block=50, heap=85, io=100)),
        gate=DecisionGate(cooldown_ms=10000, clock=clock),
    )


class TestDecisionGate:
    """Tests for the single-flight cooldown gate."""

    def test_first_admission(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)

        assert gate.admit() == GateDecision.ADMITTED
        assert gate.in_flight is True

    def test_in_flight_denies_without_state_change(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)
        gate.admit()

        assert gate.admit() == GateDecision.IN_FLIGHT
        assert gate.in_flight is True
        assert gate.last_decision_at is None

    def test_denials_are_falsy(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)

        assert gate.admit()
        assert not gate.admit()

        gate.release(clock(), success=True)
        assert not gate.admit()

    def test_success_starts_cooldown_from_start_time(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)
        started = clock()
        gate.admit(started)
        clock.advance(3)
        gate.release(started, success=True)

        assert gate.last_decision_at == started
        clock.advance(6.9)
        assert gate.admit() == GateDecision.COOLDOWN
        clock.advance(0.1)
        assert gate.admit() == GateDecision.ADMITTED

    def test_failure_does_not_start_cooldown(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)
        started = clock()
        gate.admit(started)
        gate.release(started, success=False)

        assert gate.in_flight is False
        assert gate.last_decision_at is None
        assert gate.admit() == GateDecision.ADMITTED

    def test_cooldown_remaining(self, clock):
        gate = DecisionGate(cooldown_ms=10000, clock=clock)
        assert gate.cooldown_remaining() == 0.0

        gate.admit()
        gate.release(clock(), success=True)
        clock.advance(4)

        assert gate.cooldown_remaining() == pytest.approx(6000.0)
        assert gate.snapshot().in_flight is False


class TestDecisionCycle:
    """Tests for complete decision cycles."""

    @pytest.mark.asyncio
    async def test_lag_breach_scenario(self, engine, transport):
        """Advisory NONE under a lag breach yields SCALE_UP_WORKERS."""
        event = await engine.process(
            make_sample(blockDuration=100, memoryUsagePct=40, activeRequests=10)
        )

        assert isinstance(event, DecisionEvent)
        assert event.action == ActionKind.SCALE_UP_WORKERS
        assert event.advisory_action == ActionKind.NONE
        assert event.corrected is True
        assert event.intensity >= 2
        assert "100ms" in event.reason and "50ms" in event.reason
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_memory_breach_triggers_reclaim(self, engine, transport, reclaimer):
        """CLEAN_CACHE without a handler runs the memory reclaimer."""
        transport.reply = {"action": "SCALE_UP_WORKERS", "reason": "lag"}

        event = await engine.process(
            make_sample(blockDuration=30, memoryUsagePct=90, activeRequests=10)
        )

        assert event.action == ActionKind.CLEAN_CACHE
        assert len(reclaimer.calls) == 1

    @pytest.mark.asyncio
    async def test_scale_down_scenario(self, engine):
        event = await engine.process(
            make_sample(blockDuration=5, memoryUsagePct=20, activeRequests=5)
        )

        assert event.action == ActionKind.SCALE_DOWN_WORKERS
        assert event.intensity == 1

    @pytest.mark.asyncio
    async def test_memory_percentage_derived_from_heap(self, engine):
        """usedHeap/totalHeap is used when no percentage is supplied."""
        event = await engine.process(
            make_sample(usedHeap=95, totalHeap=100, blockDuration=30)
        )

        assert event.action == ActionKind.CLEAN_CACHE

    @pytest.mark.asyncio
    async def test_correlation_id_on_event(self, engine):
        event = await engine.process(make_sample(blockDuration=100))

        assert event.correlation_id
        assert event.function == "handleRequest (server.js)"

    @pytest.mark.asyncio
    async def test_phase_returns_to_idle(self, engine):
        await engine.process(make_sample())

        assert engine.phase == EnginePhase.IDLE
        assert engine.gate.in_flight is False


class TestBackpressure:
    """Tests for cooldown and single-flight dropping."""

    @pytest.mark.asyncio
    async def test_second_event_within_cooldown_is_dropped(self, engine, transport, clock):
        first = await engine.process(make_sample(blockDuration=100))
        clock.advance(5)
        second = await engine.process(make_sample(blockDuration=100))

        assert first is not None
        assert second is None
        assert len(transport.requests) == 1
        assert engine.stats().dropped_cooldown == 1

    @pytest.mark.asyncio
    async def test_event_after_cooldown_is_admitted(self, engine, transport, clock):
        await engine.process(make_sample(blockDuration=100))
        clock.advance(10)

        assert await engine.process(make_sample(blockDuration=100)) is not None
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_event_during_in_flight_call_is_dropped(self, clock):
        transport = BlockingTransport()
        engine = build_engine(transport, clock)

        first = asyncio.create_task(engine.process(make_sample(blockDuration=100)))
        await asyncio.sleep(0)
        assert engine.gate.in_flight is True

        second = await engine.process(make_sample(blockDuration=100))
        transport.release.set()
        event = await first

        assert second is None
        assert event is not None
        assert transport.calls == 1
        assert engine.stats().dropped_in_flight == 1

    @pytest.mark.asyncio
    async def test_submit_processes_in_background(self, engine, transport):
        task = engine.submit(make_sample(blockDuration=100))
        event = await task

        assert event.action == ActionKind.SCALE_UP_WORKERS


class TestAdvisoryFailures:
    """Tests for cycles where the advisory gives no decision."""

    @pytest.mark.asyncio
    async def test_timeout_yields_no_decision(self, clock):
        """A slow advisory times out; gate released, cooldown untouched."""
        transport = MockAdvisoryTransport({"action": "NONE"}, delay_seconds=1.0)
        engine = build_engine(transport, clock, timeout=0.05)

        event = await engine.process(make_sample(blockDuration=100))

        assert event is None
        assert engine.gate.in_flight is False
        assert engine.gate.last_decision_at is None
        assert engine.stats().advisory_failures == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_extend_cooldown(self, clock):
        """The next event right after a failed call is admitted."""
        transport = FlakyTransport(failures=1)
        engine = build_engine(transport, clock)

        assert await engine.process(make_sample(blockDuration=100)) is None
        event = await engine.process(make_sample(blockDuration=100))

        assert event is not None
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_malformed_reply_yields_no_decision(self, engine, transport):
        transport.reply = {"action": "REBOOT_HOST", "reason": "why not"}

        event = await engine.process(make_sample(blockDuration=100))

        assert event is None
        assert engine.gate.in_flight is False
        assert engine.history() == []

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_releases_gate(self, clock):
        class BrokenTransport(AdvisoryTransport):
            async def evaluate(self, endpoint, payload):
                raise RuntimeError("boom")

        engine = build_engine(BrokenTransport(), clock)

        assert await engine.process(make_sample()) is None
        assert engine.gate.in_flight is False


class TestHandlers:
    """Tests for dispatch from the engine."""

    @pytest.mark.asyncio
    async def test_handler_failure_is_isolated(self, engine, clock):
        def explode(decision):
            raise RuntimeError("pool exhausted")

        engine.dispatcher.register(ActionKind.SCALE_UP_WORKERS, explode)

        event = await engine.process(make_sample(blockDuration=100))
        clock.advance(10)
        next_event = await engine.process(make_sample(blockDuration=100))

        assert event.action == ActionKind.SCALE_UP_WORKERS
        assert next_event is not None
        assert engine.stats().handler_failures == 2
        assert engine.gate.in_flight is False

    @pytest.mark.asyncio
    async def test_async_handler_receives_final_decision(self, engine):
        received = []

        async def scale_up(decision):
            received.append(decision)

        engine.dispatcher.register("SCALE_WORKERS", scale_up)
        await engine.process(make_sample(blockDuration=100))

        assert len(received) == 1
        assert received[0].action == ActionKind.SCALE_UP_WORKERS
        assert 1 <= received[0].intensity <= 10


class TestEgress:
    """Tests for history, status and broadcast events."""

    @pytest.mark.asyncio
    async def test_events_are_broadcast(self, engine):
        queue = engine.broadcaster.subscribe()

        await engine.process(make_sample(blockDuration=100))

        telemetry = queue.get_nowait()
        decision = queue.get_nowait()
        assert isinstance(telemetry, TelemetryEvent)
        assert telemetry.sample.memory_usage_pct == pytest.approx(40.0)
        assert isinstance(decision, DecisionEvent)

    @pytest.mark.asyncio
    async def test_dropped_samples_are_still_broadcast(self, engine):
        queue = engine.broadcaster.subscribe()

        await engine.process(make_sample(blockDuration=100))
        await engine.process(make_sample(blockDuration=100))

        assert queue.qsize() == 3

    @pytest.mark.asyncio
    async def test_history_and_status(self, engine, clock):
        await engine.process(make_sample(blockDuration=100))
        clock.advance(10)
        await engine.process(make_sample(blockDuration=5, memoryUsagePct=20))

        history = engine.history()
        assert [e.action for e in history] == [
            ActionKind.SCALE_DOWN_WORKERS,
            ActionKind.SCALE_UP_WORKERS,
        ]
        assert engine.history(action=ActionKind.SCALE_UP_WORKERS)[0].action == ActionKind.SCALE_UP_WORKERS

        status = engine.status()
        assert status.phase == EnginePhase.IDLE
        assert status.stats.decisions == 2
        assert status.stats.corrections == 2
        assert status.cooldown_remaining_ms == pytest.approx(10000.0)
        assert status.last_decision_at == history[0].timestamp


class TestFromSettings:
    """Tests for building the engine from settings."""

    @pytest.mark.asyncio
    async def test_engine_from_settings(self):
        settings = Settings(
            advisory_provider="mock",
            advisory_model="tinyllama",
            cooldown_ms=0,
            threshold_block_ms=50,
            threshold_heap_percent=85,
            threshold_io_requests=100,
            critical_functions=["expensiveCalculation"],
            enable_memory_reclaim=False,
        )

        engine = DecisionEngine.from_settings(settings)

        assert isinstance(engine.advisory.transport, MockAdvisoryTransport)
        assert engine.advisory.model == "tinyllama"
        assert engine.thresholds.get().critical_functions == {"expensiveCalculation"}
        assert engine.dispatcher.memory_reclaimer is None

        first = await engine.process(make_sample(blockDuration=100))
        second = await engine.process(make_sample(blockDuration=100))
        assert first is not None and second is not None

        await engine.close()
