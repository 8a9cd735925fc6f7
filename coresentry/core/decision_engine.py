"""
Core Sentry - Decision Engine
=============================

The control loop that turns telemetry into remedial actions.

Cycle:
1. GATE: drop the sample unless the gate admits it (single flight,
   cooldown since the last successful advisory call)
2. QUERY: ask the advisory for a decision (bounded by a timeout)
3. VALIDATE: correct the advisory's proposal against measured metrics
4. DISPATCH: emit the decision event and run the action handler

State machine: IDLE -> QUERYING -> VALIDATING -> DISPATCHING -> IDLE.
A denied sample leaves the engine IDLE. Every admitted cycle releases the
gate on exit, whatever happened inside it.
"""

from collections import deque
from typing import Any, Mapping, Optional, Union
import asyncio
import gc
import uuid

from coresentry.api.schemas import (
    EngineStats,
    EngineStatus,
    TelemetrySample,
    Thresholds,
)
from coresentry.config import AdvisoryProvider, Settings
from coresentry.constants import ActionKind, EnginePhase, GateDecision
from coresentry.core.action_dispatcher import ActionDispatcher
from coresentry.core.advisory_client import (
    AdvisoryClient,
    AdvisoryTransport,
    HttpAdvisoryTransport,
    MockAdvisoryTransport,
)
from coresentry.core.broadcaster import EventBroadcaster
from coresentry.core.gate import DecisionGate
from coresentry.core.telemetry import is_critical, normalize_sample
from coresentry.core.threshold_store import ThresholdStore
from coresentry.core.validation_policy import ValidationPolicy
from coresentry.schemas.events import DecisionEvent, TelemetryEvent
from coresentry.utils.logging import correlation_id_var, get_logger

logger = get_logger(__name__)


class DecisionEngine:
    """
    Orchestrates gate, advisory, validation and dispatch.

    One engine owns its gate, so separate engines (for example in tests)
    never share cooldown state.

    Example:
        engine = DecisionEngine(AdvisoryClient(HttpAdvisoryTransport()))
        event = await engine.process(sample)
        if event is None:
            ...  # dropped by the gate or no advisory decision
    """

    def __init__(
        self,
        advisory: AdvisoryClient,
        thresholds: Optional[ThresholdStore] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        policy: Optional[ValidationPolicy] = None,
        gate: Optional[DecisionGate] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        history_size: int = 100,
        service_name: str = "coresentry"
    ):
        self.advisory = advisory
        self.thresholds = thresholds or ThresholdStore()
        self.dispatcher = dispatcher or ActionDispatcher()
        self.policy = policy or ValidationPolicy()
        self.gate = gate or DecisionGate()
        self.broadcaster = broadcaster or EventBroadcaster()
        self.service_name = service_name

        self._phase = EnginePhase.IDLE
        self._stats = EngineStats()
        self._history: deque[DecisionEvent] = deque(maxlen=history_size)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[AdvisoryTransport] = None
    ) -> "DecisionEngine":
        """Build an engine and its collaborators from settings."""
        if transport is None:
            if settings.advisory_provider == AdvisoryProvider.MOCK:
                transport = MockAdvisoryTransport()
            else:
                transport = HttpAdvisoryTransport(timeout_seconds=settings.advisory_timeout_seconds)

        advisory = AdvisoryClient(
            transport,
            endpoint=settings.advisory_endpoint,
            model=settings.advisory_model,
            timeout_seconds=settings.advisory_timeout_seconds,
            temperature=settings.advisory_temperature,
            top_p=settings.advisory_top_p,
        )
        defaults = Thresholds(
            block=settings.threshold_block_ms,
            heap=settings.threshold_heap_percent,
            io=settings.threshold_io_requests,
            microtasks=settings.threshold_microtasks,
            critical_functions=set(settings.critical_functions),
        )
        return cls(
            advisory,
            thresholds=ThresholdStore(defaults),
            dispatcher=ActionDispatcher(
                memory_reclaimer=gc.collect if settings.enable_memory_reclaim else None
            ),
            gate=DecisionGate(cooldown_ms=settings.cooldown_ms),
            broadcaster=EventBroadcaster(queue_size=settings.stream_queue_size),
            history_size=settings.decision_history_size,
            service_name=settings.service_name,
        )

    @property
    def phase(self) -> EnginePhase:
        return self._phase

    async def process(
        self,
        sample: Union[TelemetrySample, Mapping[str, Any]]
    ) -> Optional[DecisionEvent]:
        """
        Run one decision cycle for ``sample``.

        Returns:
            The emitted DecisionEvent, or None when the sample was dropped
            by the gate or the advisory produced no decision.
        """
        sample = normalize_sample(sample)
        thresholds = self.thresholds.get()
        self._stats.samples_received += 1

        self.broadcaster.publish(TelemetryEvent(
            source_service=self.service_name,
            sample=sample,
            critical=is_critical(sample, thresholds),
        ))

        # No await before admission: samples reach the gate in arrival order
        started_at = self.gate.now()
        admission = self.gate.admit(started_at)
        if not admission:
            if admission == GateDecision.IN_FLIGHT:
                self._stats.dropped_in_flight += 1
            else:
                self._stats.dropped_cooldown += 1
            logger.debug(
                f"Telemetry dropped by gate: {admission.value}",
                extra={
                    "reason": admission.value,
                    "function": sample.function,
                    "cooldown_remaining_ms": self.gate.cooldown_remaining(started_at),
                }
            )
            return None

        self._stats.admitted += 1
        correlation_id = str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        success = False

        try:
            self._phase = EnginePhase.QUERYING
            advice = await self.advisory.request_decision(sample, thresholds)
            if advice is None:
                self._stats.advisory_failures += 1
                logger.info("No decision this cycle, advisory gave no usable answer")
                return None
            success = True

            self._phase = EnginePhase.VALIDATING
            context = self.policy.build_context(sample, thresholds)
            outcome = self.policy.validate(advice, context)

            self._stats.decisions += 1
            if outcome.corrected:
                self._stats.corrections += 1
            else:
                self._stats.accepted_unmodified += 1

            event = DecisionEvent.from_outcome(
                outcome,
                sample,
                correlation_id=correlation_id,
                source_service=self.service_name,
            )
            self._history.append(event)
            self.broadcaster.publish(event)

            self._phase = EnginePhase.DISPATCHING
            has_handler = self.dispatcher.get_handler(outcome.decision.action) is not None
            executed, message = await self.dispatcher.dispatch(outcome.decision)
            if has_handler and not executed:
                self._stats.handler_failures += 1

            logger.info(
                f"Decision cycle complete: {event.action.value}",
                extra={
                    "action": event.action.value,
                    "intensity": event.intensity,
                    "corrected": event.corrected,
                    "dispatch_result": message,
                }
            )
            return event

        finally:
            self.gate.release(started_at, success)
            self._phase = EnginePhase.IDLE
            correlation_id_var.reset(token)

    def submit(self, sample: Union[TelemetrySample, Mapping[str, Any]]) -> asyncio.Task:
        """
        Schedule ``process(sample)`` without waiting for it.

        For push-style telemetry sources. Tasks start in submission order,
        so the gate still sees samples in arrival order.
        """
        task = asyncio.get_running_loop().create_task(self.process(sample))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def history(
        self,
        limit: int = 20,
        action: Optional[ActionKind] = None
    ) -> list[DecisionEvent]:
        """Most recent decisions, newest first, optionally for one action."""
        events = [e for e in reversed(self._history) if action is None or e.action == action]
        return events[:limit]

    def stats(self) -> EngineStats:
        return self._stats.model_copy()

    def status(self) -> EngineStatus:
        gate = self.gate.snapshot()
        return EngineStatus(
            phase=self._phase,
            in_flight=gate.in_flight,
            cooldown_ms=self.gate.cooldown_ms,
            cooldown_remaining_ms=self.gate.cooldown_remaining(),
            last_decision_at=self._history[-1].timestamp if self._history else None,
            stats=self.stats(),
        )

    async def close(self) -> None:
        """Cancel pending cycles and release transports."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.advisory.close()
        await self.dispatcher.close()
        logger.info("Decision engine closed")
