"""
Core Sentry - Decision Gate
===========================

Cooldown and single-flight gate in front of the advisory service.

At most one advisory call may be outstanding, and a new call is only
admitted once the cooldown has elapsed since the start of the last
successful call. Denied events are dropped; this is the backpressure that
protects the advisory service from bursts of telemetry.
"""

import time
from typing import Callable, Optional
from threading import Lock

from coresentry.api.schemas import GateState
from coresentry.constants import GateDecision, Timing


class DecisionGate:
    """
    Gate state owned by a single DecisionEngine.

    Times are in seconds from ``clock`` (``time.monotonic`` by default);
    the cooldown is configured in milliseconds.
    """

    def __init__(
        self,
        cooldown_ms: float = Timing.COOLDOWN_MS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cooldown_ms = cooldown_ms
        self.clock = clock
        self._in_flight = False
        self._last_decision_at: Optional[float] = None
        self._lock = Lock()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def last_decision_at(self) -> Optional[float]:
        return self._last_decision_at

    def now(self) -> float:
        return self.clock()

    def cooldown_remaining(self, now: Optional[float] = None) -> float:
        """Milliseconds left before the cooldown allows another call."""
        if self._last_decision_at is None:
            return 0.0
        now = self.clock() if now is None else now
        elapsed_ms = (now - self._last_decision_at) * 1000
        return max(0.0, self.cooldown_ms - elapsed_ms)

    def admit(self, now: Optional[float] = None) -> GateDecision:
        """
        Try to claim the gate.

        Returns ``GateDecision.ADMITTED`` and marks the gate in flight, or
        a denial reason without changing any state.
        """
        now = self.clock() if now is None else now
        with self._lock:
            if self._in_flight:
                return GateDecision.IN_FLIGHT
            if self.cooldown_remaining(now) > 0:
                return GateDecision.COOLDOWN
            self._in_flight = True
            return GateDecision.ADMITTED

    def release(self, started_at: float, success: bool) -> None:
        """
        Release the gate after an admitted cycle.

        Only a successful cycle advances the cooldown, so a failed or timed
        out advisory call does not delay the next attempt.
        """
        with self._lock:
            self._in_flight = False
            if success:
                self._last_decision_at = started_at

    def snapshot(self) -> GateState:
        return GateState(
            in_flight=self._in_flight,
            last_decision_at=self._last_decision_at
        )
