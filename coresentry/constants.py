"""
Core Sentry - Constants
=======================

Action kinds, gate outcomes and default values shared by all components.
Defaults can be overridden via environment variables (see config.py).
"""

from enum import Enum


# Old advisory prompts and handler registrations used these names.
LEGACY_ACTION_ALIASES = {
    "SCALE_WORKERS": "SCALE_UP_WORKERS",
}


class ActionKind(str, Enum):
    """Remedial actions the engine can dispatch."""
    CLEAN_CACHE = "CLEAN_CACHE"                 # Reclaim memory
    SCALE_UP_WORKERS = "SCALE_UP_WORKERS"       # Add workers to absorb lag
    SCALE_DOWN_WORKERS = "SCALE_DOWN_WORKERS"   # Release idle workers
    REJECT_TRAFFIC = "REJECT_TRAFFIC"           # Shed incoming load
    NONE = "NONE"                               # No action required

    # Legacy alias, resolves to the same member as SCALE_UP_WORKERS
    SCALE_WORKERS = "SCALE_UP_WORKERS"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().upper()
            normalized = LEGACY_ACTION_ALIASES.get(normalized, normalized)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


ESCALATION_ACTIONS = frozenset({
    ActionKind.SCALE_UP_WORKERS,
    ActionKind.CLEAN_CACHE,
    ActionKind.REJECT_TRAFFIC,
})


class GateDecision(str, Enum):
    """
    Outcome of a gate admission check.

    Only ``ADMITTED`` is truthy, so ``if gate.admit():`` is safe.
    """
    ADMITTED = "admitted"
    IN_FLIGHT = "in_flight"     # Another advisory call is outstanding
    COOLDOWN = "cooldown"       # Last successful call started too recently

    def __bool__(self) -> bool:
        return self is GateDecision.ADMITTED


class EnginePhase(str, Enum):
    """Phases of a decision cycle."""
    IDLE = "idle"
    QUERYING = "querying"
    VALIDATING = "validating"
    DISPATCHING = "dispatching"


class ValidationRule(str, Enum):
    """Rule of the validation policy that produced a final decision."""
    MEMORY_BREACH = "memory_breach"
    IO_BREACH = "io_breach"
    LAG_BREACH = "lag_breach"
    LAG_LOW = "lag_low"
    FALSE_ESCALATION = "false_escalation"
    ADVISORY_ACCEPTED = "advisory_accepted"


class DefaultThresholds:
    """Default limits used when a threshold was never configured."""
    BLOCK_MS = 10000            # Event-loop stall duration
    HEAP_PERCENT = 80           # Heap usage
    IO_ACTIVE_REQUESTS = 50     # Pending I/O requests


class Policy:
    """Fixed ratios used by the validation policy."""
    LAG_LOW_RATIO = 0.3         # Lag below 30% of threshold is "low"
    MEMORY_LOW_PERCENT = 50     # Scale down only below 50% heap
    MIN_INTENSITY = 1
    MAX_INTENSITY = 10


class Timing:
    """Timing constants for engine behavior."""
    COOLDOWN_MS = 10000             # 10 seconds between advisory decisions
    ADVISORY_TIMEOUT_SECONDS = 30.0
    WEBHOOK_TIMEOUT_SECONDS = 10.0


class Advisory:
    """Defaults for the advisory (LLM) service."""
    ENDPOINT = "http://localhost:11434/api/generate"
    MODEL = "llama3"
    TEMPERATURE = 0.1
    TOP_P = 0.9
