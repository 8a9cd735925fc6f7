"""
Core Sentry - Schemas
=====================

Pydantic models for telemetry ingress, thresholds, decisions and the
configuration API. Wire names follow the camelCase format emitted by the
native telemetry source; both alias and attribute names are accepted.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator

from coresentry.constants import (
    ActionKind,
    DefaultThresholds,
    EnginePhase,
    Policy,
    ValidationRule,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_action(value: Any) -> Any:
    """Resolve strings (any case, legacy aliases) to an ActionKind."""
    if isinstance(value, str):
        return ActionKind(value)
    return value


# =============================================================================
# TELEMETRY
# =============================================================================

class TelemetrySample(BaseModel):
    """
    One telemetry sample from the native inspector.

    Immutable once emitted. ``memory_usage_pct`` may be omitted, in which
    case the engine derives it from the heap figures.
    """

    function: str = Field(default="anonymous", description="Function blocking the loop")
    used_heap: int = Field(default=0, ge=0, alias="usedHeap")
    total_heap: int = Field(default=0, ge=0, alias="totalHeap")
    active_requests: int = Field(default=0, ge=0, alias="activeRequests")
    block_duration: float = Field(
        default=0.0,
        ge=0.0,
        alias="blockDuration",
        description="Measured stall duration in milliseconds"
    )
    memory_usage_pct: Optional[float] = Field(
        default=None,
        alias="memoryUsagePct",
        description="Heap usage percentage"
    )
    memory_usage: Optional[str] = Field(
        default=None,
        alias="memoryUsage",
        description="Formatted heap usage, e.g. '80.50%'"
    )
    microtasks_count: Optional[int] = Field(default=None, ge=0, alias="microtasksCount")
    timestamp: datetime = Field(default_factory=_utcnow)

    class Config:
        populate_by_name = True
        frozen = True


# =============================================================================
# THRESHOLDS
# =============================================================================

class Thresholds(BaseModel):
    """Configured limits read by the gate, the prompt and the validator."""

    block: float = Field(
        default=DefaultThresholds.BLOCK_MS,
        ge=0,
        description="Stall duration limit in milliseconds"
    )
    heap: float = Field(
        default=DefaultThresholds.HEAP_PERCENT,
        ge=0,
        description="Heap usage limit in percent"
    )
    io: float = Field(
        default=DefaultThresholds.IO_ACTIVE_REQUESTS,
        ge=0,
        description="Active I/O request limit"
    )
    microtasks: Optional[int] = Field(
        default=None,
        ge=0,
        description="Pending microtask limit"
    )
    critical_functions: set[str] = Field(
        default_factory=set,
        alias="criticalFunctions",
        description="Function names flagged as critical in the prompt"
    )

    class Config:
        populate_by_name = True


class ThresholdUpdate(BaseModel):
    """Partial threshold update; omitted fields are left untouched."""

    block: Optional[float] = Field(default=None, ge=0)
    heap: Optional[float] = Field(default=None, ge=0)
    io: Optional[float] = Field(default=None, ge=0)
    microtasks: Optional[int] = Field(default=None, ge=0)
    critical_functions: Optional[set[str]] = Field(default=None, alias="criticalFunctions")

    class Config:
        populate_by_name = True
        extra = "forbid"


# =============================================================================
# DECISIONS
# =============================================================================

class AdvisoryDecision(BaseModel):
    """Untrusted decision candidate parsed from the advisory reply."""

    action: ActionKind
    reason: str = Field(default="")
    intensity: Optional[int] = Field(default=None)

    @field_validator("action", mode="before")
    @classmethod
    def resolve_action(cls, value: Any) -> Any:
        return _coerce_action(value)

    @field_validator("reason", mode="before")
    @classmethod
    def stringify_reason(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("intensity", mode="before")
    @classmethod
    def clamp_intensity(cls, value: Any) -> Optional[int]:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return None
        return max(Policy.MIN_INTENSITY, min(Policy.MAX_INTENSITY, int(round(value))))


class Decision(BaseModel):
    """Final, validated decision. The only decision ever dispatched."""

    action: ActionKind
    reason: str
    intensity: int = Field(..., ge=Policy.MIN_INTENSITY, le=Policy.MAX_INTENSITY)

    @field_validator("action", mode="before")
    @classmethod
    def resolve_action(cls, value: Any) -> Any:
        return _coerce_action(value)


@dataclass(frozen=True)
class ValidationContext:
    """Metric values, thresholds and breach flags for one decision cycle."""
    lag: float
    memory: float
    io: float
    lag_threshold: float
    memory_threshold: float
    io_threshold: float
    is_lag_high: bool
    is_lag_low: bool
    is_memory_high: bool
    is_io_high: bool

    @property
    def any_breach(self) -> bool:
        return self.is_memory_high or self.is_io_high or self.is_lag_high


@dataclass(frozen=True)
class ValidationOutcome:
    """Final decision together with how it was reached."""
    decision: Decision
    rule: ValidationRule
    advisory_action: ActionKind
    corrected: bool


# =============================================================================
# ENGINE STATUS
# =============================================================================

@dataclass(frozen=True)
class GateState:
    """Read-only snapshot of the single-flight gate."""
    in_flight: bool
    last_decision_at: Optional[float]


class EngineStats(BaseModel):
    """Counters describing how telemetry flowed through the engine."""

    samples_received: int = 0
    admitted: int = 0
    dropped_in_flight: int = 0
    dropped_cooldown: int = 0
    advisory_failures: int = 0
    decisions: int = 0
    corrections: int = 0
    accepted_unmodified: int = 0
    handler_failures: int = 0


class EngineStatus(BaseModel):
    """Diagnostic view of the engine."""

    phase: EnginePhase
    in_flight: bool
    cooldown_ms: float
    cooldown_remaining_ms: float
    last_decision_at: Optional[datetime] = None
    stats: EngineStats


# =============================================================================
# CONFIGURATION API
# =============================================================================

class AdvisoryConfig(BaseModel):
    """Advisory endpoint and model name."""

    endpoint: str = Field(..., description="URL of the generate endpoint")
    model: str = Field(..., description="Model name sent with every request")


class AdvisoryConfigUpdate(BaseModel):
    """Partial advisory configuration update."""

    endpoint: Optional[str] = None
    model: Optional[str] = None


class WebhookHandlerConfig(BaseModel):
    """Registers a webhook as the handler for one action kind."""

    url: str = Field(..., description="URL receiving the final decision as JSON")
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Defaults to the configured webhook timeout"
    )


class RegisteredActions(BaseModel):
    """Action kinds with a custom handler."""

    actions: list[ActionKind]
