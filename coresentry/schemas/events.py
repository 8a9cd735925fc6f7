"""
Core Sentry - Event Schemas
===========================

Events emitted by the engine for observability. They describe what the
engine saw and decided; they are separate from the side effects of
dispatching a decision.
"""

from datetime import datetime, timezone
from typing import Literal, Optional
import uuid
from pydantic import BaseModel, Field

from coresentry.api.schemas import TelemetrySample, ValidationOutcome
from coresentry.constants import ActionKind, ValidationRule


class BaseEvent(BaseModel):
    """Base class for all emitted events."""

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this event"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event was generated"
    )
    correlation_id: Optional[str] = Field(
        None,
        description="Correlation ID of the decision cycle"
    )
    source_service: str = Field(
        default="coresentry",
        description="Name of the service that generated this event"
    )


class TelemetryEvent(BaseEvent):
    """A normalized telemetry sample, broadcast as it arrives."""

    event_type: Literal["telemetry"] = "telemetry"
    sample: TelemetrySample
    critical: bool = Field(
        default=False,
        description="Whether the blocking function is configured as critical"
    )


class DecisionEvent(BaseEvent):
    """
    A final decision, broadcast after validation.

    ``advisory_action`` is what the advisory proposed; ``action`` is what
    the engine dispatched. They differ exactly when ``corrected`` is true.
    """

    event_type: Literal["decision"] = "decision"
    function: str = Field(..., description="Function blocking the loop")
    action: ActionKind
    reason: str
    intensity: int = Field(..., ge=1, le=10)
    advisory_action: ActionKind
    corrected: bool
    rule: ValidationRule

    @classmethod
    def from_outcome(
        cls,
        outcome: ValidationOutcome,
        sample: TelemetrySample,
        correlation_id: Optional[str] = None,
        source_service: str = "coresentry"
    ) -> "DecisionEvent":
        """Build the egress event for a validation outcome."""
        return cls(
            correlation_id=correlation_id,
            source_service=source_service,
            function=sample.function,
            action=outcome.decision.action,
            reason=outcome.decision.reason,
            intensity=outcome.decision.intensity,
            advisory_action=outcome.advisory_action,
            corrected=outcome.corrected,
            rule=outcome.rule,
        )
