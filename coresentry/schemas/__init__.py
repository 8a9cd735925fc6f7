"""
Core Sentry - Event Schemas
===========================

Events broadcast to stream subscribers (dashboards, log shippers).
"""

from coresentry.schemas.events import (
    BaseEvent,
    TelemetryEvent,
    DecisionEvent,
)

__all__ = [
    "BaseEvent",
    "TelemetryEvent",
    "DecisionEvent",
]
