"""
Core Sentry - Core Package
"""

from coresentry.core.action_dispatcher import ActionDispatcher, WebhookActionHandler
from coresentry.core.advisory_client import AdvisoryClient, HttpAdvisoryTransport, MockAdvisoryTransport
from coresentry.core.decision_engine import DecisionEngine
from coresentry.core.gate import DecisionGate
from coresentry.core.threshold_store import ThresholdStore
from coresentry.core.validation_policy import ValidationPolicy

__all__ = [
    "ActionDispatcher",
    "WebhookActionHandler",
    "AdvisoryClient",
    "HttpAdvisoryTransport",
    "MockAdvisoryTransport",
    "DecisionEngine",
    "DecisionGate",
    "ThresholdStore",
    "ValidationPolicy",
]
