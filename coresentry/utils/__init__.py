"""
Core Sentry - Utilities Package
===============================

Structured logging and the HTTP client used for outbound calls.
"""

from coresentry.utils.logging import get_logger, setup_logging
from coresentry.utils.http_client import ServiceClient, ServiceClientConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "ServiceClient",
    "ServiceClientConfig",
]
