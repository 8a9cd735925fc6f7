"""
Core Sentry
===========

Self-healing control loop for a running process.

Telemetry samples (event-loop stall, heap pressure, pending I/O) are gated
through a cooldown/single-flight check, sent to an advisory model for a
remedial action, corrected by a deterministic validation policy and
dispatched to pluggable action handlers.
"""

__version__ = "0.1.0"
__author__ = "Core Sentry Team"
