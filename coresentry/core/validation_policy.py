"""
Core Sentry - Validation Policy
===============================

Deterministic safety net between the advisory and the dispatcher.

The advisory's proposal is checked against the measured metrics and
replaced whenever it contradicts them. Rules are evaluated in priority
order and the first match wins:

1. Memory above threshold            -> CLEAN_CACHE
2. I/O above threshold               -> REJECT_TRAFFIC
3. Lag above threshold               -> SCALE_UP_WORKERS
4. Lag below 30% of threshold and
   memory below 50%                  -> SCALE_DOWN_WORKERS
5. Escalation proposed, no breach    -> NONE
6. Anything else                     -> advisory action accepted

Because rules 1-3 cover every breached metric, an escalation aimed at the
wrong metric (CLEAN_CACHE while only I/O is high) is redirected to the
right one, and rule 5 only ever sees cycles with nothing breached.

The intensity of the final decision is always recomputed from the
measured excess over the thresholds.
"""

import math

from coresentry.api.schemas import (
    AdvisoryDecision,
    Decision,
    TelemetrySample,
    Thresholds,
    ValidationContext,
    ValidationOutcome,
)
from coresentry.constants import ActionKind, ESCALATION_ACTIONS, Policy, ValidationRule
from coresentry.core.telemetry import format_metric
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)


def _fmt(value: float) -> str:
    """Format a metric for reasons: 100.0 -> '100', 87.456 -> '87.46'."""
    return format_metric(value, ndigits=2)


def build_context(sample: TelemetrySample, thresholds: Thresholds) -> ValidationContext:
    """Compute the metric comparisons for one cycle."""
    lag = float(sample.block_duration)
    memory = float(sample.memory_usage_pct or 0.0)
    io = float(sample.active_requests)

    return ValidationContext(
        lag=lag,
        memory=memory,
        io=io,
        lag_threshold=thresholds.block,
        memory_threshold=thresholds.heap,
        io_threshold=thresholds.io,
        is_lag_high=lag > thresholds.block,
        is_lag_low=lag < thresholds.block * Policy.LAG_LOW_RATIO,
        is_memory_high=memory > thresholds.heap,
        is_io_high=io > thresholds.io,
    )


def _excess(measured: float, threshold: float) -> float:
    if threshold <= 0:
        return 1.0 if measured > threshold else 0.0
    return max(0.0, (measured - threshold) / threshold)


def score_intensity(context: ValidationContext) -> int:
    """
    Urgency from 1 to 10 based on the largest relative threshold excess.

    No breach scores 1; a metric at twice its threshold (or more) scores 10.
    """
    max_excess = max(
        _excess(context.lag, context.lag_threshold),
        _excess(context.memory, context.memory_threshold),
        _excess(context.io, context.io_threshold),
    )
    # Half-up; round() rounds halves to even
    raw = math.floor(1 + max_excess * 9 + 0.5)
    return max(Policy.MIN_INTENSITY, min(Policy.MAX_INTENSITY, raw))


class ValidationPolicy:
    """
    Corrects advisory decisions against measured metrics.

    Example:
        policy = ValidationPolicy()
        context = policy.build_context(sample, thresholds)
        outcome = policy.validate(advice, context)
        dispatch(outcome.decision)
    """

    build_context = staticmethod(build_context)
    score_intensity = staticmethod(score_intensity)

    def _apply_rules(
        self,
        advice: AdvisoryDecision,
        ctx: ValidationContext
    ) -> tuple[ActionKind, str, ValidationRule]:
        if ctx.is_memory_high:
            return (
                ActionKind.CLEAN_CACHE,
                f"Heap usage {_fmt(ctx.memory)}% exceeds threshold of {_fmt(ctx.memory_threshold)}%",
                ValidationRule.MEMORY_BREACH,
            )

        if ctx.is_io_high:
            return (
                ActionKind.REJECT_TRAFFIC,
                f"Active I/O requests {_fmt(ctx.io)} exceed threshold of {_fmt(ctx.io_threshold)}",
                ValidationRule.IO_BREACH,
            )

        if ctx.is_lag_high:
            return (
                ActionKind.SCALE_UP_WORKERS,
                f"Event loop lag {_fmt(ctx.lag)}ms exceeds threshold of {_fmt(ctx.lag_threshold)}ms",
                ValidationRule.LAG_BREACH,
            )

        if ctx.is_lag_low and ctx.memory < Policy.MEMORY_LOW_PERCENT:
            return (
                ActionKind.SCALE_DOWN_WORKERS,
                f"Event loop lag {_fmt(ctx.lag)}ms is below "
                f"{int(Policy.LAG_LOW_RATIO * 100)}% of threshold {_fmt(ctx.lag_threshold)}ms "
                f"and heap usage {_fmt(ctx.memory)}% is low; releasing idle workers",
                ValidationRule.LAG_LOW,
            )

        if advice.action in ESCALATION_ACTIONS:
            return (
                ActionKind.NONE,
                f"All metrics within limits: lag {_fmt(ctx.lag)}ms/{_fmt(ctx.lag_threshold)}ms, "
                f"heap {_fmt(ctx.memory)}%/{_fmt(ctx.memory_threshold)}%, "
                f"I/O {_fmt(ctx.io)}/{_fmt(ctx.io_threshold)}",
                ValidationRule.FALSE_ESCALATION,
            )

        return advice.action, advice.reason, ValidationRule.ADVISORY_ACCEPTED

    def validate(self, advice: AdvisoryDecision, context: ValidationContext) -> ValidationOutcome:
        """Return the final decision for ``advice`` under ``context``."""
        action, reason, rule = self._apply_rules(advice, context)
        corrected = action != advice.action
        if not reason:
            reason = f"Advisory chose {action.value}"

        decision = Decision(
            action=action,
            reason=reason,
            intensity=score_intensity(context),
        )
        outcome = ValidationOutcome(
            decision=decision,
            rule=rule,
            advisory_action=advice.action,
            corrected=corrected,
        )

        log_extra = {
            "advisory_action": advice.action.value,
            "action": action.value,
            "rule": rule.value,
            "intensity": decision.intensity,
            "lag_ms": context.lag,
            "memory_pct": context.memory,
            "active_io": context.io,
        }
        if corrected:
            logger.warning(
                f"Advisory decision corrected: {advice.action.value} -> {action.value}",
                extra=log_extra
            )
        else:
            logger.info(f"Advisory decision accepted: {action.value}", extra=log_extra)

        return outcome
