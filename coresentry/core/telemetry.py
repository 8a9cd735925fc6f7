"""
Core Sentry - Telemetry Normalization
=====================================

Fills in derived fields of incoming samples. The native inspector reports
raw heap figures and may or may not include a percentage; older builds
send it formatted as ``"80.50%"``.
"""

import re
from typing import Any, Mapping, Optional, Union

from coresentry.api.schemas import TelemetrySample, Thresholds

_PERCENT_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*%?\s*$")


def parse_percent(value: Optional[str]) -> Optional[float]:
    """Parse ``"80.50%"`` (or ``"80.5"``) into a float."""
    if not value:
        return None
    match = _PERCENT_RE.match(value)
    return float(match.group(1)) if match else None


def derive_memory_pct(used_heap: int, total_heap: int) -> float:
    if total_heap <= 0:
        return 0.0
    return used_heap / total_heap * 100


def normalize_sample(sample: Union[TelemetrySample, Mapping[str, Any]]) -> TelemetrySample:
    """
    Return a sample with ``memory_usage_pct`` populated.

    Precedence: the numeric percentage, then the formatted string, then
    ``used_heap / total_heap``.
    """
    if not isinstance(sample, TelemetrySample):
        sample = TelemetrySample.model_validate(sample)

    if sample.memory_usage_pct is not None:
        return sample

    memory_pct = parse_percent(sample.memory_usage)
    if memory_pct is None:
        memory_pct = derive_memory_pct(sample.used_heap, sample.total_heap)

    return sample.model_copy(update={"memory_usage_pct": memory_pct})


def function_name(sample: TelemetrySample) -> str:
    """Strip the ``(script)`` suffix the inspector appends to function names."""
    return sample.function.split(" (", 1)[0].strip()


def is_critical(sample: TelemetrySample, thresholds: Thresholds) -> bool:
    """Whether the blocking function is one of the configured critical functions."""
    return function_name(sample) in thresholds.critical_functions


def format_metric(value: float, ndigits: Optional[int] = None) -> str:
    """
    Render a metric without exponent notation or a trailing ``.0``.

    ``format_metric(100.0) -> '100'``, ``format_metric(12345678.9) -> '12345678.9'``.
    Pass ``ndigits`` to round first.
    """
    value = float(value)
    if ndigits is not None:
        value = round(value, ndigits)
    if value.is_integer():
        return str(int(value))
    return repr(value)
