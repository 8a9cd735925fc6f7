"""
Core Sentry - Threshold Store
=============================

Process-wide limits for stall duration, heap usage and active I/O.
Updates are shallow merges: only the supplied fields change.
"""

from typing import Any, Mapping, Optional
from threading import Lock

from coresentry.api.schemas import Thresholds
from coresentry.utils.logging import get_logger

logger = get_logger(__name__)

# Fields that fall back to their default when explicitly cleared
_RESETTABLE = ("block", "heap", "io", "critical_functions")


def _field_names() -> dict[str, str]:
    """Map attribute names and wire aliases to attribute names."""
    names = {}
    for name, info in Thresholds.model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    return names


class ThresholdStore:
    """
    Thread-safe in-memory threshold storage.

    ``get()`` always returns a copy, so callers cannot mutate the live
    configuration through the returned value.
    """

    def __init__(self, defaults: Optional[Thresholds] = None):
        self._defaults = defaults.model_copy(deep=True) if defaults else Thresholds()
        self._thresholds = self._defaults.model_copy(deep=True)
        self._lock = Lock()
        self._names = _field_names()

    @property
    def defaults(self) -> Thresholds:
        return self._defaults.model_copy(deep=True)

    def get(self) -> Thresholds:
        """Return a copy of the current thresholds."""
        with self._lock:
            return self._thresholds.model_copy(deep=True)

    def set(self, partial: Optional[Mapping[str, Any]] = None, **changes: Any) -> Thresholds:
        """
        Merge the given fields into the current thresholds.

        Accepts attribute names or wire aliases (``criticalFunctions``).
        ``None`` for block, heap, io or critical_functions restores that
        field's default.

        Raises:
            ValueError: On unknown fields or values failing validation.
        """
        updates = dict(partial or {})
        updates.update(changes)

        normalized: dict[str, Any] = {}
        for key, value in updates.items():
            name = self._names.get(key)
            if name is None:
                raise ValueError(f"Unknown threshold field: {key}")
            if value is None and name in _RESETTABLE:
                value = getattr(self.defaults, name)
            normalized[name] = value

        with self._lock:
            merged = self._thresholds.model_dump()
            merged.update(normalized)
            # model_validate raises pydantic.ValidationError, a ValueError subclass
            self._thresholds = Thresholds.model_validate(merged)
            current = self._thresholds.model_copy(deep=True)

        if normalized:
            logger.info(
                "Thresholds updated",
                extra={"changed": sorted(normalized), "thresholds": current.model_dump(mode="json")}
            )
        return current

    def reset(self) -> Thresholds:
        """Restore the configured defaults."""
        with self._lock:
            self._thresholds = self._defaults.model_copy(deep=True)
            current = self._thresholds.model_copy(deep=True)

        logger.info("Thresholds reset to defaults")
        return current
