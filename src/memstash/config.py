"""
Store configuration.

The snapshot format stores the configuration under camelCase keys
(``maxMemories``, ``similarityThreshold``, ...) so that snapshots stay
readable by other implementations of the same format.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from .intelligence import SIMILARITY_THRESHOLD

#: Default capacity of a store.
DEFAULT_MAX_MEMORIES: int = 1000

#: Default age, in days, after which memories expire.
DEFAULT_EXPIRE_AFTER_DAYS: int = 30

#: Default seconds between two expiry sweeps (daily).
DEFAULT_SWEEP_INTERVAL: float = 24 * 60 * 60

#: Longest accepted expiry age (a century).
MAX_EXPIRE_AFTER_DAYS: int = 100 * 365

#: Longest accepted sweep interval; ``Event.wait`` rejects larger timeouts.
MAX_SWEEP_INTERVAL: float = min(threading.TIMEOUT_MAX, 365 * 24 * 60 * 60)

_WIRE_KEYS = {
    "max_memories": "maxMemories",
    "similarity_threshold": "similarityThreshold",
    "auto_expire": "autoExpire",
    "expire_after_days": "expireAfterDays",
    "sweep_interval": "sweepInterval",
}


def _check_duration(name: str, value: Any, upper: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if not 0 < value <= upper:
        raise ValueError(f"{name} must be within (0, {upper:g}], got {value}")


@dataclass(frozen=True)
class StoreConfig:
    """
    Configuration of a :class:`~memstash.store.MemoryStore`.

    Attributes:
        max_memories: Maximum number of memories kept; the oldest is evicted
            when an add goes over it.
        similarity_threshold: Similarity strictly above which new content is
            merged into an existing memory.
        auto_expire: Whether memories older than *expire_after_days* are
            swept periodically.
        expire_after_days: Age in days at which a memory expires.
        sweep_interval: Seconds between two expiry sweeps.
    """

    max_memories: int = DEFAULT_MAX_MEMORIES
    similarity_threshold: float = SIMILARITY_THRESHOLD
    auto_expire: bool = False
    expire_after_days: float = DEFAULT_EXPIRE_AFTER_DAYS
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL

    def __post_init__(self) -> None:
        if isinstance(self.max_memories, bool) or not isinstance(self.max_memories, int):
            raise ValueError(f"max_memories must be an integer, got {self.max_memories!r}")
        if self.max_memories < 1:
            raise ValueError(f"max_memories must be at least 1, got {self.max_memories}")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError(
                f"similarity_threshold must be within [0, 1], got {self.similarity_threshold}"
            )
        if not isinstance(self.auto_expire, bool):
            raise ValueError(f"auto_expire must be a boolean, got {self.auto_expire!r}")
        _check_duration("expire_after_days", self.expire_after_days, MAX_EXPIRE_AFTER_DAYS)
        _check_duration("sweep_interval", self.sweep_interval, MAX_SWEEP_INTERVAL)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the snapshot representation."""
        return {_WIRE_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}

    def merged(self, data: Mapping[str, Any]) -> StoreConfig:
        """
        Return a copy with the settings in *data* applied on top.

        *data* uses the snapshot keys; unknown keys are ignored and missing
        keys keep their current value.  Raises ``ValueError`` or
        ``TypeError`` when a value is invalid.
        """
        changes = {
            name: data[wire_key]
            for name, wire_key in _WIRE_KEYS.items()
            if wire_key in data
        }
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StoreConfig:
        """Create from the snapshot representation."""
        return cls().merged(data)
