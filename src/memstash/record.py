"""
Record types held by the memory store.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

from .errors import MalformedSnapshotError
from .intelligence import vectorize

_TIMESTAMP_KEYS = ("timestamp",)
_LAST_UPDATED_KEYS = ("lastUpdated", "last_updated")


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse a datetime from an ISO-8601 string, a date, or a datetime.

    Handles a 'Z' suffix for UTC.  Naive values are taken to be UTC so that
    every datetime handed back can be compared with every other.

    Raises:
        ValueError: *value* is a string that is not ISO-8601.
        TypeError: *value* is of an unsupported type.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Cannot interpret {value!r} as a datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _unique_tags(tags: Any) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    unique: list[str] = []
    for tag in tags:
        tag = str(tag)
        if tag not in unique:
            unique.append(tag)
    return unique


def _pop_first(data: dict[str, Any], keys: Iterable[str]) -> Any:
    found = None
    for key in keys:
        value = data.pop(key, None)
        if found is None:
            found = value
    return found


@dataclass
class MemoryMetadata:
    """
    Metadata of a memory: well-known fields plus free-form extras.

    Attributes:
        timestamp: Creation time; never changes after creation.
        last_updated: Time of the last update or merge, if any.
        tags: Unique tags in insertion order.
        category: Optional category label.
        extra: Every other caller-supplied key.
    """

    timestamp: datetime
    last_updated: datetime | None = None
    tags: list[str] = field(default_factory=list)
    category: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None,
        *,
        timestamp: datetime,
    ) -> MemoryMetadata:
        """
        Build metadata from a caller mapping.

        A ``timestamp`` in *data* wins over the given *timestamp*.
        """
        remaining = dict(data or {})
        created = parse_datetime(_pop_first(remaining, _TIMESTAMP_KEYS)) or timestamp
        last_updated = parse_datetime(_pop_first(remaining, _LAST_UPDATED_KEYS))
        return cls(
            timestamp=created,
            last_updated=last_updated,
            tags=_unique_tags(remaining.pop("tags", None)),
            category=remaining.pop("category", None),
            extra=remaining,
        )

    def merge(self, updates: Mapping[str, Any] | None) -> None:
        """
        Shallow-merge *updates* over this metadata; new keys win.

        ``tags`` in *updates* replaces the current tags.  ``timestamp`` and
        ``lastUpdated`` are ignored; the store owns both.
        """
        remaining = dict(updates or {})
        _pop_first(remaining, _TIMESTAMP_KEYS)
        _pop_first(remaining, _LAST_UPDATED_KEYS)
        if "tags" in remaining:
            self.tags = _unique_tags(remaining.pop("tags"))
        if "category" in remaining:
            self.category = remaining.pop("category")
        self.extra.update(remaining)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = dict(self.extra)
        data["timestamp"] = self.timestamp.isoformat()
        if self.last_updated is not None:
            data["lastUpdated"] = self.last_updated.isoformat()
        data["tags"] = list(self.tags)
        if self.category is not None:
            data["category"] = self.category
        return data


@dataclass
class MemoryRecord:
    """
    A single stored memory.

    ``vector`` caches :func:`~memstash.intelligence.vectorize` of
    ``content``; it is reset to ``None`` whenever the content changes and
    recomputed by :meth:`refresh_vector`.
    """

    id: str
    content: str
    metadata: MemoryMetadata
    vector: dict[str, float] | None = None

    @property
    def tags(self) -> list[str]:
        return self.metadata.tags

    @property
    def timestamp(self) -> datetime:
        return self.metadata.timestamp

    def add_tag(self, tag: str) -> None:
        if tag not in self.metadata.tags:
            self.metadata.tags.append(tag)

    def remove_tag(self, tag: str) -> None:
        self.metadata.tags = [t for t in self.metadata.tags if t != tag]

    def update_content(self, content: str, now: datetime) -> None:
        """Replace the content, stamp ``last_updated`` and drop the vector."""
        self.content = content
        self.metadata.last_updated = now
        self.vector = None

    def refresh_vector(self) -> dict[str, float]:
        """Compute the vector if it is missing and return it."""
        if self.vector is None:
            self.vector = vectorize(self.content)
        return self.vector

    def copy(self) -> MemoryRecord:
        """Return a deep copy sharing no mutable state with this record."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "tags": list(self.tags),
            "embeddings": self.vector,
        }

    @classmethod
    def from_dict(cls, data: Any) -> MemoryRecord:
        """
        Create from dictionary.

        The cached vector in *data* is discarded; callers recompute it.

        Raises:
            MalformedSnapshotError: *data* lacks the required structure.
        """
        if not isinstance(data, Mapping):
            raise MalformedSnapshotError(f"Memory entry must be an object, got {data!r}")
        memory_id = data.get("id")
        content = data.get("content")
        if not isinstance(memory_id, str) or not memory_id:
            raise MalformedSnapshotError(f"Memory entry has no valid id: {memory_id!r}")
        if not isinstance(content, str):
            raise MalformedSnapshotError(f"Memory {memory_id} has no text content")

        raw_meta = data.get("metadata")
        if not isinstance(raw_meta, Mapping):
            raise MalformedSnapshotError(f"Memory {memory_id} has no metadata object")
        if raw_meta.get("timestamp") is None:
            raise MalformedSnapshotError(f"Memory {memory_id} has no timestamp")

        raw_meta = dict(raw_meta)
        if data.get("tags") is not None:
            raw_meta["tags"] = data["tags"]
        try:
            metadata = MemoryMetadata.from_mapping(raw_meta, timestamp=utc_now())
        except (TypeError, ValueError) as exc:
            raise MalformedSnapshotError(f"Memory {memory_id} has invalid metadata: {exc}") from exc

        return cls(id=memory_id, content=content, metadata=metadata)


@dataclass
class SearchResult:
    """
    Result of a similarity search.

    Attributes:
        record: The matching memory
        similarity: Cosine similarity with the query, in (0, 1]
    """

    record: MemoryRecord
    similarity: float

    @property
    def id(self) -> str:
        return self.record.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.record.id,
            "content": self.record.content,
            "metadata": self.record.metadata.to_dict(),
            "similarity": self.similarity,
        }


@dataclass
class MemoryStats:
    """Statistics about the memories currently held by a store."""

    count: int = 0
    limit: int = 0
    oldest_timestamp: datetime | None = None
    newest_timestamp: datetime | None = None
    distinct_tag_count: int = 0
    average_content_length: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "count": self.count,
            "limit": self.limit,
            "oldest_timestamp": self.oldest_timestamp.isoformat() if self.oldest_timestamp else None,
            "newest_timestamp": self.newest_timestamp.isoformat() if self.newest_timestamp else None,
            "distinct_tag_count": self.distinct_tag_count,
            "average_content_length": self.average_content_length,
        }
