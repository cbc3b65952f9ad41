"""
In-process memory store with similarity-based deduplication and eviction.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import StoreConfig
from .errors import MalformedSnapshotError, MemoryNotFoundError
from .intelligence import (
    cosine_similarity,
    deduplicate_content,
    format_id,
    id_sequence,
    vectorize,
)
from .record import (
    MemoryMetadata,
    MemoryRecord,
    MemoryStats,
    SearchResult,
    parse_datetime,
    utc_now,
)
from .scheduler import ExpiryScheduler

logger = logging.getLogger(__name__)


class MemoryStore:
    """
    Thread-safe in-memory store of short text memories.

    Responsibilities
    ----------------
    * **Add** – Vectorizes new content and compares it with every stored
      memory.  Content whose best match is more similar than
      ``config.similarity_threshold`` is merged into that memory; anything
      else becomes a new memory.  Going over ``config.max_memories`` evicts
      the memory with the oldest creation timestamp.
    * **Query** – Similarity search, tag search, date-range queries and
      statistics over the current memories.
    * **Expire** – When ``config.auto_expire`` is set, an
      :class:`~memstash.scheduler.ExpiryScheduler` deletes memories older
      than ``config.expire_after_days`` every ``config.sweep_interval``
      seconds.  Call :meth:`close` (or use the store as a context manager)
      to stop it.
    * **Snapshot** – :meth:`export_snapshot` / :meth:`import_snapshot`
      round-trip the whole store through JSON.

    Every public method holds a single re-entrant lock, so the expiry sweep
    never interleaves with other operations.
    Records handed out by the store are copies; changing them does not
    change the stored memory.

    Parameters
    ----------
    config:
        Store configuration.  Defaults to :class:`StoreConfig` defaults.
    clock:
        Callable returning the current time as an aware ``datetime``.
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or StoreConfig()
        self._clock = clock
        self._records: dict[str, MemoryRecord] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        self._scheduler: ExpiryScheduler | None = None
        self._closed = False
        self._expiry_listeners: list[Callable[[int], None]] = []
        self._sync_scheduler()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def next_id(self) -> int:
        """Counter value the next new memory will be numbered with."""
        return self._next_id

    @property
    def scheduler(self) -> ExpiryScheduler | None:
        """The running expiry scheduler, if auto-expire is enabled."""
        return self._scheduler

    def count(self) -> int:
        """Return the number of stored memories."""
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, memory_id: object) -> bool:
        with self._lock:
            return memory_id in self._records

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add(self, content: str, metadata: Mapping[str, Any] | None = None) -> str:
        """
        Store *content*, merging it into a near-duplicate if one exists.

        Returns the ID of the new memory, or of the existing memory the
        content was merged into.
        """
        vector = vectorize(content)
        with self._lock:
            matches = self._rank(vector, limit=1)
            is_dup, best_idx = deduplicate_content(
                [m.similarity for m in matches],
                self._config.similarity_threshold,
            )
            if is_dup and best_idx is not None:
                existing = matches[best_idx].record
                logger.debug(
                    "Merging into %s (similarity=%.3f)",
                    existing.id,
                    matches[best_idx].similarity,
                )
                self._apply_update(existing, content, metadata)
                return existing.id

            record = MemoryRecord(
                id=self._allocate_id(),
                content=content,
                metadata=MemoryMetadata.from_mapping(metadata, timestamp=self._now()),
                vector=vector,
            )
            self._records[record.id] = record
            while len(self._records) > self._config.max_memories:
                self._evict_oldest()
            return record.id

    def update(
        self,
        memory_id: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> MemoryRecord:
        """
        Replace the content of a memory and merge *metadata* into it.

        Unlike :meth:`add` no deduplication takes place.

        Raises:
            MemoryNotFoundError: *memory_id* is not stored.
        """
        with self._lock:
            record = self._records.get(memory_id)
            if record is None:
                raise MemoryNotFoundError(memory_id)
            self._apply_update(record, content, metadata)
            return record.copy()

    def delete(self, memory_id: str) -> bool:
        """Delete a memory; returns whether it existed."""
        with self._lock:
            return self._records.pop(memory_id, None) is not None

    def clear(self) -> None:
        """Remove every memory and restart ID numbering."""
        with self._lock:
            self._records.clear()
            self._next_id = 1

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, memory_id: str) -> MemoryRecord | None:
        """Fetch a single memory by ID."""
        with self._lock:
            record = self._records.get(memory_id)
            return record.copy() if record is not None else None

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """
        Return up to *limit* memories similar to *query*, best first.

        Only memories with a strictly positive similarity are returned;
        equal scores keep insertion order.
        """
        vector = vectorize(query)
        with self._lock:
            return [
                SearchResult(record=match.record.copy(), similarity=match.similarity)
                for match in self._rank(vector, limit)
            ]

    def find_similar(self, content: str, limit: int = 5) -> list[SearchResult]:
        """Return up to *limit* memories similar to *content*, best first."""
        return self.search(content, limit)

    def search_by_tags(
        self,
        tags: Iterable[str],
        match_all: bool = False,
    ) -> list[MemoryRecord]:
        """
        Return memories carrying any of *tags* (all of them with *match_all*).
        """
        wanted = list(tags)
        match = all if match_all else any
        with self._lock:
            return [
                record.copy()
                for record in self._records.values()
                if match(tag in record.tags for tag in wanted)
            ]

    def get_by_date_range(
        self,
        start: datetime | str,
        end: datetime | str,
    ) -> list[MemoryRecord]:
        """
        Return memories created between *start* and *end* inclusive,
        newest first.

        Both bounds accept a datetime or an ISO-8601 string; naive values
        are taken to be UTC.
        """
        start_dt = parse_datetime(start)
        end_dt = parse_datetime(end)
        with self._lock:
            selected = [
                record.copy()
                for record in self._records.values()
                if start_dt <= record.timestamp <= end_dt
            ]
        return sorted(selected, key=lambda r: r.timestamp, reverse=True)

    def get_all(self) -> list[MemoryRecord]:
        """Return every memory, newest first."""
        with self._lock:
            records = [record.copy() for record in self._records.values()]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def get_stats(self) -> MemoryStats:
        """Return statistics about the current memories."""
        with self._lock:
            records = list(self._records.values())
            limit = self._config.max_memories

        if not records:
            return MemoryStats(count=0, limit=limit)

        timestamps = [r.timestamp for r in records]
        return MemoryStats(
            count=len(records),
            limit=limit,
            oldest_timestamp=min(timestamps),
            newest_timestamp=max(timestamps),
            distinct_tag_count=len({tag for r in records for tag in r.tags}),
            average_content_length=sum(len(r.content) for r in records) / len(records),
        )

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """
        Delete memories older than ``config.expire_after_days``.

        Does nothing unless ``config.auto_expire`` is set.  Returns the
        number of memories deleted.
        """
        with self._lock:
            if not self._config.auto_expire:
                return 0
            cutoff = self._now() - timedelta(days=self._config.expire_after_days)
            expired = [
                memory_id
                for memory_id, record in self._records.items()
                if record.timestamp < cutoff
            ]
            for memory_id in expired:
                del self._records[memory_id]

        if expired:
            logger.info("Expired %d memories older than %s", len(expired), cutoff.isoformat())
        return len(expired)

    def add_expiry_listener(self, callback: Callable[[int], None]) -> None:
        """
        Call *callback* with the number of memories removed after each
        scheduled sweep that removed at least one.
        """
        with self._lock:
            self._expiry_listeners.append(callback)

    def close(self) -> None:
        """Stop the expiry scheduler, if any."""
        with self._lock:
            self._closed = True
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.stop()

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export_snapshot(self) -> str:
        """
        Serialize every memory, the configuration and the ID counter to JSON.

        The result is a JSON object with keys ``memories`` (a list of
        ``[id, memory]`` pairs), ``config``, ``nextId`` and ``exportDate``.
        """
        with self._lock:
            data = {
                "memories": [
                    [memory_id, record.to_dict()]
                    for memory_id, record in self._records.items()
                ],
                "config": self._config.to_dict(),
                "nextId": self._next_id,
                "exportDate": self._now().isoformat(),
            }
        return json.dumps(data, indent=2, default=str)

    def import_snapshot(self, snapshot: str | bytes | Mapping[str, Any]) -> bool:
        """
        Replace the store's memories, configuration and ID counter with
        those of *snapshot*.

        *snapshot* is the JSON produced by :meth:`export_snapshot` or the
        already-decoded object.  It is fully validated before anything is
        replaced: on failure this returns ``False`` and the store is left
        exactly as it was.
        """
        with self._lock:
            try:
                records, config, next_id = self._parse_snapshot(snapshot)
            except MalformedSnapshotError as exc:
                logger.warning("Failed to import memories: %s", exc)
                return False

            self._records = records
            self._config = config
            self._next_id = next_id
            self._sync_scheduler()

        logger.info("Imported %d memories", len(records))
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return parse_datetime(self._clock())

    def _scheduled_sweep(self) -> None:
        removed = self.cleanup_expired()
        if removed:
            with self._lock:
                listeners = list(self._expiry_listeners)
            for callback in listeners:
                callback(removed)

    def _allocate_id(self) -> str:
        while True:
            memory_id = format_id(self._next_id)
            self._next_id += 1
            if memory_id not in self._records:
                return memory_id

    def _apply_update(
        self,
        record: MemoryRecord,
        content: str,
        metadata: Mapping[str, Any] | None,
    ) -> None:
        record.update_content(content, self._now())
        record.metadata.merge(metadata)
        record.refresh_vector()

    def _rank(self, vector: Mapping[str, float], limit: int) -> list[SearchResult]:
        if limit <= 0:
            return []
        results: list[SearchResult] = []
        for record in self._records.values():
            similarity = cosine_similarity(vector, record.refresh_vector())
            if similarity > 0:
                results.append(SearchResult(record=record, similarity=similarity))
        # list.sort is stable, so ties keep insertion order.
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    def _evict_oldest(self) -> None:
        # min() keeps the first of equal timestamps: the earliest inserted.
        oldest = min(self._records.values(), key=lambda r: r.timestamp)
        del self._records[oldest.id]
        logger.debug("Evicted %s (capacity %d)", oldest.id, self._config.max_memories)

    def _sync_scheduler(self) -> None:
        wanted = self._config.auto_expire and not self._closed
        current = self._scheduler
        if current is not None and (not wanted or current.interval != self._config.sweep_interval):
            # The lock is held here; a sweep waiting on it must not be joined.
            current.stop(timeout=0)
            self._scheduler = current = None
        if wanted and current is None:
            self._scheduler = ExpiryScheduler(
                self._scheduled_sweep,
                interval=self._config.sweep_interval,
            )
            self._scheduler.start()

    def _parse_snapshot(
        self,
        snapshot: str | bytes | Mapping[str, Any],
    ) -> tuple[dict[str, MemoryRecord], StoreConfig, int]:
        if isinstance(snapshot, (str, bytes, bytearray)):
            try:
                data = json.loads(snapshot)
            except ValueError as exc:
                raise MalformedSnapshotError(f"Snapshot is not valid JSON: {exc}") from exc
        else:
            data = snapshot

        if not isinstance(data, Mapping):
            raise MalformedSnapshotError("Snapshot must be a JSON object")

        entries = data.get("memories")
        if not isinstance(entries, list):
            raise MalformedSnapshotError("Snapshot has no 'memories' list")

        records: dict[str, MemoryRecord] = {}
        for entry in entries:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                raise MalformedSnapshotError(f"Memory entry must be an [id, memory] pair: {entry!r}")
            key, raw = entry
            record = MemoryRecord.from_dict(raw)
            if key != record.id:
                raise MalformedSnapshotError(f"Memory key {key!r} does not match id {record.id!r}")
            if key in records:
                raise MalformedSnapshotError(f"Duplicate memory id {key!r}")
            record.refresh_vector()
            records[key] = record

        raw_config = data.get("config") or {}
        if not isinstance(raw_config, Mapping):
            raise MalformedSnapshotError("Snapshot 'config' must be an object")
        try:
            config = self._config.merged(raw_config)
        except (TypeError, ValueError) as exc:
            raise MalformedSnapshotError(f"Snapshot has invalid config: {exc}") from exc

        next_id = data.get("nextId") or 1
        if isinstance(next_id, bool) or not isinstance(next_id, int) or next_id < 1:
            raise MalformedSnapshotError(f"Snapshot 'nextId' must be a positive integer: {next_id!r}")
        sequences = [s for s in map(id_sequence, records) if s is not None]
        if sequences:
            next_id = max(next_id, max(sequences) + 1)

        return records, config, next_id
