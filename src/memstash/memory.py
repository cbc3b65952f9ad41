"""
MemoryManager: file-backed convenience API over :class:`MemoryStore`.

The store itself lives in memory only.  This wrapper loads a store from the
JSON snapshot written by :meth:`MemoryStore.export_snapshot` and writes it
back after every change, so that short-lived processes (the CLI, the MCP
server) can share memories.

Usage example::

    from memstash import MemoryManager

    memory = MemoryManager(path="./memories.json")

    # Store something worth remembering
    memory_id = memory.store("The user's name is Alice and she prefers Python.",
                             tags=["profile"])

    # Later, retrieve relevant context for a new prompt
    for r in memory.retrieve("Which programming language does the user prefer?"):
        print(r["content"], r["similarity"])
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable

from .config import StoreConfig
from .errors import MalformedSnapshotError
from .record import MemoryRecord
from .store import MemoryStore

logger = logging.getLogger(__name__)

#: Default snapshot location, relative to the working directory.
DEFAULT_SNAPSHOT_PATH: str = "./memstash.json"


def record_to_dict(record: MemoryRecord) -> dict[str, Any]:
    """Plain-dict view of a memory, as returned by the manager."""
    return {
        "id": record.id,
        "content": record.content,
        "metadata": record.metadata.to_dict(),
    }


class MemoryManager:
    """
    Memory store persisted to a JSON snapshot file.

    Parameters
    ----------
    path:
        Snapshot file.  Loaded on construction if it exists and rewritten
        after each change.  ``None`` keeps everything in memory.
    config:
        Store configuration.  When given it overrides the configuration
        saved in the snapshot; otherwise the saved one (or the defaults) is
        used.

    Memories removed by the store's background expiry sweeps are written
    to the snapshot file as soon as the sweep finishes.
    """

    def __init__(
        self,
        path: str | os.PathLike[str] | None = DEFAULT_SNAPSHOT_PATH,
        config: StoreConfig | None = None,
        _store: MemoryStore | None = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self._config = config
        self._store = _store if _store is not None else MemoryStore(config=config)
        self._save_lock = threading.Lock()
        self._store.add_expiry_listener(self._on_expired)
        if self.path is not None and self.path.exists():
            self.load()

    @property
    def memory_store(self) -> MemoryStore:
        """The underlying store."""
        return self._store

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def store(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        tags: Iterable[str] | None = None,
        category: str | None = None,
    ) -> str:
        """
        Store *content*; near-duplicates are merged into the existing entry.

        Parameters
        ----------
        content:
            The text to remember.
        metadata:
            Optional extra key/value pairs.
        tags:
            Tags for the memory; replace the tags of a merged memory.
        category:
            Optional category label.

        Returns
        -------
        str
            ID of the stored (or merged) memory.
        """
        meta: dict[str, Any] = dict(metadata or {})
        if tags is not None:
            meta["tags"] = list(tags)
        if category is not None:
            meta["category"] = category
        memory_id = self._store.add(content, meta)
        self.save()
        return memory_id

    def retrieve(self, query: str, n_results: int = 5) -> list[dict[str, Any]]:
        """
        Retrieve the memories most similar to *query*.

        Returns
        -------
        list[dict]
            Each dict has keys: ``id``, ``content``, ``metadata``,
            ``similarity``.
        """
        return [r.to_dict() for r in self._store.search(query, limit=n_results)]

    def get(self, memory_id: str) -> dict[str, Any] | None:
        record = self._store.get(memory_id)
        return record_to_dict(record) if record is not None else None

    def find_by_tags(self, tags: Iterable[str], match_all: bool = False) -> list[dict[str, Any]]:
        """Return memories tagged with any (or, with *match_all*, all) of *tags*."""
        return [record_to_dict(r) for r in self._store.search_by_tags(tags, match_all=match_all)]

    def list_all(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to *limit* memories, newest first."""
        return [record_to_dict(r) for r in self._store.get_all()[:limit]]

    def delete(self, memory_id: str) -> bool:
        """Delete a memory by its ID; returns whether it existed."""
        deleted = self._store.delete(memory_id)
        if deleted:
            self.save()
        return deleted

    def count(self) -> int:
        """Return the total number of stored memories."""
        return self._store.count()

    def stats(self) -> dict[str, Any]:
        return self._store.get_stats().to_dict()

    def expire(self) -> int:
        """Run an expiry sweep now; returns the number of memories removed."""
        removed = self._store.cleanup_expired()
        if removed:
            self.save()
        return removed

    def export(self) -> str:
        return self._store.export_snapshot()

    def import_snapshot(self, snapshot: str) -> bool:
        """Replace all memories with *snapshot*; returns whether it was accepted."""
        if not self._store.import_snapshot(snapshot):
            return False
        self.save()
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """
        Load the snapshot file into the store.

        Raises
        ------
        MalformedSnapshotError
            The file is not a valid snapshot.
        """
        if self.path is None:
            return
        snapshot: Any = self.path.read_text(encoding="utf-8")
        if self._config is not None:
            try:
                snapshot = json.loads(snapshot)
            except ValueError as exc:
                raise MalformedSnapshotError(f"{self.path} is not valid JSON: {exc}") from exc
            if isinstance(snapshot, dict):
                snapshot["config"] = self._config.to_dict()
        if not self._store.import_snapshot(snapshot):
            raise MalformedSnapshotError(f"Could not load memories from {self.path}")
        logger.debug("Loaded %d memories from %s", self._store.count(), self.path)

    def save(self) -> None:
        """Write the store to the snapshot file (atomically)."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with self._save_lock:
            tmp_path.write_text(self._store.export_snapshot(), encoding="utf-8")
            os.replace(tmp_path, self.path)
        logger.debug("Saved %d memories to %s", self._store.count(), self.path)

    def _on_expired(self, removed: int) -> None:
        logger.debug("Background sweep expired %d memories", removed)
        self.save()

    def close(self) -> None:
        self._store.close()

    def __enter__(self) -> MemoryManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
