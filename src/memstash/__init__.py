"""
memstash: an in-process associative memory store.

Holds short text memories, merges near-duplicates, ranks stored content
against free-text queries with a bag-of-words cosine model, and evicts by
capacity and, optionally, by age.
"""

from .config import StoreConfig
from .errors import MalformedSnapshotError, MemoryNotFoundError, MemStashError
from .intelligence import cosine_similarity, tokenize, vectorize
from .memory import MemoryManager
from .record import MemoryMetadata, MemoryRecord, MemoryStats, SearchResult
from .scheduler import ExpiryScheduler
from .store import MemoryStore

__all__ = [
    "ExpiryScheduler",
    "MalformedSnapshotError",
    "MemStashError",
    "MemoryManager",
    "MemoryMetadata",
    "MemoryNotFoundError",
    "MemoryRecord",
    "MemoryStats",
    "MemoryStore",
    "SearchResult",
    "StoreConfig",
    "cosine_similarity",
    "tokenize",
    "vectorize",
]
