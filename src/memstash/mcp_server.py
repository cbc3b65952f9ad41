"""
MCP (Model Context Protocol) server for memstash.

Exposes a snapshot-backed MemoryManager as a set of tools so that an
assistant can remember and recall short facts across sessions.

Run as a stdio server:
    python -m memstash.mcp_server

Or through the console script:
    memstash-mcp

Environment:
    MEMSTASH_SNAPSHOT_PATH         - snapshot file (default: ~/.cache/memstash/memories.json)
    MEMSTASH_MAX_MEMORIES          - store capacity (default: 1000)
    MEMSTASH_SIMILARITY_THRESHOLD  - merge threshold (default: 0.7)
    MEMSTASH_AUTO_EXPIRE           - "1"/"true" to expire old memories (default: off)
    MEMSTASH_EXPIRE_AFTER_DAYS     - expiry age in days (default: 30)
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_EXPIRE_AFTER_DAYS, DEFAULT_MAX_MEMORIES, StoreConfig
from .intelligence import SIMILARITY_THRESHOLD
from .memory import MemoryManager

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_DEFAULT_SNAPSHOT_PATH = str(Path.home() / ".cache" / "memstash" / "memories.json")


def config_from_env(environ: Mapping[str, str] | None = None) -> StoreConfig:
    """Build the store configuration from ``MEMSTASH_*`` environment variables."""
    env = os.environ if environ is None else environ
    return StoreConfig(
        max_memories=int(env.get("MEMSTASH_MAX_MEMORIES", DEFAULT_MAX_MEMORIES)),
        similarity_threshold=float(
            env.get("MEMSTASH_SIMILARITY_THRESHOLD", SIMILARITY_THRESHOLD)
        ),
        auto_expire=env.get("MEMSTASH_AUTO_EXPIRE", "").strip().lower() in {"1", "true", "yes", "on"},
        expire_after_days=float(
            env.get("MEMSTASH_EXPIRE_AFTER_DAYS", DEFAULT_EXPIRE_AFTER_DAYS)
        ),
    )


_SNAPSHOT_PATH = os.environ.get("MEMSTASH_SNAPSHOT_PATH", _DEFAULT_SNAPSHOT_PATH)

# Lazy-initialised singleton so the snapshot is only loaded once.
_manager: MemoryManager | None = None


def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager(path=_SNAPSHOT_PATH, config=config_from_env())
    return _manager


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memstash",
    instructions=(
        "Short-term associative memory. "
        "Use `store_memory` to save a fact, preference or decision worth "
        "keeping; near-duplicates are merged into the existing entry. "
        "Use `retrieve_memories` to recall memories similar to a topic. "
        "Use `search_memories_by_tags` to recall memories by tag. "
        "`list_memories` pages through everything, newest first. "
        "`delete_memory` forgets an entry by id. "
        "Use `count_memories` and `memory_stats` to inspect the store."
    ),
)


@mcp.tool()
def store_memory(
    content: str,
    tags: list[str] | None = None,
    category: str | None = None,
) -> str:
    """
    Store a short piece of context for later retrieval.

    Content very similar to an existing memory replaces that memory
    instead of being stored twice.

    Args:
        content:  The text to remember.
        tags:     Optional tags used by search_memories_by_tags.
        category: Optional category label.

    Returns:
        A confirmation message with the ID of the stored memory.
    """
    memory_id = _get_manager().store(content, tags=tags, category=category)
    return f"Stored memory {memory_id}."


@mcp.tool()
def retrieve_memories(query: str, n_results: int = 5) -> str:
    """
    Retrieve the memories most similar to a free-text query.

    Args:
        query:     Question or topic to search for.
        n_results: Maximum number of memories to return (default 5).

    Returns:
        JSON array of matching memories, each with fields:
        id, content, similarity, tags, timestamp.
    """
    matches = _get_manager().retrieve(query, n_results=n_results)
    if not matches:
        return "No memories found."

    rows = [
        {
            "id": r["id"],
            "content": r["content"],
            "similarity": round(r["similarity"], 4),
            "tags": r["metadata"].get("tags", []),
            "timestamp": r["metadata"].get("timestamp"),
        }
        for r in matches
    ]
    return json.dumps(rows, indent=2)


@mcp.tool()
def search_memories_by_tags(tags: list[str], match_all: bool = False) -> str:
    """
    Find memories by tag.

    Args:
        tags:      Tags to look for.
        match_all: Require every tag instead of at least one.

    Returns:
        JSON array of memory entries with id, content, and metadata.
    """
    memories = _get_manager().find_by_tags(tags, match_all=match_all)
    if not memories:
        return "No memories found."
    return json.dumps(memories, indent=2)


@mcp.tool()
def list_memories(limit: int = 50) -> str:
    """
    Page through stored memories, newest first.

    Args:
        limit: Upper bound on the number of memories returned (default 50).

    Returns:
        JSON array of {id, content, metadata} objects.
    """
    memories = _get_manager().list_all(limit=limit)
    if not memories:
        return "No memories stored."
    return json.dumps(memories, indent=2)


@mcp.tool()
def delete_memory(memory_id: str) -> str:
    """
    Forget one memory.

    Args:
        memory_id: A ``mem_<n>`` id from store_memory, retrieve_memories
                   or list_memories.
    """
    if not _get_manager().delete(memory_id):
        return f"No memory with id {memory_id}."
    return f"Deleted memory {memory_id}."


@mcp.tool()
def count_memories() -> str:
    """How many memories the store holds right now."""
    total = _get_manager().count()
    return f"{total} {'memory' if total == 1 else 'memories'} stored."


@mcp.tool()
def memory_stats() -> str:
    """
    Return statistics about the stored memories as JSON: count, limit,
    oldest and newest timestamps, number of distinct tags and average
    content length.
    """
    return json.dumps(_get_manager().stats(), indent=2)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    try:
        mcp.run(transport="stdio")
    finally:
        if _manager is not None:
            _manager.close()


if __name__ == "__main__":
    main()
