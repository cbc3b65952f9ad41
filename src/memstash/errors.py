"""
Exceptions raised by memstash.
"""

from __future__ import annotations


class MemStashError(Exception):
    """Base class for all memstash errors."""


class MemoryNotFoundError(MemStashError, KeyError):
    """An operation addressed a memory ID that is not in the store."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(memory_id)
        self.memory_id = memory_id

    def __str__(self) -> str:
        return f"Memory with id {self.memory_id} not found"


class MalformedSnapshotError(MemStashError, ValueError):
    """A snapshot could not be parsed or lacks the required structure."""
