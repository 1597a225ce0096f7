"""Durable storage for cache entries and database snapshots."""

from __future__ import annotations

from typing import Literal, Optional

from .base import ArtifactStore
from .filesystem import FileArtifactStore
from .inmemory import InMemoryArtifactStore


def get_store(
    directory: str, backend: Optional[Literal["filesystem", "memory"]] = "filesystem"
) -> ArtifactStore:
    """Factory function to obtain an artifact store.

    ``filesystem`` writes JSON files below ``directory``; ``memory`` keeps
    documents in process memory and ignores ``directory``.
    """

    if backend == "memory":
        return InMemoryArtifactStore()
    if backend == "filesystem":
        return FileArtifactStore(directory)
    raise ValueError(f"Unsupported storage backend: {backend}")


__all__ = [
    "ArtifactStore",
    "FileArtifactStore",
    "InMemoryArtifactStore",
    "get_store",
]
