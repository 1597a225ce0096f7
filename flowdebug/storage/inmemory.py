"""In-memory implementation of the artifact store."""

from __future__ import annotations

import copy
from typing import Any, Dict, Sequence, Tuple

from .base import ArtifactStore


class InMemoryArtifactStore(ArtifactStore):
    """Keep documents in local memory.

    Used where no durable storage is wanted, such as unit tests or embedded
    use. Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._documents: Dict[Tuple[str, ...], dict[str, Any]] = {}

    async def save(self, parts: Sequence[str], document: dict[str, Any]) -> None:
        self._documents[tuple(parts)] = copy.deepcopy(document)

    async def load(self, parts: Sequence[str]) -> dict[str, Any] | None:
        document = self._documents.get(tuple(parts))
        return copy.deepcopy(document) if document is not None else None

    async def delete(self, parts: Sequence[str]) -> None:
        self._documents.pop(tuple(parts), None)

    async def load_all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._documents.values()]
