"""Storage abstraction for persisted cache entries and snapshots."""

from __future__ import annotations

from typing import Any, Protocol, Sequence


class ArtifactStore(Protocol):
    """Protocol for JSON document storage backends.

    Documents are addressed by a sequence of path parts, e.g.
    ``(workflow, step, prompt_hash)`` for cache entries or ``(snapshot_id,)``
    for snapshots.
    """

    async def save(self, parts: Sequence[str], document: dict[str, Any]) -> None:
        """Persist ``document`` under ``parts``, replacing any previous one."""

    async def load(self, parts: Sequence[str]) -> dict[str, Any] | None:
        """Return the document stored under ``parts`` or ``None``."""

    async def delete(self, parts: Sequence[str]) -> None:
        """Remove the document stored under ``parts`` if present."""

    async def load_all(self) -> list[dict[str, Any]]:
        """Return every stored document."""
