"""Filesystem implementation of the artifact store."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Sequence

from .base import ArtifactStore

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def safe_name(part: str) -> str:
    """Return ``part`` usable as a single path component."""
    cleaned = _UNSAFE.sub("_", part).strip(".")
    return cleaned or "_"


class FileArtifactStore(ArtifactStore):
    """Store each document as a pretty-printed JSON file below ``root``.

    ``("wf", "step", "abc")`` maps to ``root/wf/step/abc.json``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, parts: Sequence[str]) -> Path:
        if not parts:
            raise ValueError("Document path must not be empty")
        *dirs, name = [safe_name(p) for p in parts]
        return self.root.joinpath(*dirs, f"{name}.json")

    # ------------------------------------------------------------------
    # Blocking helpers, run in a worker thread
    def _write(self, path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")

    def _read(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _read_all(self) -> list[dict[str, Any]]:
        if not self.root.exists():
            return []
        documents = []
        for path in sorted(self.root.rglob("*.json")):
            try:
                documents.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load {path}: {e}")
        return documents

    # ------------------------------------------------------------------
    # Store API
    async def save(self, parts: Sequence[str], document: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(parts), document)

    async def load(self, parts: Sequence[str]) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read, self.path_for(parts))

    async def delete(self, parts: Sequence[str]) -> None:
        await asyncio.to_thread(self.path_for(parts).unlink, missing_ok=True)

    async def load_all(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._read_all)
