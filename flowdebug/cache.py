"""LLM response cache keyed by workflow, step, prompt, model and temperature."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import LLMCacheSettings
from .models import CacheEntry, CacheStats, elapsed_ms, utcnow
from .storage import ArtifactStore, InMemoryArtifactStore

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_MISSING = object()


def scenario_prompt(step_name: str) -> str:
    """Synthetic prompt under which pre-seeded responses are stored."""
    return f"scenario_{step_name}"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def hash_prompt(prompt: str, hash_function: str = "detailed") -> str:
    """Deterministic content hash of ``prompt``.

    ``simple`` is length plus the first and last ten characters; ``detailed``
    is a 32-bit rolling hash over every character.
    """
    if hash_function == "simple":
        return f"{len(prompt)}_{prompt[:10]}_{prompt[-10:]}"
    h = 0
    for ch in prompt:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _format_temperature(temperature: Optional[float]) -> str:
    if not temperature:
        return "0"
    if float(temperature).is_integer():
        return str(int(temperature))
    return str(temperature)


def cache_key(
    workflow_name: str,
    step_name: str,
    prompt_hash: str,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
) -> str:
    return (
        f"{workflow_name}:{step_name}:{prompt_hash}:"
        f"{model or ''}:{_format_temperature(temperature)}"
    )


class ResponseCache:
    """In-memory response cache persisted through an :class:`ArtifactStore`.

    Entries expire ``ttl`` milliseconds after creation and are dropped when
    read. When the entry count exceeds ``max_cache_size`` the least recently
    used entries are evicted. Storage failures are logged and otherwise
    ignored, so a broken cache directory only costs cache hits.
    """

    def __init__(
        self,
        settings: Optional[LLMCacheSettings] = None,
        store: Optional[ArtifactStore] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.settings = settings or LLMCacheSettings()
        self.enabled = self.settings.enabled
        self._store = store if store is not None else InMemoryArtifactStore()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._saves = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # Lookups
    def key_for(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        return self._key_for(workflow_name, step_name, prompt, model, temperature)[0]

    def _key_for(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> tuple[str, str]:
        prompt_hash = hash_prompt(prompt, self.settings.hash_function)
        return cache_key(workflow_name, step_name, prompt_hash, model, temperature), prompt_hash

    def _is_expired(self, entry: CacheEntry) -> bool:
        return elapsed_ms(entry.created_at, self._clock()) > self.settings.ttl

    async def get(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        """Return the cached response or ``None`` on a miss."""
        response = await self._lookup(workflow_name, step_name, prompt, model, temperature)
        return None if response is _MISSING else response

    async def _lookup(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        model: Optional[str],
        temperature: Optional[float],
    ) -> Any:
        if not self.enabled:
            return _MISSING

        key, _ = self._key_for(workflow_name, step_name, prompt, model, temperature)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug(f"Cache miss: {workflow_name}/{step_name}")
            return _MISSING

        if self._is_expired(entry):
            del self._entries[key]
            self._misses += 1
            logger.debug(f"Cache expired: {workflow_name}/{step_name}")
            await self._forget(entry)
            return _MISSING

        return self._touch(entry)

    def _touch(self, entry: CacheEntry) -> Any:
        entry.hits += 1
        entry.last_used = self._clock()
        self._hits += 1
        logger.debug(
            f"Cache hit: {entry.workflow_name}/{entry.step_name} ({entry.hits} total hits)"
        )
        return entry.response

    def get_prepopulated(self, workflow_name: str, step_name: str) -> Any:
        """Return a response seeded by :meth:`pre_populate` or ``None``.

        Absent seeds do not count as misses.
        """
        if not self.enabled:
            return None
        key, _ = self._key_for(workflow_name, step_name, scenario_prompt(step_name))
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            return None
        return self._touch(entry)

    # ------------------------------------------------------------------
    # Population
    async def set(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        response: Any,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.enabled:
            return

        key, prompt_hash = self._key_for(workflow_name, step_name, prompt, model, temperature)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            workflow_name=workflow_name,
            step_name=step_name,
            prompt_hash=prompt_hash,
            response=response,
            created_at=now,
            last_used=now,
            metadata={"model": model, "temperature": temperature, **(metadata or {})},
        )
        self._entries[key] = entry
        self._saves += 1

        await self._evict_if_needed()
        if key in self._entries:
            await self._persist(entry)
        logger.debug(f"Cached response: {workflow_name}/{step_name}")

    async def wrap_llm_call(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        force_refresh: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        on_hit: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Return the cached response, or call ``fn`` and cache its result.

        ``on_hit`` receives the cached response when ``fn`` was skipped.
        """
        if not force_refresh:
            cached = await self._lookup(workflow_name, step_name, prompt, model, temperature)
            if cached is not _MISSING:
                if on_hit is not None:
                    on_hit(cached)
                return cached

        started = self._clock()
        try:
            response = await fn()
        except Exception as e:
            logger.error(f"LLM call failed: {workflow_name}/{step_name}: {e}")
            raise

        await self.set(
            workflow_name,
            step_name,
            prompt,
            response,
            model,
            temperature,
            {**(metadata or {}), "original_latency": elapsed_ms(started, self._clock())},
        )
        return response

    def set_override(
        self,
        workflow_name: str,
        step_name: str,
        prompt: str,
        response: Any,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        """Install ``response`` directly, bypassing normal population."""
        key, prompt_hash = self._key_for(workflow_name, step_name, prompt, model, temperature)
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            workflow_name=workflow_name,
            step_name=step_name,
            prompt_hash=prompt_hash,
            response=response,
            created_at=now,
            last_used=now,
            metadata={"model": model, "override": True},
        )
        logger.debug(f"Set override for: {workflow_name}/{step_name}")

    def pre_populate(self, workflow_name: str, responses: Dict[str, Any]) -> None:
        """Seed one override per step name, stored under its scenario prompt."""
        for step_name, response in responses.items():
            self.set_override(workflow_name, step_name, scenario_prompt(step_name), response)
        logger.info(f"Pre-populated {len(responses)} responses for workflow: {workflow_name}")

    def discard_prepopulated(self, workflow_name: str, step_names: Iterable[str]) -> int:
        """Remove seeds installed by :meth:`pre_populate` for ``step_names``."""
        removed = 0
        for step_name in step_names:
            key, _ = self._key_for(workflow_name, step_name, scenario_prompt(step_name))
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Housekeeping
    async def _evict_if_needed(self) -> None:
        excess = len(self._entries) - self.settings.max_cache_size
        if excess <= 0:
            return
        oldest = sorted(self._entries.values(), key=lambda e: e.last_used)[:excess]
        for entry in oldest:
            del self._entries[entry.key]
            self._evictions += 1
            await self._forget(entry)
        logger.debug(f"Evicted {len(oldest)} cache entries")

    async def clear(self, persisted: bool = True) -> None:
        """Drop every entry and reset statistics.

        Stored copies are deleted too unless ``persisted`` is false.
        """
        entries = list(self._entries.values())
        self._entries.clear()
        if persisted:
            for entry in entries:
                await self._forget(entry)
        self._hits = self._misses = self._saves = self._evictions = 0
        logger.info("Cache cleared")

    async def clear_workflow(self, workflow_name: str) -> int:
        removed = [e for e in self._entries.values() if e.workflow_name == workflow_name]
        for entry in removed:
            del self._entries[entry.key]
            await self._forget(entry)
        logger.info(f"Cleared cache for workflow: {workflow_name} ({len(removed)} entries)")
        return len(removed)

    async def clear_step(self, workflow_name: str, step_name: str) -> int:
        removed = [
            e
            for e in self._entries.values()
            if e.workflow_name == workflow_name and e.step_name == step_name
        ]
        for entry in removed:
            del self._entries[entry.key]
            await self._forget(entry)
        logger.info(
            f"Cleared cache for step: {workflow_name}/{step_name} ({len(removed)} entries)"
        )
        return len(removed)

    # ------------------------------------------------------------------
    # Reporting
    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            saves=self._saves,
            evictions=self._evictions,
            hit_rate=(self._hits / total) * 100 if total else 0,
            cache_size=len(self._entries),
            max_size=self.settings.max_cache_size,
        )

    def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def entries_for_workflow(self, workflow_name: str) -> List[CacheEntry]:
        return [e for e in self._entries.values() if e.workflow_name == workflow_name]

    def export_cache(self) -> Dict[str, Dict[str, Any]]:
        """Plain key to entry mapping for sharing a session's cache."""
        return {key: e.model_dump(mode="json") for key, e in self._entries.items()}

    def import_cache(self, data: Dict[str, Dict[str, Any]]) -> int:
        imported = 0
        for key, document in data.items():
            entry = CacheEntry.model_validate(document)
            self._entries[key] = entry
            imported += 1
        logger.info(f"Imported {imported} cache entries")
        return imported

    # ------------------------------------------------------------------
    # Persistence
    async def load(self) -> int:
        """Read persisted entries into memory, skipping expired ones."""
        try:
            documents = await self._store.load_all()
        except Exception as e:
            logger.warning(f"Could not load cache from storage: {e}")
            return 0

        loaded = 0
        for document in documents:
            try:
                entry = CacheEntry.model_validate(document)
            except ValueError as e:
                logger.warning(f"Skipping invalid cache document: {e}")
                continue
            if not self._is_expired(entry):
                self._entries[entry.key] = entry
                loaded += 1
        logger.info(f"Loaded {loaded} cache entries from storage")
        return loaded

    async def _persist(self, entry: CacheEntry) -> None:
        try:
            await self._store.save(
                (entry.workflow_name, entry.step_name, entry.prompt_hash),
                entry.model_dump(mode="json"),
            )
        except Exception as e:
            logger.warning(f"Could not save cache entry {entry.key}: {e}")

    async def _forget(self, entry: CacheEntry) -> None:
        try:
            await self._store.delete((entry.workflow_name, entry.step_name, entry.prompt_hash))
        except Exception as e:
            logger.warning(f"Could not delete cache entry {entry.key}: {e}")
