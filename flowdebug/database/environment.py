"""Switch between production and test backing stores and snapshot their tables."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional

from ..config import DatabaseSettings
from ..errors import ConfigurationError, EnvironmentModeError, SnapshotNotFound
from ..models import DatabaseSnapshot, SnapshotMetadata, utcnow
from ..storage import ArtifactStore, InMemoryArtifactStore
from .base import DatabaseClient
from .instrumented import InFlightQuery, InstrumentedDatabaseClient, OperationTracker

logger = logging.getLogger(__name__)

DatabaseMode = Literal["production", "test"]

CLEAN_STATE = "clean_state"


class EnvironmentSwitch:
    """Hold exactly one active backing-store client.

    Clients are built from ``production_url``/``test_url`` unless one is
    injected for the mode through ``clients``. Injected clients belong to the
    caller and are never closed by the switch.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        clients: Optional[Dict[str, DatabaseClient]] = None,
        store: Optional[ArtifactStore] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.settings = settings or DatabaseSettings()
        self._injected: Dict[str, DatabaseClient] = dict(clients or {})
        self._store = store if store is not None else InMemoryArtifactStore()
        self._clock = clock
        self._mode: DatabaseMode = "test" if self.settings.use_test_db else "production"
        self._client: Optional[DatabaseClient] = None
        self._snapshots: Dict[str, DatabaseSnapshot] = {}
        self._in_flight: Dict[str, InFlightQuery] = {}

    # ------------------------------------------------------------------
    # Mode management
    @property
    def mode(self) -> DatabaseMode:
        return self._mode

    def is_test_mode(self) -> bool:
        return self._mode == "test"

    async def switch_mode(self, mode: DatabaseMode) -> None:
        """Activate ``mode``, reconnecting the backing-store client.

        Switching to the mode that is already active does nothing.
        """
        if mode not in ("production", "test"):
            raise ValueError(f"Unknown database mode: {mode}")
        if mode == self._mode and self._client is not None:
            return

        client = self._connect(mode)
        await self._release()
        self._client = client
        self._mode = mode
        logger.info(f"Database switched to {mode.upper()} mode")

    def _connect(self, mode: str) -> DatabaseClient:
        if mode in self._injected:
            return self._injected[mode]
        url = self.settings.test_url if mode == "test" else self.settings.production_url
        if not url:
            raise ConfigurationError(f"No database URL configured for {mode} mode")
        from . import get_database_client

        return get_database_client(url)

    async def _release(self) -> None:
        client, self._client = self._client, None
        if client is not None and client not in self._injected.values():
            await client.close()

    @property
    def raw_client(self) -> DatabaseClient:
        """The uninstrumented client for the active mode."""
        if self._client is None:
            self._client = self._connect(self._mode)
        return self._client

    def get_client(self, tracker: Optional[OperationTracker] = None) -> DatabaseClient:
        """Return the active client, wrapped for interception when needed.

        Calls are intercepted when a ``tracker`` is given or when
        ``settings.logging`` is on.
        """
        client = self.raw_client
        if tracker is None and not self.settings.logging:
            return client
        return InstrumentedDatabaseClient(
            client, tracker=tracker, in_flight=self._in_flight, clock=self._clock
        )

    async def close(self) -> None:
        await self._release()

    @asynccontextmanager
    async def test_database(self) -> AsyncIterator[DatabaseClient]:
        """Run a block against a freshly prepared test store.

        Switches back to production on exit.
        """
        await self.switch_mode("test")
        try:
            await self.prepare_test_environment()
            yield self.raw_client
        finally:
            await self.switch_mode("production")

    # ------------------------------------------------------------------
    # Snapshots
    async def create_snapshot(self, name: str, description: Optional[str] = None) -> str:
        """Capture every tracked table and return the snapshot id."""
        client = self.raw_client
        tables: Dict[str, List[Dict[str, Any]]] = {}
        for table in self.settings.tables:
            tables[table] = (await client.select(table)).data

        snapshot = DatabaseSnapshot(
            name=name,
            created_at=self._clock(),
            tables=tables,
            metadata=SnapshotMetadata(
                total_size=len(json.dumps(tables, default=str).encode("utf-8")),
                table_count=len(tables),
                row_count=sum(len(rows) for rows in tables.values()),
                description=description,
            ),
        )
        self._snapshots[snapshot.id] = snapshot
        try:
            await self._store.save((snapshot.id,), snapshot.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to persist snapshot {snapshot.id}: {e}")

        logger.info(
            f"Created snapshot: {name} (snapshot_id={snapshot.id}, "
            f"tables={snapshot.metadata.table_count}, rows={snapshot.metadata.row_count})"
        )
        return snapshot.id

    async def get_snapshot(self, snapshot_id: str) -> Optional[DatabaseSnapshot]:
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is not None:
            return snapshot
        try:
            document = await self._store.load((snapshot_id,))
        except Exception as e:
            logger.warning(f"Failed to load snapshot {snapshot_id}: {e}")
            return None
        if document is None:
            return None
        snapshot = DatabaseSnapshot.model_validate(document)
        self._snapshots[snapshot.id] = snapshot
        return snapshot

    async def restore_snapshot(self, snapshot_id: str) -> None:
        """Replace every tracked table's rows with the captured ones."""
        snapshot = await self.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)

        client = self.raw_client
        tables = list(dict.fromkeys([*self.settings.tables, *snapshot.tables]))
        for table in tables:
            await client.delete(table)
        for table, rows in snapshot.tables.items():
            if rows:
                await client.insert(table, rows)
        logger.info(f"Restored snapshot: {snapshot.name} (snapshot_id={snapshot_id})")

    async def list_snapshots(self) -> List[DatabaseSnapshot]:
        """Snapshots known in memory or in durable storage, oldest first."""
        try:
            documents = await self._store.load_all()
        except Exception as e:
            logger.warning(f"Failed to list stored snapshots: {e}")
            documents = []
        for document in documents:
            try:
                snapshot = DatabaseSnapshot.model_validate(document)
            except ValueError as e:
                logger.warning(f"Skipping invalid snapshot document: {e}")
                continue
            self._snapshots.setdefault(snapshot.id, snapshot)
        return sorted(self._snapshots.values(), key=lambda s: s.created_at)

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        existed = await self.get_snapshot(snapshot_id) is not None
        self._snapshots.pop(snapshot_id, None)
        try:
            await self._store.delete((snapshot_id,))
        except Exception as e:
            logger.warning(f"Failed to delete stored snapshot {snapshot_id}: {e}")
        return existed

    # ------------------------------------------------------------------
    # Test environment
    async def clear_all_tables(self) -> None:
        client = self.raw_client
        for table in self.settings.tables:
            await client.delete(table)

    async def prepare_test_environment(self) -> None:
        """Empty every tracked table and record a ``clean_state`` baseline."""
        self._require_test_mode("prepare test environment")
        logger.info("Preparing test environment")
        await self.clear_all_tables()
        if self.settings.auto_snapshot:
            await self.create_snapshot(CLEAN_STATE, "Empty database for testing")

    async def reset_to_clean_state(self) -> None:
        self._require_test_mode("reset")
        clean = [s for s in await self.list_snapshots() if s.name == CLEAN_STATE]
        if clean:
            await self.restore_snapshot(clean[-1].id)
        else:
            await self.clear_all_tables()

    def _require_test_mode(self, action: str) -> None:
        if not self.is_test_mode():
            raise EnvironmentModeError(f"Can only {action} in test mode")

    # ------------------------------------------------------------------
    # Diagnostics
    def get_slow_queries(self, threshold_ms: float = 1000) -> List[Dict[str, Any]]:
        """In-flight intercepted queries already running longer than ``threshold_ms``."""
        now = self._clock()
        return [
            {
                "table": q.table,
                "operation": q.operation,
                "duration": q.elapsed(now),
            }
            for q in self._in_flight.values()
            if q.elapsed(now) > threshold_ms
        ]
