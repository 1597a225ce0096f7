"""Database client wrapper that reports every call to a tracker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Sequence

from ..models import QueryResult, elapsed_ms, new_id, utcnow
from .base import DatabaseClient, Where

logger = logging.getLogger(__name__)


class OperationTracker(Protocol):
    """Receives begin/finish notifications for intercepted queries."""

    def begin_database_operation(
        self, operation: str, table: str, query: Any, parameters: Any = None
    ) -> str:
        """Record the start of an operation and return its id."""

    def finish_database_operation(
        self,
        op_id: str,
        result: Any = None,
        rows_affected: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of the operation ``op_id``."""


@dataclass
class InFlightQuery:
    id: str
    operation: str
    table: str
    query: Any
    started_at: datetime

    def elapsed(self, now: datetime) -> float:
        return elapsed_ms(self.started_at, now)


class InstrumentedDatabaseClient(DatabaseClient):
    """Forward calls to ``inner`` while recording timing and outcome.

    ``in_flight`` is a shared registry of queries that have started but not
    finished; entries are removed when the call returns or raises.
    """

    def __init__(
        self,
        inner: DatabaseClient,
        tracker: Optional[OperationTracker] = None,
        in_flight: Optional[Dict[str, InFlightQuery]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.inner = inner
        self.tracker = tracker
        self.in_flight = in_flight if in_flight is not None else {}
        self._clock = clock

    async def _run(
        self,
        operation: str,
        table: str,
        query: Dict[str, Any],
        call: Callable[[], Awaitable[QueryResult]],
    ) -> QueryResult:
        key = new_id()
        self.in_flight[key] = InFlightQuery(
            id=key, operation=operation, table=table, query=query, started_at=self._clock()
        )
        op_id = None
        if self.tracker is not None:
            op_id = self.tracker.begin_database_operation(operation, table, query)
        try:
            result = await call()
        except Exception as e:
            if self.tracker is not None and op_id:
                self.tracker.finish_database_operation(op_id, error=str(e))
            logger.debug(f"Database {operation} on {table} failed: {e}")
            raise
        finally:
            self.in_flight.pop(key, None)
        if self.tracker is not None and op_id:
            self.tracker.finish_database_operation(
                op_id, result=result.data, rows_affected=result.count
            )
        return result

    # ------------------------------------------------------------------
    async def select(self, table: str, where: Where = None) -> QueryResult:
        return await self._run(
            "select", table, {"where": where}, lambda: self.inner.select(table, where)
        )

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> QueryResult:
        return await self._run(
            "insert", table, {"rows": list(rows)}, lambda: self.inner.insert(table, rows)
        )

    async def update(
        self, table: str, values: Mapping[str, Any], where: Where = None
    ) -> QueryResult:
        return await self._run(
            "update",
            table,
            {"values": dict(values), "where": where},
            lambda: self.inner.update(table, values, where),
        )

    async def delete(self, table: str, where: Where = None) -> QueryResult:
        return await self._run(
            "delete", table, {"where": where}, lambda: self.inner.delete(table, where)
        )

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str = "id",
    ) -> QueryResult:
        return await self._run(
            "upsert",
            table,
            {"rows": list(rows), "on_conflict": on_conflict},
            lambda: self.inner.upsert(table, rows, on_conflict),
        )

    async def close(self) -> None:
        """No-op; the wrapped client belongs to whoever created it."""
