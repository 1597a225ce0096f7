"""In-memory implementation of the database client."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..models import QueryResult
from .base import DatabaseClient, Where, matches


class InMemoryDatabaseClient(DatabaseClient):
    """Keep tables as lists of dicts in local memory.

    Useful for tests or when no database is configured. Rows are copied on
    the way in and out so callers never share state with the store.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables or {})

    def _table(self, name: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(name, [])

    # ------------------------------------------------------------------
    async def select(self, table: str, where: Where = None) -> QueryResult:
        rows = [copy.deepcopy(r) for r in self._table(table) if matches(r, where)]
        return QueryResult(data=rows, count=len(rows))

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> QueryResult:
        inserted = [dict(copy.deepcopy(r)) for r in rows]
        self._table(table).extend(copy.deepcopy(inserted))
        return QueryResult(data=inserted, count=len(inserted))

    async def update(
        self, table: str, values: Mapping[str, Any], where: Where = None
    ) -> QueryResult:
        updated = []
        for row in self._table(table):
            if matches(row, where):
                row.update(copy.deepcopy(dict(values)))
                updated.append(copy.deepcopy(row))
        return QueryResult(data=updated, count=len(updated))

    async def delete(self, table: str, where: Where = None) -> QueryResult:
        rows = self._table(table)
        removed = [r for r in rows if matches(r, where)]
        self._tables[table] = [r for r in rows if not matches(r, where)]
        return QueryResult(data=removed, count=len(removed))

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str = "id",
    ) -> QueryResult:
        stored = self._table(table)
        written = []
        for row in rows:
            row = dict(copy.deepcopy(row))
            existing = next(
                (r for r in stored if on_conflict in row and r.get(on_conflict) == row[on_conflict]),
                None,
            )
            if existing is not None:
                existing.update(row)
                written.append(copy.deepcopy(existing))
            else:
                stored.append(row)
                written.append(copy.deepcopy(row))
        return QueryResult(data=written, count=len(written))

    async def close(self) -> None:
        return None
