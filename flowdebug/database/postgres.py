"""PostgreSQL implementation of the database client."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence, Tuple

import asyncpg

from ..models import QueryResult
from .base import DatabaseClient, Where
from .sqlite import quote_identifier


def _where_clause(where: Where, start: int = 1) -> Tuple[str, List[Any]]:
    if not where:
        return "", []
    parts = []
    params: List[Any] = []
    for i, (column, value) in enumerate(where.items(), start=start):
        parts.append(f"{quote_identifier(column)} = ${i}")
        params.append(value)
    return " WHERE " + " AND ".join(parts), params


class PostgresDatabaseClient(DatabaseClient):
    """Issue table operations against existing PostgreSQL tables.

    Column names come from the row mappings; tables and columns must
    already exist.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn

    async def _connect(self) -> asyncpg.Connection:
        return await asyncpg.connect(self._dsn)

    async def _fetch(self, query: str, *params: Any) -> List[Dict[str, Any]]:
        conn = await self._connect()
        try:
            records = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [dict(r) for r in records]

    # ------------------------------------------------------------------
    async def select(self, table: str, where: Where = None) -> QueryResult:
        clause, params = _where_clause(where)
        rows = await self._fetch(f"SELECT * FROM {quote_identifier(table)}{clause}", *params)
        return QueryResult(data=rows, count=len(rows))

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> QueryResult:
        inserted: List[Dict[str, Any]] = []
        for row in rows:
            columns = ", ".join(quote_identifier(c) for c in row)
            placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
            inserted.extend(
                await self._fetch(
                    f"INSERT INTO {quote_identifier(table)} ({columns}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    *row.values(),
                )
            )
        return QueryResult(data=inserted, count=len(inserted))

    async def update(
        self, table: str, values: Mapping[str, Any], where: Where = None
    ) -> QueryResult:
        assignments = ", ".join(
            f"{quote_identifier(c)} = ${i}" for i, c in enumerate(values, start=1)
        )
        clause, params = _where_clause(where, start=len(values) + 1)
        rows = await self._fetch(
            f"UPDATE {quote_identifier(table)} SET {assignments}{clause} RETURNING *",
            *values.values(),
            *params,
        )
        return QueryResult(data=rows, count=len(rows))

    async def delete(self, table: str, where: Where = None) -> QueryResult:
        clause, params = _where_clause(where)
        rows = await self._fetch(
            f"DELETE FROM {quote_identifier(table)}{clause} RETURNING *", *params
        )
        return QueryResult(data=rows, count=len(rows))

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str = "id",
    ) -> QueryResult:
        written: List[Dict[str, Any]] = []
        conflict = quote_identifier(on_conflict)
        for row in rows:
            columns = [quote_identifier(c) for c in row]
            placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != conflict)
            action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
            written.extend(
                await self._fetch(
                    f"INSERT INTO {quote_identifier(table)} ({', '.join(columns)}) "
                    f"VALUES ({placeholders}) ON CONFLICT ({conflict}) {action} RETURNING *",
                    *row.values(),
                )
            )
        return QueryResult(data=written, count=len(written))

    async def close(self) -> None:
        return None
