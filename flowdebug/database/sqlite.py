"""SQLite implementation of the database client."""

from __future__ import annotations

import asyncio
import json
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from ..models import QueryResult
from .base import DatabaseClient, Where, matches

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return f'"{name}"'


class SQLiteDatabaseClient(DatabaseClient):
    """Store each table as ordered JSON documents in a SQLite file.

    Every table gets the shape ``(seq INTEGER PRIMARY KEY, doc TEXT)`` on
    first use, so rows keep their insertion order and read back exactly as
    they were written.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._known: set[str] = set()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_table(self, table: str) -> str:
        quoted = quote_identifier(table)
        if table not in self._known:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {quoted} ("
                "seq INTEGER PRIMARY KEY AUTOINCREMENT, doc TEXT NOT NULL)"
            )
            self._conn.commit()
            self._known.add(table)
        return quoted

    # ------------------------------------------------------------------
    # Helper methods
    def _rows(self, table: str) -> List[Tuple[int, Dict[str, Any]]]:
        quoted = self._ensure_table(table)
        cur = self._conn.execute(f"SELECT seq, doc FROM {quoted} ORDER BY seq")
        return [(r["seq"], json.loads(r["doc"])) for r in cur.fetchall()]

    def _select(self, table: str, where: Where) -> List[Dict[str, Any]]:
        with self._lock:
            return [doc for _, doc in self._rows(table) if matches(doc, where)]

    def _insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        with self._lock:
            quoted = self._ensure_table(table)
            docs = [dict(r) for r in rows]
            self._conn.executemany(
                f"INSERT INTO {quoted} (doc) VALUES (?)",
                [(json.dumps(d, default=str),) for d in docs],
            )
            self._conn.commit()
            return docs

    def _update(
        self, table: str, values: Mapping[str, Any], where: Where
    ) -> List[Dict[str, Any]]:
        with self._lock:
            quoted = self._ensure_table(table)
            updated = []
            for seq, doc in self._rows(table):
                if matches(doc, where):
                    doc.update(values)
                    self._conn.execute(
                        f"UPDATE {quoted} SET doc = ? WHERE seq = ?",
                        (json.dumps(doc, default=str), seq),
                    )
                    updated.append(doc)
            self._conn.commit()
            return updated

    def _delete(self, table: str, where: Where) -> List[Dict[str, Any]]:
        with self._lock:
            quoted = self._ensure_table(table)
            removed = [(seq, doc) for seq, doc in self._rows(table) if matches(doc, where)]
            self._conn.executemany(
                f"DELETE FROM {quoted} WHERE seq = ?", [(seq,) for seq, _ in removed]
            )
            self._conn.commit()
            return [doc for _, doc in removed]

    def _upsert(
        self, table: str, rows: Sequence[Mapping[str, Any]], on_conflict: str
    ) -> List[Dict[str, Any]]:
        with self._lock:
            quoted = self._ensure_table(table)
            existing = self._rows(table)
            written = []
            for row in rows:
                row = dict(row)
                match = next(
                    (
                        (seq, doc)
                        for seq, doc in existing
                        if on_conflict in row and doc.get(on_conflict) == row[on_conflict]
                    ),
                    None,
                )
                if match is not None:
                    seq, doc = match
                    doc.update(row)
                    self._conn.execute(
                        f"UPDATE {quoted} SET doc = ? WHERE seq = ?",
                        (json.dumps(doc, default=str), seq),
                    )
                    written.append(doc)
                else:
                    cur = self._conn.execute(
                        f"INSERT INTO {quoted} (doc) VALUES (?)",
                        (json.dumps(row, default=str),),
                    )
                    existing.append((cur.lastrowid, row))
                    written.append(row)
            self._conn.commit()
            return written

    # ------------------------------------------------------------------
    # Client API
    async def select(self, table: str, where: Where = None) -> QueryResult:
        rows = await asyncio.to_thread(self._select, table, where)
        return QueryResult(data=rows, count=len(rows))

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> QueryResult:
        docs = await asyncio.to_thread(self._insert, table, rows)
        return QueryResult(data=docs, count=len(docs))

    async def update(
        self, table: str, values: Mapping[str, Any], where: Where = None
    ) -> QueryResult:
        rows = await asyncio.to_thread(self._update, table, values, where)
        return QueryResult(data=rows, count=len(rows))

    async def delete(self, table: str, where: Where = None) -> QueryResult:
        rows = await asyncio.to_thread(self._delete, table, where)
        return QueryResult(data=rows, count=len(rows))

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str = "id",
    ) -> QueryResult:
        written = await asyncio.to_thread(self._upsert, table, rows, on_conflict)
        return QueryResult(data=written, count=len(written))

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)
