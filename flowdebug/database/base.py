"""Backing-store client abstraction used by workflows and snapshots."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Sequence

from ..models import QueryResult

Where = Optional[Mapping[str, Any]]


class DatabaseClient(Protocol):
    """Protocol for table-oriented backing stores.

    ``where`` filters are equality matches on every given column. Every call
    returns a :class:`QueryResult` holding the rows read or touched.
    """

    async def select(self, table: str, where: Where = None) -> QueryResult:
        """Return rows of ``table`` matching ``where`` (all rows when empty)."""

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> QueryResult:
        """Insert ``rows`` and return them."""

    async def update(
        self, table: str, values: Mapping[str, Any], where: Where = None
    ) -> QueryResult:
        """Set ``values`` on matching rows and return the updated rows."""

    async def delete(self, table: str, where: Where = None) -> QueryResult:
        """Delete matching rows (all rows when ``where`` is empty)."""

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str = "id",
    ) -> QueryResult:
        """Insert ``rows``, replacing existing rows with the same ``on_conflict`` value."""

    async def close(self) -> None:
        """Release connections held by the client."""


def matches(row: Mapping[str, Any], where: Where) -> bool:
    if not where:
        return True
    return all(row.get(column) == value for column, value in where.items())
