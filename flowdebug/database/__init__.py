"""Backing-store clients and the production/test environment switch."""

from __future__ import annotations

from .base import DatabaseClient
from .environment import EnvironmentSwitch
from .inmemory import InMemoryDatabaseClient
from .instrumented import InFlightQuery, InstrumentedDatabaseClient, OperationTracker
from .postgres import PostgresDatabaseClient
from .sqlite import SQLiteDatabaseClient


def get_database_client(database_url: str) -> DatabaseClient:
    """Factory function to obtain a database client for ``database_url``.

    ``memory://`` gives a fresh in-memory store, ``sqlite://<path>`` a SQLite
    file and ``postgres://`` / ``postgresql://`` a PostgreSQL server.
    """

    if database_url.startswith("memory://"):
        return InMemoryDatabaseClient()
    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteDatabaseClient(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresDatabaseClient(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "DatabaseClient",
    "EnvironmentSwitch",
    "InFlightQuery",
    "InMemoryDatabaseClient",
    "InstrumentedDatabaseClient",
    "OperationTracker",
    "PostgresDatabaseClient",
    "SQLiteDatabaseClient",
    "get_database_client",
]
