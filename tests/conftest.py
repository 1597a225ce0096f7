from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """Manually advanced clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def debug_config():
    from flowdebug.config import DatabaseSettings, DebugConfig, LLMCacheSettings

    return DebugConfig(
        enabled=True,
        mode="test",
        storage="memory",
        database=DatabaseSettings(tables=["projects", "briefs"]),
        llm_cache=LLMCacheSettings(enabled=True),
    )


@pytest.fixture
def system(debug_config, clock):
    """DebugSystem backed entirely by in-memory stores and clients."""
    from flowdebug.database import InMemoryDatabaseClient
    from flowdebug.system import DebugSystem

    return DebugSystem(
        debug_config,
        clients={"production": InMemoryDatabaseClient(), "test": InMemoryDatabaseClient()},
        clock=clock,
    )
