"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator

import pytest
from sqlalchemy.pool import StaticPool

from polymarket_insider_finder.config import clear_settings_cache
from polymarket_insider_finder.storage.database import DatabaseManager
from polymarket_insider_finder.storage.store import InsiderWalletStore


@pytest.fixture
def sample_wallet_address() -> str:
    """Sample wallet address for testing."""
    return "0x1234567890abcdef1234567890abcdef12345678"


@pytest.fixture
async def db() -> AsyncIterator[DatabaseManager]:
    """In-memory SQLite database with the full schema.

    StaticPool keeps every session on the one connection that holds the
    in-memory database.
    """
    manager = DatabaseManager(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def store(db: DatabaseManager) -> InsiderWalletStore:
    return InsiderWalletStore(db, max_retries=2, retry_delay_seconds=0)


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio calls the checkpoint store makes."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value.encode()
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
