"""
Test Suite Configuration
"""
from typing import Any, Dict

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from order_rollup.config import Settings
from order_rollup.database.models import Base
from order_rollup.database.sql_store import SqlDocumentStore
from order_rollup.database.store import MemoryDocumentStore

# 2025-01-01T10:00:00Z
BASE_TS = 1735725600000


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
    )


@pytest.fixture
def memory_store() -> MemoryDocumentStore:
    """In-memory document store without retry backoff"""
    return MemoryDocumentStore(max_attempts=5, backoff_seconds=0)


@pytest.fixture
async def sql_engine(tmp_path):
    """Async engine over a fresh SQLite database"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rollup.db'}",
        echo=False,
    )
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield engine
    
    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    """Session factory over the test database"""
    return async_sessionmaker(bind=sql_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def sql_store(session_factory) -> SqlDocumentStore:
    """SQL document store without retry backoff"""
    return SqlDocumentStore(session_factory, max_attempts=5, backoff_seconds=0)


@pytest.fixture
def order_factory():
    """Build raw order records the way the checkout flow writes them"""
    def make(
        order_id: str = "O1",
        event_id: str = "E1",
        status: str = "pending",
        price: Any = 10000,
        qty: Any = 2,
        created_at: Any = BASE_TS,
        **extra: Any,
    ) -> Dict[str, Any]:
        record = {
            "orderId": order_id,
            "eventId": event_id,
            "status": status,
            "price": price,
            "qty": qty,
            "createdAt": created_at,
            "ticketName": "General",
            "buyerUid": "uid-1",
            "email": "buyer@example.com",
            "paymentId": f"pay-{order_id}",
        }
        record.update(extra)
        return {key: value for key, value in record.items() if value is not None}
    
    return make
