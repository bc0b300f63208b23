import os

# Settings are read once at import time
os.environ.setdefault("AVIATIONSTACK_ACCESS_KEY", "test-access-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "")

from typing import Dict
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from app.database import create_engine, create_session_factory, init_db, close_db
from app.services.budget.usage_ledger import UsageLedger
from app.services.external.aviationstack_client import AviationStackClient


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite file per test"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'skyalert-test.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def usage_ledger(session_factory):
    return UsageLedger(session_factory, monthly_limit=100, reserve=5, polling_threshold=0.3)


@pytest.fixture
def make_primary(usage_ledger):
    """Build an AviationStackClient whose HTTP traffic goes to a PrimaryStub"""
    def factory(stub, cache=None) -> AviationStackClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
        return AviationStackClient(usage_ledger=usage_ledger, cache=cache, http_client=http_client)
    return factory


@pytest.fixture
def redis_client():
    """AsyncMock standing in for redis.asyncio.Redis, backed by a dict"""
    data: Dict[str, str] = {}
    client = AsyncMock()

    async def setex(key, ttl, value):
        data[key] = value

    async def get(key):
        return data.get(key)

    async def delete(key):
        data.pop(key, None)

    client.setex.side_effect = setex
    client.get.side_effect = get
    client.delete.side_effect = delete
    client.data = data
    return client
