# tests/conftest.py
import os

# in-memory store, and no background worker racing the API tests
os.environ["RELIEF_USE_MONGO"] = "0"
os.environ["RELIEF_RUN_SCHEDULER"] = "0"

import pytest
from httpx import AsyncClient, ASGITransport
from asgi_lifespan import LifespanManager

from reliefdispatch.main import app
from reliefdispatch.repos.inmemory import InMemoryRepo


@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"


@pytest.fixture(scope="session")
async def test_client():
    # Start FastAPI lifespan once for the whole session
    async with LifespanManager(app):
        transport = ASGITransport(app=app, raise_app_exceptions=True)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


@pytest.fixture
def repo():
    return InMemoryRepo()
