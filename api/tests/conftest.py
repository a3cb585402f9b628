"""API test configuration."""

import os
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

os.environ.setdefault("SKIP_MIGRATION_CHECK", "true")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")

import pytest
from api.dependencies import get_current_user, get_db
from api.main import create_app
from httpx import ASGITransport, AsyncClient
from storefront.config import reset_settings_cache


@pytest.fixture
def buyer():
    return SimpleNamespace(
        id=uuid.uuid4(),
        email="buyer@shop.test",
        display_name="Buyer",
        stripe_customer_id=None,
        is_admin=False,
        is_active=True,
        token_version=0,
    )


@pytest.fixture
def app(buyer):
    reset_settings_cache()
    a = create_app()

    async def _override_user():
        return buyer

    a.dependency_overrides[get_current_user] = _override_user
    return a


@pytest.fixture
def mock_db():
    """Creates a mock AsyncSession with common patterns pre-configured."""
    session = AsyncMock()
    # AsyncSession.add() is synchronous; use MagicMock to avoid un-awaited coroutine warnings.
    session.add = MagicMock()
    # Default: execute returns empty result set
    empty_result = MagicMock()
    empty_result.scalars.return_value.all.return_value = []
    empty_result.scalars.return_value.first.return_value = None
    empty_result.scalar.return_value = 0
    empty_result.scalar_one_or_none.return_value = None
    empty_result.all.return_value = []
    empty_result.rowcount = 0
    session.execute.return_value = empty_result
    # Default: get returns None
    session.get.return_value = None
    return session


@pytest.fixture
async def client(app, mock_db):
    async def _override_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(mock_db):
    """Client with NO auth override -- tests that endpoints require auth."""
    reset_settings_cache()
    a = create_app()

    async def _override_db():
        yield mock_db

    a.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
