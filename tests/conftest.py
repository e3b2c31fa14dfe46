"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and every provider.
"""
import uuid

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from leadrelay.config import get_settings
from leadrelay.database import build_engine, create_tables, make_session_factory
from leadrelay.errors import DispatchError
from leadrelay.models import Lead, Tenant
from leadrelay.services.dispatcher import DispatchResult


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("leadrelay.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.delete = AsyncMock(return_value=1)
        redis_mock.eval = AsyncMock(return_value=1)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def settings():
    """The live settings object; tweak with monkeypatch.setattr."""
    return get_settings()


class FakeDispatcher:
    """Records dispatches; raises `error` when set, otherwise succeeds with a fresh id."""

    def __init__(self, error: DispatchError | None = None):
        self.error = error
        self.calls: list[tuple[str, uuid.UUID]] = []

    async def dispatch(self, channel, tenant, lead, message=None):
        self.calls.append((channel, lead.id))
        if self.error is not None:
            raise self.error
        attempt_id = f"{channel}-{len(self.calls)}"
        return DispatchResult(channel=channel, provider="fake", attempt_id=attempt_id, detail=f"{channel} ok")


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
async def tenant(db):
    tenant = Tenant(
        key="acme",
        display_name="Acme Roofing",
        voice_assistant_id="asst_1",
        voice_phone_number_id="pn_1",
        sms_from_number="+447700900999",
        booking_link="https://book.example.com/acme",
        templates={},
        feature_flags={},
        is_active=True,
    )
    db.add(tenant)
    await db.commit()
    return tenant


@pytest.fixture
def make_lead(db, tenant):
    """Factory for committed leads belonging to the default tenant."""
    tenant_id = tenant.id

    async def _make(**overrides) -> Lead:
        values = {
            "tenant_id": tenant_id,
            "phone": "+447700900000",
            "name": "Jo",
            "status": "new",
            "attempts": 0,
            "context": {},
        }
        values.update(overrides)
        lead = Lead(**values)
        db.add(lead)
        await db.commit()
        return lead

    return _make


@pytest.fixture
def make_dispatcher():
    """FakeDispatcher factory: make_dispatcher(error) fails every dispatch with `error`."""
    return FakeDispatcher
