import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import learnflow.models  # noqa: F401
from learnflow.core.config import Settings
from learnflow.core.container import ServiceContainer
from learnflow.core.counter_store import MemoryCounterStore
from learnflow.db.session import Base
from learnflow.main import create_app
from learnflow.services.abuse.guard import AbuseGuard
from learnflow.services.abuse.store import SqlAbuseStore
from learnflow.services.jobs.registry import InMemoryJobRegistry
from learnflow.services.quota.ledger import QuotaLedger
from learnflow.services.quota.plans import PlanCatalog
from learnflow.services.quota.usage_store import SqlUsageStore
from tests.factories import FakeClock, ScriptedExecutor


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """Fresh file-backed schema for each test; stores open sessions from worker threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a fresh database session for each test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        COUNTER_STORE_BACKEND="memory",
        JOB_REGISTRY_BACKEND="memory",
        ADMIN_API_KEY="test-admin-key",
        STEP_TIMEOUTS={"transcribe": 0.2},
        DEFAULT_STEP_TIMEOUT=5,
        TRUST_USER_HEADER=True,
    )


@pytest.fixture
def counter_store(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def usage_store(session_factory):
    return SqlUsageStore(session_factory)


@pytest.fixture
def ledger(usage_store, counter_store, clock):
    return QuotaLedger(usage_store, counter_store, catalog=PlanCatalog(), clock=clock)


@pytest.fixture
def guard(session_factory, clock):
    return AbuseGuard(SqlAbuseStore(session_factory), clock=clock, cooldown_minutes=60)


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def container(test_settings, counter_store, executor, session_factory, clock):
    return ServiceContainer(
        test_settings,
        counter_store,
        InMemoryJobRegistry(clock=clock),
        executor,
        session_factory,
        clock=clock,
    )


@pytest_asyncio.fixture
async def app(test_settings, container):
    application = create_app(test_settings, container_factory=lambda _: container)
    application.state.container = container
    yield application
    await container.orchestrator.shutdown()


@pytest_asyncio.fixture
async def async_client(app):
    """Create an async HTTP client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def user_headers():
    """Identity headers as forwarded by the API gateway."""
    return {"X-User-Id": "user-42"}


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin-key"}
