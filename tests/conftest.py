'''
Pytest configuration for the billing backend.

This file sets up fixtures for:
1. A fresh in-memory SQLite database (schema created from the ORM) per test.
2. An isolated database session that the factories write into.
3. Instances of all service classes, pre-injected with that session.
4. An httpx AsyncClient driving the FastAPI app against the same session.
'''

import os
os.environ["TEST_MODE"] = "True"

import pytest
from typing import AsyncGenerator

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.pool import StaticPool

# --- Constant Imports ----
from tests.constants import TEST_ORGANIZATION_ID, OTHER_ORGANIZATION_ID, TEST_USER_ID
from tests.database import factories

# --- Application Imports ---
from lingua_school_backend.main import app
from lingua_school_backend.common.config import settings
from lingua_school_backend.database import models as db_models
from lingua_school_backend.database.engine import get_db_session, build_session_factory, enable_sqlite_savepoints
from lingua_school_backend.services.ledger_service import LedgerService
from lingua_school_backend.services.due_date_service import DueDateService
from lingua_school_backend.services.policy_service import PolicyService
from lingua_school_backend.services.cancellation_service import CancellationService
from lingua_school_backend.services.payment_service import PaymentService
from lingua_school_backend.services.settlement_service import SettlementService
from lingua_school_backend.services.payout_service import PayoutService


@pytest.fixture(scope="session")
def anyio_backend():
    """
    Override the default 'anyio_backend' fixture.
    1. Forces the backend to 'asyncio' (aiosqlite has no trio support).
    2. Promotes the scope to 'session' (solves 'ScopeMismatch').
    """
    return "asyncio"


# --- 1. Database Fixtures ---

@pytest.fixture(scope="function")
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    A brand new in-memory database for every test.
    StaticPool keeps the single connection (and so the database) alive.
    """
    assert settings.TEST_MODE is True, \
        "TEST_MODE was not set to True! Check your .env file or environment."

    engine = create_async_engine(settings.DATABASE_URL_TEST, poolclass=StaticPool)
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(db_models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """
    Provides the session used by the services and the factories of one test.
    Everything is rolled back at the end.
    """
    session_factory = build_session_factory(db_engine)
    async with session_factory() as session:
        factories.test_db_session = session
        try:
            yield session
        finally:
            factories.test_db_session = None
            await session.rollback()


# --- 2. Tenant Fixtures ---

@pytest.fixture(scope="function")
async def organization(db_session: AsyncSession) -> db_models.Organizations:
    org = factories.OrganizationFactory(id=TEST_ORGANIZATION_ID)
    await db_session.flush()
    return org


@pytest.fixture(scope="function")
async def other_organization(db_session: AsyncSession) -> db_models.Organizations:
    org = factories.OrganizationFactory(id=OTHER_ORGANIZATION_ID)
    await db_session.flush()
    return org


@pytest.fixture(scope="function")
async def student(db_session: AsyncSession, organization: db_models.Organizations) -> db_models.Students:
    new_student = factories.StudentFactory(organization_id=organization.id)
    await db_session.flush()
    return new_student


@pytest.fixture(scope="function")
async def teacher(db_session: AsyncSession, organization: db_models.Organizations) -> db_models.Teachers:
    new_teacher = factories.TeacherFactory(organization_id=organization.id)
    await db_session.flush()
    return new_teacher


# --- 3. Service Fixtures ---

@pytest.fixture(scope="function")
def ledger_service(db_session: AsyncSession) -> LedgerService:
    return LedgerService(db_session)


@pytest.fixture(scope="function")
def due_date_service(db_session: AsyncSession) -> DueDateService:
    return DueDateService(db_session)


@pytest.fixture(scope="function")
def policy_service(db_session: AsyncSession, due_date_service: DueDateService) -> PolicyService:
    return PolicyService(db_session, due_date_service)


@pytest.fixture(scope="function")
def cancellation_service(
    db_session: AsyncSession,
    ledger_service: LedgerService,
    due_date_service: DueDateService
) -> CancellationService:
    return CancellationService(db_session, ledger_service, due_date_service)


@pytest.fixture(scope="function")
def payment_service(
    db_session: AsyncSession,
    ledger_service: LedgerService,
    due_date_service: DueDateService
) -> PaymentService:
    return PaymentService(db_session, ledger_service, due_date_service)


@pytest.fixture(scope="function")
def settlement_service(db_session: AsyncSession, ledger_service: LedgerService) -> SettlementService:
    return SettlementService(db_session, ledger_service)


@pytest.fixture(scope="function")
def payout_service(db_session: AsyncSession, due_date_service: DueDateService) -> PayoutService:
    return PayoutService(db_session, due_date_service)


# --- 4. API Fixtures ---

@pytest.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Drives the app in-process. Requests share the test's session, so data
    created through the factories is visible to the endpoints.
    """
    async def override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db_session] = override_get_db_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def tenant_headers() -> dict[str, str]:
    return {
        "X-Organization-Id": str(TEST_ORGANIZATION_ID),
        "X-User-Id": str(TEST_USER_ID),
    }
