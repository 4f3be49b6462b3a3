"""
Test fixtures for the FinePay test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - session_factory: Session factory on the test engine (for the monitor)
  - fake_ils: In-memory ILS that records every call
  - client: Async HTTP test client (unauthenticated)
  - authenticated_client: Test client logged in as a patron
  - admin_client: Test client logged in as an operator
  - make_user / make_transaction: Factories for service-level tests

Key design decisions:
  - In-memory SQLite (sqlite+aiosqlite://) is used for speed and isolation.
    Each test gets a completely fresh database.
  - get_db and get_ils are overridden, so the application code runs exactly
    as in production against the test database and the fake ILS.
  - Service-level tests pass explicit `now` values instead of sleeping.
"""

import os

# Required settings must exist before finepay.config is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CARD_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("GATEWAY_SECRET", "test-gateway-secret")
os.environ.setdefault("LOG_JSON", "false")

import uuid
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from finepay.database import Base, get_db
from finepay.dependencies import get_ils
from finepay.exceptions import FinePayError
from finepay.main import app
from finepay.models.library_card import LibraryCard
from finepay.models.transaction import Transaction, TransactionStatus
from finepay.models.user import User, UserType
from finepay.security import encrypt_value
from finepay.services import transaction_service
from finepay.services.ils_client import (
    ClearResult,
    ClearSuccess,
    Fine,
    FinesAmount,
    ILSConnector,
    OnlinePaymentConfig,
    Patron,
)


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

PATRON_USERNAME = "helmet.1234567"
PATRON_PASSWORD = "1234"


class FakeILS(ILSConnector):
    """
    In-memory ILS.

    accounts maps card usernames to passwords. Every call is appended to
    `calls` as (method name, arguments). Set clear_exception to make
    clear_fees raise, or clear_result to return something other than
    ClearSuccess.
    """

    def __init__(self):
        self.accounts: dict[str, str] = {PATRON_USERNAME: PATRON_PASSWORD}
        self.config = OnlinePaymentConfig(exact_balance_required=True)
        self.fines = FinesAmount(
            payable=True,
            amount=500,
            fines=[
                Fine(fine_id="f1", amount=300, balance=300, title="Overdue: Dune"),
                Fine(fine_id="f2", amount=200, balance=200, title="Overdue: Emma"),
            ],
        )
        self.clear_result: ClearResult = ClearSuccess()
        self.clear_exception: Exception | None = None
        self.calls: list[tuple[str, tuple]] = []

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def login(self, username, password):
        self.calls.append(("login", (username,)))
        if self.accounts.get(username) != password:
            return None
        return Patron(
            id=f"patron-{username}",
            cat_username=username,
            cat_password=password,
            source=username.split(".", 1)[0],
            firstname="Test",
            lastname="Patron",
        )

    async def get_online_payment_config(self, patron):
        self.calls.append(("get_online_payment_config", (patron.cat_username,)))
        return self.config

    async def get_current_fines(self, patron, fine_ids=None):
        self.calls.append(("get_current_fines", (patron.cat_username, fine_ids)))
        return self.fines

    async def clear_fees(
        self, patron, amount, gateway_transaction_id, local_transaction_id, fine_ids=None
    ):
        self.calls.append(("clear_fees", (patron.cat_username, amount, gateway_transaction_id)))
        if self.clear_exception is not None:
            raise self.clear_exception
        return self.clear_result


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_ils():
    return FakeILS()


@pytest_asyncio.fixture
async def client(session_factory, fake_ils):
    """
    Async HTTP test client with the test database and fake ILS injected.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except FinePayError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ils] = lambda: fake_ils

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def authenticated_client(client):
    """Test client logged in with the default patron's library card."""
    response = await client.post(
        "/auth/login",
        json={"cat_username": PATRON_USERNAME, "password": PATRON_PASSWORD},
    )
    assert response.status_code == 200, f"Login failed: {response.text}"
    client.headers["Authorization"] = f"Bearer {response.json()['token']}"
    return client


@pytest_asyncio.fixture
async def admin_client(client, fake_ils, session_factory):
    """
    Test client logged in as an operator.

    Logs in normally, then promotes the user to ADMIN directly in the
    database, the way operator accounts are provisioned.
    """
    fake_ils.accounts["admin.0001"] = "operator"
    response = await client.post(
        "/auth/login",
        json={"cat_username": "admin.0001", "password": "operator"},
    )
    assert response.status_code == 200
    user_id = uuid.UUID(response.json()["user_id"])

    async with session_factory() as session:
        await session.execute(
            update(User).where(User.id == user_id).values(user_type=UserType.ADMIN)
        )
        await session.commit()

    client.headers["Authorization"] = f"Bearer {response.json()['token']}"
    return client


@pytest.fixture
def make_user(db_session):
    """Create a user whose current card and one stored card use the given credentials."""

    async def _make_user(
        cat_username: str = PATRON_USERNAME,
        password: str = PATRON_PASSWORD,
    ) -> User:
        user = User(
            username=cat_username,
            cat_username=cat_username,
            cat_password_encrypted=encrypt_value(password),
        )
        db_session.add(user)
        await db_session.flush()
        db_session.add(LibraryCard(
            user_id=user.id,
            cat_username=cat_username,
            cat_password_encrypted=encrypt_value(password),
        ))
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_transaction(db_session):
    """
    Create a transaction and optionally move it to PAID.

    paid_at marks it paid through the real state machine; status then
    overrides the stored status directly, for setting up stuck rows.
    """

    async def _make_transaction(
        user: User,
        amount: int = 500,
        paid_at: datetime | None = None,
        status: TransactionStatus | None = None,
        fine_ids: tuple[str, ...] = ("f1", "f2"),
    ) -> Transaction:
        transaction = await transaction_service.create_transaction(
            db_session,
            transaction_id=uuid.uuid4().hex,
            user_id=user.id,
            cat_username=user.cat_username,
            amount=amount,
            transaction_fee=0,
            currency="EUR",
            fees=[{"title": fid, "amount": amount // len(fine_ids), "fine_id": fid} for fid in fine_ids],
        )
        if paid_at is not None:
            await transaction_service.mark_paid(db_session, transaction, paid_at=paid_at)
        if status is not None:
            transaction.status = status
        await db_session.commit()
        return transaction

    return _make_transaction

