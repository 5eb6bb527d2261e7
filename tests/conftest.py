"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, seeded users, a fake Paystack
gateway and the real notification gateway over a mocked Twilio client.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import itertools
from unittest.mock import MagicMock

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from tenacity import wait_none

from config.database import Base, get_db
from main import app
from services.notification.gateway import NotificationGateway
from services.registry import build_services
from shared.exceptions import PaymentError, TransferError
from shared.models.models import User, UserRole
from shared.utils.security import create_access_token

TEST_DATABASE_URL = "sqlite+aiosqlite://"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Fake payment gateway ──────────────────────────────────────

class FakePaymentGateway:
    """Records every call; flip the fail_* flags to simulate Paystack errors."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.charges = []
        self.transfers = []
        self.refunds = []
        self.fail_charge = False
        self.fail_transfer = False
        self.fail_refund = False

    async def charge(self, amount, reference, email, authorization_code):
        if self.fail_charge:
            raise PaymentError("Insufficient funds")
        if not authorization_code:
            raise PaymentError("No saved payment method for this client")
        self.charges.append({"amount": amount, "reference": reference, "email": email})
        return {"transaction_id": f"txn_{next(self._ids)}", "reference": reference}

    async def transfer(self, amount, recipient, reference, reason):
        if self.fail_transfer:
            raise TransferError("Transfer failed")
        if not recipient:
            raise TransferError("Worker has no registered payout account")
        transfer_ref = f"TRF_{next(self._ids)}"
        self.transfers.append({"amount": amount, "recipient": recipient, "transfer_ref": transfer_ref})
        return {"transfer_ref": transfer_ref}

    async def refund(self, transaction_reference, amount):
        if self.fail_refund:
            raise PaymentError("Refund failed")
        refund_ref = f"RFD_{next(self._ids)}"
        self.refunds.append({"transaction": transaction_reference, "amount": amount, "refund_ref": refund_ref})
        return {"refund_ref": refund_ref}

    async def close(self):
        pass


# ── Database ──────────────────────────────────────────────────

def _enable_savepoints(engine) -> None:
    """Let SQLAlchemy drive BEGIN itself so SAVEPOINT works under aiosqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    _enable_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


# ── Services & HTTP client ────────────────────────────────────

@pytest_asyncio.fixture
async def payment_gateway():
    return FakePaymentGateway()


@pytest_asyncio.fixture
async def twilio_client():
    twilio = MagicMock()
    twilio.messages.create.return_value = MagicMock(sid="SM_test")
    return twilio


@pytest_asyncio.fixture
async def services(payment_gateway, twilio_client):
    notification_gateway = NotificationGateway(twilio_client=twilio_client, sms_retry_wait=wait_none())
    registry = build_services(payment_gateway, notification_gateway)
    app.state.services = registry
    return registry


@pytest_asyncio.fixture
async def client(db_session, services):
    async def _override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

async def _make_user(db_session, **fields) -> User:
    user = User(**fields)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def client_user(db_session) -> User:
    return await _make_user(
        db_session,
        email="ada@example.com",
        name="Ada Client",
        phone="08031234567",
        role=UserRole.CLIENT,
        payment_authorization_code="AUTH_ada",
    )


@pytest_asyncio.fixture
async def other_client(db_session) -> User:
    return await _make_user(
        db_session,
        email="bola@example.com",
        name="Bola Client",
        role=UserRole.CLIENT,
        payment_authorization_code="AUTH_bola",
    )


@pytest_asyncio.fixture
async def worker(db_session) -> User:
    return await _make_user(
        db_session,
        email="emeka@example.com",
        name="Emeka Worker",
        phone="08059876543",
        role=UserRole.WORKER,
        payout_recipient_code="RCP_emeka",
    )


@pytest_asyncio.fixture
async def other_worker(db_session) -> User:
    return await _make_user(
        db_session,
        email="ngozi@example.com",
        name="Ngozi Worker",
        role=UserRole.WORKER,
        payout_recipient_code="RCP_ngozi",
    )


@pytest_asyncio.fixture
async def admin(db_session) -> User:
    return await _make_user(
        db_session,
        email="admin@example.com",
        name="Platform Admin",
        role=UserRole.ADMIN,
    )
