"""
Pytest configuration and fixtures for testing
"""
import os

# Settings are read at import time; these must be in place before the app modules load
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-not-for-production")
os.environ.setdefault("SWEEPER_ENABLED", "false")

from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from auth_utils import create_jwt, hash_password
from config import settings
from crud.user import UserRepository
from database import Base, get_db, get_session_factory
from services.access_policy import AccessPolicy, get_access_policy
from services.exceptions import PaymentProviderError
from services.mercadopago_client import PaymentPreference, ProviderPayment, get_payment_provider
from utils.clock import FixedClock, get_clock

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
TRIAL_DAYS = 15


class FakePaymentProvider:
    """In-memory stand-in for MercadoPago answering with the REST API's payload shapes."""

    def __init__(self):
        self.payments = {}
        self.preferences = []
        self.fail = False
        self.get_payment_calls = 0

    def add_payment(self, payment_id, status, external_reference, amount=2999.0,
                    date_approved=None, currency="ARS"):
        self.payments[str(payment_id)] = {
            "id": int(payment_id),
            "status": status,
            "transaction_amount": amount,
            "currency_id": currency,
            "external_reference": external_reference,
            "date_approved": date_approved.isoformat() if date_approved else None,
            "payment_type_id": "credit_card",
        }

    async def create_preference(self, title, description, price, currency, payer_email,
                                external_reference, expires_from=None, expires_at=None):
        if self.fail:
            raise PaymentProviderError("MercadoPago error 503", status_code=503)
        preference_id = f"pref-{len(self.preferences) + 1}"
        self.preferences.append({
            "id": preference_id,
            "title": title,
            "price": price,
            "currency": currency,
            "payer_email": payer_email,
            "external_reference": external_reference,
            "expires_from": expires_from,
            "expires_at": expires_at,
        })
        return PaymentPreference(id=preference_id, init_point=f"https://mp.test/checkout/{preference_id}")

    async def get_payment(self, payment_id):
        self.get_payment_calls += 1
        if self.fail:
            raise PaymentProviderError("MercadoPago unreachable")
        if str(payment_id) not in self.payments:
            raise PaymentProviderError("MercadoPago error 404", status_code=404)
        return ProviderPayment.from_api(self.payments[str(payment_id)])


@pytest.fixture
async def test_engine(tmp_path):
    """
    File-backed SQLite database per test. NullPool gives every session its
    own connection, so concurrent sessions behave like separate clients.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated AsyncSession for each test.
    Commits if the test passes, rolls back if it raises.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def policy():
    return AccessPolicy(trial_days=TRIAL_DAYS)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def make_user(session_factory, clock):
    """Create a committed user. Defaults to a trial started at the clock's current instant."""
    counter = {"n": 0}

    async def _make_user(email=None, password="driver2024", **fields):
        counter["n"] += 1
        email = email or f"driver{counter['n']}@example.com"
        async with session_factory() as session:
            async with session.begin():
                repo = UserRepository(session)
                user = await repo.create_user(
                    {
                        "email": email,
                        "hashed_password": hash_password(password),
                        "full_name": f"Driver {counter['n']}",
                    },
                    now=fields.pop("trial_start_at", None) or clock.now(),
                )
                if fields:
                    for key, value in fields.items():
                        setattr(user, key, value)
                    await session.flush()
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user) -> dict:
        return {"Authorization": f"Bearer {create_jwt(user.id)}"}

    return _auth_headers


@pytest.fixture
async def client(session_factory, clock, provider, policy, monkeypatch):
    """
    HTTP client bound to the app with the database, clock, access policy and
    payment provider swapped for the test doubles.
    """
    from main import app

    monkeypatch.setattr(settings, "mp_webhook_secret", None)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_access_policy] = lambda: policy
    app.dependency_overrides[get_payment_provider] = lambda: provider

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
