"""
Shared fixtures: in-memory database, a fake Open Banking server wired in
through httpx.MockTransport, and a connection manager built on both.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "test-credential-passphrase")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TEST_BANK_ENABLED", "false")

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.database import Base
from backend.app import models
from backend.app.bank_integration.client import BankApiClient
from backend.app.bank_integration.encryption import TokenEncryption
from backend.app.bank_integration.rate_limiter import SlidingWindowRateLimiter
from backend.app.bank_integration.registry import BankAdapterRegistry
from backend.app.bank_integration.schemas import ConnectionConfig
from backend.app.bank_integration.service import BankConnectionManager, RefreshLocks
from backend.app.bank_integration.sql_stores import SQLAccountStore, SQLCredentialStore
from backend.app.bank_integration.vault import CredentialVault

from tests.fakes import FakeBank, RecordingSleep


BANK_CODE = "test-bank"


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def user(db_session):
    user = models.User(email="alice@example.com", full_name="Alice Example")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def other_user(db_session):
    user = models.User(email="bob@example.com", full_name="Bob Example")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def bank_config():
    return ConnectionConfig(
        bank_code=BANK_CODE,
        bank_name="Test Bank",
        base_url="https://bank.test",
        authorize_url="https://auth.bank.test/authorize",
        token_url="https://bank.test/token",
        client_id="client-123",
        client_secret="secret-456",
        scopes=["accounts"],
        redirect_uri="http://localhost:8000/api/bank-connections/oauth/callback"
    )


@pytest.fixture
def fake_bank():
    return FakeBank()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def rate_limiter():
    return SlidingWindowRateLimiter(max_requests=1000, window_seconds=60)


@pytest.fixture
def registry(fake_bank, bank_config, rate_limiter, recording_sleep):
    def client_factory(config):
        return BankApiClient(
            config.base_url,
            rate_limiter=rate_limiter,
            retries=1,
            retry_delay=0.5,
            transport=fake_bank.transport(),
            sleep=recording_sleep
        )

    registry = BankAdapterRegistry(
        rate_limiter=rate_limiter,
        client_factory=client_factory,
        default_customer_ip="127.0.0.1"
    )
    registry.register(bank_config)
    return registry


@pytest.fixture
def encryption():
    return TokenEncryption(Fernet.generate_key().decode())


@pytest.fixture
def vault(db_session, encryption):
    return CredentialVault(SQLCredentialStore(db_session), encryption)


@pytest.fixture
def manager(db_session, registry, vault):
    return BankConnectionManager(db_session, registry, vault, refresh_locks=RefreshLocks())


@pytest.fixture
def account_store(db_session):
    return SQLAccountStore(db_session)


@pytest.fixture
def csv_account(account_store, user):
    account_id, _ = account_store.upsert(user.id, "Manual", "Everyday Current", currency="GBP")
    return account_id
