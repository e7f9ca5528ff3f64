import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCODE_KEY", "test-session-signing-key-0123456789abcdef")
os.environ.setdefault("SERVER_SECRET", "test-email-link-secret-0123456789abcdef")

from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from siwe_auth.core.config import AuthConfig
from siwe_auth.core.dependencies import get_auth_config, get_name_resolver, get_nonce_store, get_rate_limiter
from siwe_auth.core.message import SignInMessage, serialize
from siwe_auth.core.rate_limit import RateLimitConfig, SlidingWindowLimiter
from siwe_auth.db.base import Base
from siwe_auth.db.session import get_db, init_db
from siwe_auth.services.account_repository import SqlAccountRepository
from siwe_auth.services.identity import IdentityManager
from siwe_auth.services.nonce_store import MemoryNonceStore


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_DOMAIN = "example.com"
NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def override_get_db() -> Generator:
    """Override database dependency for testing"""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def fresh_tables():
    """Every test starts with empty tables"""
    init_db(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def repository(db_session) -> SqlAccountRepository:
    return SqlAccountRepository(db_session)


@pytest.fixture
def identities(repository) -> IdentityManager:
    return IdentityManager(repository, clock=lambda: NOW)


@pytest.fixture
def wallet():
    """A fresh secp256k1 key pair"""
    return Account.create()


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(allowed_domains=frozenset({TEST_DOMAIN}))


@pytest.fixture
def nonce_store() -> MemoryNonceStore:
    return MemoryNonceStore(ttl=timedelta(minutes=5))


@pytest.fixture
def client(auth_config, nonce_store) -> TestClient:
    """Create a test client for the FastAPI application"""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_auth_config] = lambda: auth_config
    app.dependency_overrides[get_nonce_store] = lambda: nonce_store
    app.dependency_overrides[get_name_resolver] = lambda: None
    app.dependency_overrides[get_rate_limiter] = lambda: SlidingWindowLimiter(RateLimitConfig(enabled=False))
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def build_message(
    address: str,
    nonce: str,
    issued_at: datetime,
    domain: str = TEST_DOMAIN,
    resources: Optional[list] = None,
    **extra,
) -> str:
    """Serialized sign-in message for tests"""
    return serialize(
        SignInMessage(
            domain=domain,
            address=address,
            statement="Sign in to Example",
            uri=f"https://{domain}",
            version="1",
            chain_id=1,
            nonce=nonce,
            issued_at=issued_at,
            resources=resources or [],
            **extra,
        )
    )


def sign(wallet, text: str) -> str:
    """0x hex personal-message signature"""
    signed = Account.sign_message(encode_defunct(text=text), wallet.key)
    return "0x" + bytes(signed.signature).hex()
