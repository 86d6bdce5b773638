import os

from cryptography.fernet import Fernet

# Settings load at import time, so the environment has to be ready first.
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-that-is-long-enough-32b")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "development"
os.environ["TOKEN_REFRESH_INTERVAL_SECONDS"] = "0"

import pytest
import pytest_asyncio

from core.orm import build_engine, init_orm, session_factory
from integrations.base import ProviderConfig
from services.credential_store import SqlCredentialStore

from lib.fakes import FakeProviderAPI


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine("sqlite://")
    await init_orm(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(db_engine) -> SqlCredentialStore:
    return SqlCredentialStore(session_factory(db_engine))


@pytest_asyncio.fixture
async def provider_api():
    api = FakeProviderAPI()
    yield api
    await api.close()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.test/api/integrations/callback",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: exercises several components together through the HTTP layer"
    )
