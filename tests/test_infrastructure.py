import logging

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.pool import StaticPool

from auth.encryption import build_cipher, decrypt, encrypt
from core import http_client
from core.errors import CredentialDecryptionFailed
from core.logging_setup import CustomFormatter
from core.orm import async_database_url, build_engine


# Purpose: verify old-key tokens stay readable and new writes use the first key.
def test_cipher_key_rotation():
    old_key = Fernet.generate_key().decode()
    new_key = Fernet.generate_key().decode()
    old = build_cipher(old_key)
    rotated = build_cipher(f"{new_key}, {old_key}")

    stored = encrypt("provider-token", cipher=old)

    assert decrypt(stored, cipher=rotated) == "provider-token"
    fresh = encrypt("provider-token", cipher=rotated)
    assert decrypt(fresh, cipher=build_cipher(new_key)) == "provider-token"


# Purpose: verify a value no configured key can read raises a typed error.
def test_decrypt_with_unknown_key():
    stored = encrypt("provider-token", cipher=build_cipher(Fernet.generate_key().decode()))

    with pytest.raises(CredentialDecryptionFailed):
        decrypt(stored)


# Purpose: verify an empty key list is refused at start-up.
def test_cipher_requires_a_key():
    with pytest.raises(ValueError):
        build_cipher(" , ")


# Purpose: verify plain database URLs are pointed at their async drivers.
@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgres://db/app", "postgresql+asyncpg://db/app"),
        ("postgresql://db/app", "postgresql+asyncpg://db/app"),
        ("postgresql+asyncpg://db/app", "postgresql+asyncpg://db/app"),
        ("sqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ],
)
def test_async_database_url(url, expected):
    assert async_database_url(url) == expected


# Purpose: verify in-memory SQLite shares one connection across sessions.
@pytest.mark.asyncio
async def test_in_memory_engine_uses_static_pool():
    engine = build_engine("sqlite://")
    try:
        assert isinstance(engine.pool, StaticPool)
    finally:
        await engine.dispose()


# Purpose: verify the provider client is shared, identifies itself and is rebuilt after close.
@pytest.mark.asyncio
async def test_provider_client_lifecycle():
    await http_client.init_http_client()
    client = http_client.get_http_client()

    assert http_client.get_http_client() is client
    assert client.headers["user-agent"] == http_client.USER_AGENT
    assert client.follow_redirects is False

    await http_client.close_http_client()
    assert client.is_closed
    replacement = http_client.get_http_client()
    assert replacement is not client
    await http_client.close_http_client()


# Purpose: verify query strings and token fields never reach formatted log lines.
def test_log_lines_are_redacted():
    record = logging.LogRecord(
        "test",
        logging.ERROR,
        __file__,
        1,
        'POST https://graph.facebook.com/v20.0/oauth/access_token?fb_exchange_token=abc failed: '
        '{"access_token": "EAAB123", "token_type": "bearer"} Authorization: Bearer sk-999',
        None,
        None,
    )

    line = CustomFormatter().format(record)

    assert "/v20.0/oauth/access_token" in line
    assert "abc" not in line
    assert "EAAB123" not in line
    assert "sk-999" not in line
    assert '"token_type": "bearer"' in line
