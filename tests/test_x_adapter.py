import json
from datetime import timedelta

import httpx
import pytest

from core.errors import NoRefreshTokenOnRecord, TokenRefreshRejected
from integrations.base import MediaItem, Poll, PostDetails
from integrations.x import (
    X_MEDIA_UPLOAD_URL,
    X_ME_URL,
    X_TOKEN_URL,
    X_TWEETS_URL,
    XAdapter,
)
from services.credential_store import utcnow

from lib.fakes import seed_integration

PROFILE = {"data": {"id": "42", "name": "Alice", "username": "alice"}}


@pytest.fixture
def adapter(provider_config, store, provider_api):
    return XAdapter(provider_config, store, provider_api.client)


# Purpose: verify a successful code exchange stores the account with its profile handle.
@pytest.mark.asyncio
async def test_authenticate_stores_integration(adapter, store, provider_api):
    provider_api.add(
        "POST",
        X_TOKEN_URL,
        {"access_token": "tok", "refresh_token": "rtok", "expires_in": 7200},
    )
    provider_api.add("GET", X_ME_URL, PROFILE)

    details = await adapter.authenticate("code123", "u1", "verifier1")

    assert details.ok
    assert details.id == "42"
    record = await store.find("u1", "twitter")
    assert record.token == "tok"
    assert record.refresh_token == "rtok"
    assert record.profile == "alice"
    assert record.internal_id == "42"
    remaining = record.token_expiration - utcnow()
    assert timedelta(seconds=7100) < remaining <= timedelta(seconds=7200)

    token_request = provider_api.calls("POST", X_TOKEN_URL)[0]
    assert token_request.headers["authorization"].startswith("Basic ")
    assert b"code_verifier=verifier1" in token_request.content


# Purpose: verify a failing token endpoint yields an error and writes nothing.
@pytest.mark.asyncio
async def test_authenticate_http_failure_writes_nothing(adapter, store, provider_api):
    provider_api.add("POST", X_TOKEN_URL, {"error": "invalid_grant"}, status_code=400)

    details = await adapter.authenticate("bad", "u1", "verifier1")

    assert not details.ok
    assert details.error
    assert await store.list_active("u1") == []
    assert provider_api.calls("GET", X_ME_URL) == []


# Purpose: verify X refuses to exchange a code without the PKCE verifier.
@pytest.mark.asyncio
async def test_authenticate_requires_verifier(adapter, provider_api):
    details = await adapter.authenticate("code123", "u1", None)

    assert not details.ok
    assert provider_api.requests == []


# Purpose: verify a record without a refresh token fails before any network call.
@pytest.mark.asyncio
async def test_refresh_without_refresh_token(adapter, store, provider_api):
    record = await seed_integration(store, refresh_token=None)

    with pytest.raises(NoRefreshTokenOnRecord):
        await adapter.refresh_token("u1", "42")

    assert provider_api.requests == []
    assert (await store.get(record.id)).refresh_needed is True


# Purpose: verify refreshing an unknown integration fails without a network call.
@pytest.mark.asyncio
async def test_refresh_unknown_integration(adapter, provider_api):
    with pytest.raises(NoRefreshTokenOnRecord):
        await adapter.refresh_token("u1", "missing")

    assert provider_api.requests == []


# Purpose: verify a rejected refresh flags the row and keeps the old token and expiry.
@pytest.mark.asyncio
async def test_refresh_rejected_flags_row(adapter, store, provider_api):
    expiry = utcnow() + timedelta(minutes=1)
    record = await seed_integration(store, token_expiration=expiry)
    provider_api.add("POST", X_TOKEN_URL, {"error": "invalid_request"}, status_code=400)

    with pytest.raises(TokenRefreshRejected):
        await adapter.refresh_token("u1", "42")

    stored = await store.get(record.id)
    assert stored.refresh_needed is True
    assert stored.token == "stored-token"
    assert stored.token_expiration == record.token_expiration


# Purpose: verify a successful refresh rotates the tokens and clears the flag.
@pytest.mark.asyncio
async def test_refresh_success(adapter, store, provider_api):
    record = await seed_integration(store)
    await store.update(record.id, refresh_needed=True)
    provider_api.add(
        "POST",
        X_TOKEN_URL,
        {"access_token": "new-tok", "refresh_token": "new-rtok", "expires_in": 7200},
    )

    tokens = await adapter.refresh_token("u1", "42")

    assert tokens.access_token == "new-tok"
    stored = await store.get(record.id)
    assert stored.token == "new-tok"
    assert stored.refresh_token == "new-rtok"
    assert stored.refresh_needed is False
    assert stored.token_version == record.token_version + 1


# Purpose: verify a refresh that loses a concurrent race keeps the winner's tokens.
@pytest.mark.asyncio
async def test_refresh_race_keeps_winner(adapter, store, provider_api):
    record = await seed_integration(store)

    async def token_endpoint(request):
        # another writer lands while this refresh is in flight
        await store.update_tokens(record.id, record.token_version, "winner", "winner-r", None)
        return httpx.Response(200, json={"access_token": "loser", "expires_in": 60})

    provider_api.add("POST", X_TOKEN_URL, handler=token_endpoint)

    tokens = await adapter.refresh_token("u1", "42")

    assert tokens.access_token == "winner"
    assert (await store.get(record.id)).token == "winner"


# Purpose: verify text over 280 characters is rejected without calling X.
@pytest.mark.asyncio
async def test_post_rejects_long_text(adapter, provider_api):
    result = await adapter.post("tok", PostDetails(text="x" * 281))

    assert result.success is False
    assert "280" in result.error
    assert provider_api.requests == []


# Purpose: verify a revoked token is reported as needing reauthorization.
@pytest.mark.asyncio
async def test_post_unauthorized_needs_reauth(adapter, provider_api):
    provider_api.add("GET", X_ME_URL, {"title": "Unauthorized"}, status_code=401)

    result = await adapter.post("tok", PostDetails(text="hello"))

    assert result.success is False
    assert result.needs_reauth is True
    assert provider_api.calls("POST", X_TWEETS_URL) == []


# Purpose: verify media is uploaded first and attached to the tweet with reply settings.
@pytest.mark.asyncio
async def test_post_with_media(adapter, provider_api):
    provider_api.add("GET", X_ME_URL, PROFILE)
    provider_api.add(
        "GET", "https://cdn.test/cat.png", content=b"png-bytes", headers={"content-type": "image/png"}
    )
    provider_api.add("POST", X_MEDIA_UPLOAD_URL, {"data": {"id": "m-1"}})
    provider_api.add("POST", X_TWEETS_URL, {"data": {"id": "t-1"}}, status_code=201)

    result = await adapter.post(
        "tok",
        PostDetails(
            text="hello",
            media=[MediaItem(url="https://cdn.test/cat.png")],
            reply_settings="following",
        ),
    )

    assert result.success is True
    assert result.post_id == "t-1"
    assert result.release_url == "https://twitter.com/i/web/status/t-1"
    payload = json.loads(provider_api.calls("POST", X_TWEETS_URL)[0].content)
    assert payload == {
        "text": "hello",
        "media": {"media_ids": ["m-1"]},
        "reply_settings": "following",
    }


# Purpose: verify a failed media upload aborts before the tweet is created.
@pytest.mark.asyncio
async def test_post_media_failure_creates_no_tweet(adapter, provider_api):
    provider_api.add("GET", X_ME_URL, PROFILE)
    provider_api.add("GET", "https://cdn.test/cat.png", content=b"png-bytes")
    provider_api.add("POST", X_MEDIA_UPLOAD_URL, {"errors": ["boom"]}, status_code=500)

    result = await adapter.post(
        "tok", PostDetails(text="hello", media=[MediaItem(url="https://cdn.test/cat.png")])
    )

    assert result.success is False
    assert result.needs_reauth is False
    assert provider_api.calls("POST", X_TWEETS_URL) == []


# Purpose: verify polls are sent on text-only tweets.
@pytest.mark.asyncio
async def test_post_with_poll(adapter, provider_api):
    provider_api.add("GET", X_ME_URL, PROFILE)
    provider_api.add("POST", X_TWEETS_URL, {"data": {"id": "t-2"}})

    result = await adapter.post(
        "tok",
        PostDetails(text="pick one", poll=Poll(options=["a", "b"], duration_minutes=60)),
    )

    assert result.success is True
    payload = json.loads(provider_api.calls("POST", X_TWEETS_URL)[0].content)
    assert payload["poll"] == {"options": ["a", "b"], "duration_minutes": 60}
    assert "reply_settings" not in payload
