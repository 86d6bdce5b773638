import httpx
import pytest

from integrations.base import MediaItem, PostDetails
from integrations.instagram import (
    GRAPH_TOKEN_URL,
    GRAPH_URL,
    LONG_LIVED_TOKEN_SECONDS,
    InstagramAdapter,
)
from services.credential_store import utcnow

from lib.fakes import seed_integration

ACCOUNTS_URL = f"{GRAPH_URL}/me/accounts"
MEDIA_URL = f"{GRAPH_URL}/ig-1/media"
PUBLISH_URL = f"{GRAPH_URL}/ig-1/media_publish"


@pytest.fixture
def adapter(provider_config, store, provider_api):
    return InstagramAdapter(
        provider_config, store, provider_api.client, poll_interval=0, max_polls=5
    )


def _token_endpoint(request: httpx.Request) -> httpx.Response:
    if request.url.params.get("grant_type") == "fb_exchange_token":
        return httpx.Response(200, json={"access_token": "long-lived"})
    return httpx.Response(200, json={"access_token": "short-lived", "expires_in": 3600})


# Purpose: verify the short-lived, long-lived and discovery steps run in one call.
@pytest.mark.asyncio
async def test_authenticate_discovers_business_account(adapter, store, provider_api):
    provider_api.add("GET", GRAPH_TOKEN_URL, handler=_token_endpoint)
    provider_api.add(
        "GET",
        ACCOUNTS_URL,
        {
            "data": [
                {"id": "page-0", "name": "No IG"},
                {
                    "id": "page-1",
                    "name": "Shop",
                    "username": "shop",
                    "instagram_business_account": {"id": "ig-1"},
                    "picture": {"data": {"url": "https://fb.test/p.png"}},
                },
            ]
        },
    )

    details = await adapter.authenticate("code", "u1")

    assert details.ok
    record = await store.find("u1", "instagram")
    assert record.internal_id == "ig-1"
    assert record.token == "long-lived"
    assert record.refresh_token == "long-lived"
    assert record.picture == "https://fb.test/p.png"
    remaining = (record.token_expiration - utcnow()).total_seconds()
    assert LONG_LIVED_TOKEN_SECONDS - 60 < remaining <= LONG_LIVED_TOKEN_SECONDS
    accounts_call = provider_api.calls("GET", ACCOUNTS_URL)[0]
    assert accounts_call.url.params["access_token"] == "long-lived"


# Purpose: verify no row is written when no page has an Instagram business account.
@pytest.mark.asyncio
async def test_authenticate_without_business_account(adapter, store, provider_api):
    provider_api.add("GET", GRAPH_TOKEN_URL, handler=_token_endpoint)
    provider_api.add("GET", ACCOUNTS_URL, {"data": [{"id": "page-0", "name": "No IG"}]})

    details = await adapter.authenticate("code", "u1")

    assert details.error == "No Instagram Business account found"
    assert await store.find("u1", "instagram") is None


# Purpose: verify a failed long-lived exchange stops the flow before discovery.
@pytest.mark.asyncio
async def test_authenticate_long_lived_failure(adapter, store, provider_api):
    def token_endpoint(request):
        if request.url.params.get("grant_type") == "fb_exchange_token":
            return httpx.Response(400, json={"error": {"code": 100}})
        return httpx.Response(200, json={"access_token": "short-lived"})

    provider_api.add("GET", GRAPH_TOKEN_URL, handler=token_endpoint)

    details = await adapter.authenticate("code", "u1")

    assert not details.ok
    assert provider_api.calls("GET", ACCOUNTS_URL) == []
    assert await store.find("u1", "instagram") is None


# Purpose: verify refresh exchanges the stored long-lived token and stores the new one twice.
@pytest.mark.asyncio
async def test_refresh_rotates_long_lived_token(adapter, store, provider_api):
    record = await seed_integration(
        store, provider="instagram", internal_id="ig-1", refresh_token="old-long"
    )
    provider_api.add("GET", GRAPH_TOKEN_URL, {"access_token": "new-long", "expires_in": 5000000})

    tokens = await adapter.refresh_token("u1", "ig-1")

    assert tokens.access_token == "new-long"
    assert tokens.refresh_token == "new-long"
    request = provider_api.calls("GET", GRAPH_TOKEN_URL)[0]
    assert request.url.params["fb_exchange_token"] == "old-long"
    stored = await store.get(record.id)
    assert stored.token == "new-long"


# Purpose: verify Instagram posts require media.
@pytest.mark.asyncio
async def test_post_requires_media(adapter, provider_api):
    result = await adapter.post("tok", PostDetails(text="caption", account_id="ig-1"))

    assert result.success is False
    assert result.error == "No media provided"
    assert provider_api.requests == []


# Purpose: verify a single image is containerized, published and linked.
@pytest.mark.asyncio
async def test_post_single_image(adapter, provider_api):
    provider_api.add("POST", MEDIA_URL, {"id": "container-1"})
    provider_api.add("POST", PUBLISH_URL, {"id": "media-1"})
    provider_api.add("GET", f"{GRAPH_URL}/media-1", {"permalink": "https://instagram.com/p/abc"})

    result = await adapter.post(
        "tok",
        PostDetails(text="caption", account_id="ig-1", media=[MediaItem(url="https://cdn.test/a.jpg")]),
    )

    assert result.success is True
    assert result.post_id == "media-1"
    assert result.release_url == "https://instagram.com/p/abc"
    container = provider_api.calls("POST", MEDIA_URL)[0]
    assert container.url.params["image_url"] == "https://cdn.test/a.jpg"
    assert container.url.params["caption"] == "caption"
    assert provider_api.calls("POST", PUBLISH_URL)[0].url.params["creation_id"] == "container-1"


# Purpose: verify video containers are polled until processing finishes.
@pytest.mark.asyncio
async def test_post_video_waits_for_processing(adapter, provider_api):
    provider_api.add("POST", MEDIA_URL, {"id": "container-v"})
    provider_api.add("GET", f"{GRAPH_URL}/container-v", {"status_code": "IN_PROGRESS"})
    provider_api.add("GET", f"{GRAPH_URL}/container-v", {"status_code": "FINISHED"})
    provider_api.add("POST", PUBLISH_URL, {"id": "media-v"})
    provider_api.add("GET", f"{GRAPH_URL}/media-v", {})

    result = await adapter.post(
        "tok",
        PostDetails(account_id="ig-1", media=[MediaItem(url="https://cdn.test/v.mp4", type="video")]),
    )

    assert result.success is True
    assert len(provider_api.calls("GET", f"{GRAPH_URL}/container-v")) == 2
    assert provider_api.calls("POST", MEDIA_URL)[0].url.params["media_type"] == "REELS"


# Purpose: verify a container that fails processing is never published.
@pytest.mark.asyncio
async def test_post_video_processing_error(adapter, provider_api):
    provider_api.add("POST", MEDIA_URL, {"id": "container-v"})
    provider_api.add("GET", f"{GRAPH_URL}/container-v", {"status_code": "ERROR"})

    result = await adapter.post(
        "tok",
        PostDetails(account_id="ig-1", media=[MediaItem(url="https://cdn.test/v.mp4", type="video")]),
    )

    assert result.success is False
    assert provider_api.calls("POST", PUBLISH_URL) == []


# Purpose: verify several items become children of one carousel container.
@pytest.mark.asyncio
async def test_post_carousel(adapter, provider_api):
    provider_api.add("POST", MEDIA_URL, {"id": "child-1"})
    provider_api.add("POST", MEDIA_URL, {"id": "child-2"})
    provider_api.add("POST", MEDIA_URL, {"id": "carousel-1"})
    provider_api.add("POST", PUBLISH_URL, {"id": "media-c"})
    provider_api.add("GET", f"{GRAPH_URL}/media-c", {})

    result = await adapter.post(
        "tok",
        PostDetails(
            text="two",
            account_id="ig-1",
            media=[MediaItem(url="https://cdn.test/1.jpg"), MediaItem(url="https://cdn.test/2.jpg")],
        ),
    )

    assert result.success is True
    carousel = provider_api.calls("POST", MEDIA_URL)[2]
    assert carousel.url.params["media_type"] == "CAROUSEL"
    assert carousel.url.params["children"] == "child-1,child-2"
    assert provider_api.calls("POST", PUBLISH_URL)[0].url.params["creation_id"] == "carousel-1"


# Purpose: verify Graph error code 190 on a 400 answer means the token must be renewed.
@pytest.mark.asyncio
async def test_post_expired_token_needs_reauth(adapter, provider_api):
    provider_api.add(
        "POST",
        MEDIA_URL,
        {"error": {"message": "Session has expired", "type": "OAuthException", "code": 190}},
        status_code=400,
    )

    result = await adapter.post(
        "tok", PostDetails(account_id="ig-1", media=[MediaItem(url="https://cdn.test/a.jpg")])
    )

    assert result.needs_reauth is True
