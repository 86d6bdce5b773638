import asyncio
import json
import logging

import httpx
from core.errors import (
    ProfileFetchFailed,
    ProviderHTTPError,
    PublishFailed,
    PublishNeedsReauth,
    TokenExchangeFailed,
)
from core.http_client import get_http_client
from services.credential_store import CredentialStore

from integrations.base import (
    AuthTokenDetails,
    AuthUrl,
    MediaItem,
    PostDetails,
    PostResult,
    ProviderConfig,
    RefreshedTokens,
    authenticate_with,
    build_url,
    generate_state,
    publish_with,
    refresh_with,
    request_json,
)

logger = logging.getLogger(__name__)

LOG_STEP = "INT-INSTAGRAM"

GRAPH_VERSION = "v20.0"
FACEBOOK_DIALOG_URL = f"https://www.facebook.com/{GRAPH_VERSION}/dialog/oauth"
GRAPH_URL = f"https://graph.facebook.com/{GRAPH_VERSION}"
GRAPH_TOKEN_URL = f"{GRAPH_URL}/oauth/access_token"
SCOPES = [
    "instagram_basic",
    "pages_show_list",
    "pages_read_engagement",
    "business_management",
    "instagram_content_publish",
    "instagram_manage_comments",
    "instagram_manage_insights",
]

# Long-lived tokens last ~60 days; the Graph API does not always say so.
LONG_LIVED_TOKEN_SECONDS = 59 * 24 * 60 * 60

# Graph API error code for an expired or revoked access token
EXPIRED_TOKEN_CODE = 190


def _graph_error_code(error: ProviderHTTPError) -> int | None:
    try:
        return int(json.loads(error.body)["error"]["code"])
    except (ValueError, KeyError, TypeError):
        return None


class InstagramAdapter:
    """
    Instagram business accounts, reached through a Facebook Login page grant.

    Connecting runs three exchanges in one call: code -> short-lived token ->
    long-lived token, then discovers the first page that has an Instagram
    business account attached. The long-lived token doubles as the refresh
    token since the Graph API refreshes by exchanging a live token.
    """

    identifier = "instagram"
    uses_pkce = False

    def __init__(
        self,
        config: ProviderConfig,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = 3.0,
        max_polls: int = 40,
    ):
        self.config = config
        self.store = store
        self._http_client = http_client
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    def generate_auth_url(self) -> AuthUrl:
        state = generate_state()
        url = build_url(
            FACEBOOK_DIALOG_URL,
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "state": state,
                "scope": ",".join(SCOPES),
            },
        )
        return AuthUrl(url=url, state=state)

    async def _exchange_long_lived(self, token: str) -> dict:
        return await request_json(
            self.http,
            "GET",
            GRAPH_TOKEN_URL,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "fb_exchange_token": token,
            },
        )

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails:
        async def exchange() -> AuthTokenDetails:
            short_lived = await request_json(
                self.http,
                "GET",
                GRAPH_TOKEN_URL,
                params={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "redirect_uri": self.config.redirect_uri,
                    "code": code,
                },
                error=TokenExchangeFailed,
            )
            if not short_lived.get("access_token"):
                raise TokenExchangeFailed("Facebook did not return an access token")

            try:
                long_lived = await self._exchange_long_lived(short_lived["access_token"])
            except ProviderHTTPError as e:
                raise TokenExchangeFailed(
                    f"Long-lived token exchange failed: HTTP {e.status_code}"
                ) from e
            access_token = long_lived.get("access_token")
            if not access_token:
                raise TokenExchangeFailed("Facebook did not return a long-lived token")

            pages = await request_json(
                self.http,
                "GET",
                f"{GRAPH_URL}/me/accounts",
                params={
                    "fields": "id,instagram_business_account,username,name,picture.type(large)",
                    "access_token": access_token,
                    "limit": 500,
                },
                error=ProfileFetchFailed,
            )
            page = next(
                (p for p in pages.get("data") or [] if p.get("instagram_business_account")),
                None,
            )
            if page is None:
                raise ProfileFetchFailed("No Instagram Business account found")

            picture = ((page.get("picture") or {}).get("data") or {}).get("url", "")
            return AuthTokenDetails(
                id=page["instagram_business_account"]["id"],
                name=page.get("name", ""),
                picture=picture,
                access_token=access_token,
                refresh_token=access_token,
                expires_in=int(long_lived.get("expires_in") or LONG_LIVED_TOKEN_SECONDS),
                username=page.get("username", ""),
            )

        return await authenticate_with(
            self.store, self.identifier, user_id, exchange, LOG_STEP
        )

    async def refresh_token(self, user_id: str, internal_id: str) -> RefreshedTokens:
        async def exchange(refresh_token: str) -> dict:
            response = await self._exchange_long_lived(refresh_token)
            access_token = response["access_token"]
            return {
                "access_token": access_token,
                "refresh_token": access_token,
                "expires_in": response.get("expires_in") or LONG_LIVED_TOKEN_SECONDS,
            }

        return await refresh_with(
            self.store, self.identifier, user_id, internal_id, exchange, LOG_STEP
        )

    async def _graph(self, method: str, path: str, access_token: str, **params) -> dict:
        try:
            return await request_json(
                self.http,
                method,
                f"{GRAPH_URL}/{path}",
                params={**params, "access_token": access_token},
            )
        except ProviderHTTPError as e:
            if e.is_auth_failure or _graph_error_code(e) == EXPIRED_TOKEN_CODE:
                raise PublishNeedsReauth() from e
            raise

    async def _create_container(
        self, access_token: str, account_id: str, item: MediaItem, **extra
    ) -> str:
        params = dict(extra)
        if item.type == "video":
            params["media_type"] = "REELS" if not extra.get("is_carousel_item") else "VIDEO"
            params["video_url"] = item.url
        else:
            params["image_url"] = item.url
        container = await self._graph("POST", f"{account_id}/media", access_token, **params)
        if not container.get("id"):
            raise PublishFailed("Instagram did not return a media container id")
        if item.type == "video":
            await self._wait_until_finished(access_token, container["id"])
        return container["id"]

    async def _wait_until_finished(self, access_token: str, container_id: str) -> None:
        for _ in range(self.max_polls):
            status = await self._graph(
                "GET", container_id, access_token, fields="status_code"
            )
            status_code = status.get("status_code")
            if status_code == "FINISHED":
                return
            if status_code in ("ERROR", "EXPIRED"):
                raise PublishFailed(f"Instagram media processing failed: {status_code}")
            await asyncio.sleep(self.poll_interval)
        raise PublishFailed("Instagram media processing timed out")

    async def post(self, access_token: str, details: PostDetails) -> PostResult:
        async def publish() -> PostResult:
            if not details.media:
                raise PublishFailed("No media provided")
            if not details.account_id:
                raise PublishFailed("Missing Instagram business account id")
            account_id = details.account_id

            if len(details.media) == 1:
                creation_id = await self._create_container(
                    access_token, account_id, details.media[0], caption=details.text
                )
            else:
                children = [
                    await self._create_container(
                        access_token, account_id, item, is_carousel_item="true"
                    )
                    for item in details.media
                ]
                carousel = await self._graph(
                    "POST",
                    f"{account_id}/media",
                    access_token,
                    media_type="CAROUSEL",
                    children=",".join(children),
                    caption=details.text,
                )
                creation_id = carousel.get("id")
                if not creation_id:
                    raise PublishFailed("Instagram did not return a carousel container id")

            published = await self._graph(
                "POST",
                f"{account_id}/media_publish",
                access_token,
                creation_id=creation_id,
            )
            media_id = published.get("id")
            if not media_id:
                raise PublishFailed("Instagram did not return a media id")

            release_url = None
            try:
                media = await self._graph("GET", media_id, access_token, fields="permalink")
                release_url = media.get("permalink")
            except ProviderHTTPError as e:
                logger.warning(f"Could not read permalink for Instagram media {media_id}: {e}")

            logger.info(f"Published Instagram media {media_id}.")
            return PostResult(success=True, post_id=media_id, release_url=release_url)

        return await publish_with(self.identifier, publish, LOG_STEP)
