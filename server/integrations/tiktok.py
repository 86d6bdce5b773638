import asyncio
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
    PostDetails,
    PostResult,
    ProviderConfig,
    RefreshedTokens,
    authenticate_with,
    build_url,
    generate_state,
    publish_with,
    refresh_with,
)

logger = logging.getLogger(__name__)

LOG_STEP = "INT-TIKTOK"

TIKTOK_AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
TIKTOK_API_URL = "https://open.tiktokapis.com/v2"
TIKTOK_TOKEN_URL = f"{TIKTOK_API_URL}/oauth/token/"
TIKTOK_USER_INFO_URL = f"{TIKTOK_API_URL}/user/info/"
TIKTOK_VIDEO_INIT_URL = f"{TIKTOK_API_URL}/post/publish/video/init/"
TIKTOK_CONTENT_INIT_URL = f"{TIKTOK_API_URL}/post/publish/content/init/"
TIKTOK_STATUS_URL = f"{TIKTOK_API_URL}/post/publish/status/fetch/"
SCOPES = ["user.info.basic", "user.info.profile", "video.publish", "video.upload"]
USER_FIELDS = "open_id,union_id,avatar_url,display_name,username"

DEFAULT_PRIVACY_LEVEL = "SELF_ONLY"
MAX_TITLE_LENGTH = 150
REAUTH_ERROR_CODES = {"access_token_invalid", "scope_not_authorized"}
FAILED_STATUSES = {"FAILED"}


class TikTokError(PublishFailed):
    """TikTok API returned an error"""

    def __init__(self, error_code: str, message: str = ""):
        self.error_code = error_code
        super().__init__(f"TikTok error {error_code}: {message}".rstrip(": "))


class TikTokAdapter:
    """
    TikTok Content Posting API.

    The token endpoint reports failures either as a non-2xx status or as a
    200 response carrying an `error` field; both count as failures. The
    business endpoints wrap results in {"data": ..., "error": {"code": "ok"}}.
    """

    identifier = "tiktok"
    uses_pkce = False

    def __init__(
        self,
        config: ProviderConfig,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = 5.0,
        max_polls: int = 60,
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
            TIKTOK_AUTH_URL,
            {
                "client_key": self.config.client_id,
                "response_type": "code",
                "scope": ",".join(SCOPES),
                "redirect_uri": self.config.redirect_uri,
                "state": state,
            },
        )
        return AuthUrl(url=url, state=state)

    async def _token_request(self, data: dict) -> dict:
        response = await self.http.post(
            TIKTOK_TOKEN_URL,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "client_key": self.config.client_id,
                "client_secret": self.config.client_secret,
                **data,
            },
        )
        payload = response.json() if response.content else {}
        if not response.is_success or payload.get("error") or not payload.get("access_token"):
            description = payload.get("error_description") or payload.get("error")
            raise TokenExchangeFailed(
                f"TikTok token request failed: {description or f'HTTP {response.status_code}'}"
            )
        return payload

    async def _api(self, url: str, access_token: str, **kwargs) -> dict:
        response = await self.http.request(
            kwargs.pop("method", "POST"),
            url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json; charset=UTF-8",
            },
            **kwargs,
        )
        payload = response.json() if response.content else {}
        error = payload.get("error") or {}
        error_code = error.get("code", "ok")
        if error_code in REAUTH_ERROR_CODES or response.status_code in (401, 403):
            raise PublishNeedsReauth()
        if not response.is_success:
            if error_code != "ok":
                raise TikTokError(error_code, error.get("message", ""))
            raise ProviderHTTPError(response.status_code, response.text, url)
        if error_code != "ok":
            raise TikTokError(error_code, error.get("message", ""))
        return payload.get("data") or {}

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails:
        async def exchange() -> AuthTokenDetails:
            tokens = await self._token_request(
                {
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.config.redirect_uri,
                }
            )
            access_token = tokens["access_token"]

            try:
                data = await self._api(
                    TIKTOK_USER_INFO_URL,
                    access_token,
                    method="GET",
                    params={"fields": USER_FIELDS},
                )
            except (PublishFailed, ProviderHTTPError) as e:
                raise ProfileFetchFailed(f"TikTok user info failed: {e}") from e

            user = data.get("user") or {}
            open_id = user.get("open_id") or tokens.get("open_id")
            if not open_id:
                raise ProfileFetchFailed("TikTok did not return an open_id")

            return AuthTokenDetails(
                id=open_id,
                name=user.get("display_name", ""),
                picture=user.get("avatar_url", ""),
                access_token=access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_in=int(tokens.get("expires_in") or 0),
                username=user.get("username", ""),
            )

        return await authenticate_with(
            self.store, self.identifier, user_id, exchange, LOG_STEP
        )

    async def refresh_token(self, user_id: str, internal_id: str) -> RefreshedTokens:
        async def exchange(refresh_token: str) -> dict:
            return await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )

        return await refresh_with(
            self.store, self.identifier, user_id, internal_id, exchange, LOG_STEP
        )

    async def _init_publish(self, access_token: str, details: PostDetails) -> str:
        title = (details.title or details.text)[:MAX_TITLE_LENGTH]
        privacy_level = details.privacy_level or DEFAULT_PRIVACY_LEVEL
        videos = [item for item in details.media if item.type == "video"]

        if videos:
            if len(details.media) != 1:
                raise PublishFailed("TikTok video posts take exactly one video")
            data = await self._api(
                TIKTOK_VIDEO_INIT_URL,
                access_token,
                json={
                    "post_info": {"title": title, "privacy_level": privacy_level},
                    "source_info": {"source": "PULL_FROM_URL", "video_url": videos[0].url},
                },
            )
        else:
            data = await self._api(
                TIKTOK_CONTENT_INIT_URL,
                access_token,
                json={
                    "post_info": {
                        "title": title,
                        "description": details.text,
                        "privacy_level": privacy_level,
                    },
                    "source_info": {
                        "source": "PULL_FROM_URL",
                        "photo_images": [item.url for item in details.media],
                        "photo_cover_index": 0,
                    },
                    "post_mode": "DIRECT_POST",
                    "media_type": "PHOTO",
                },
            )

        publish_id = data.get("publish_id")
        if not publish_id:
            raise PublishFailed("TikTok did not return a publish id")
        return publish_id

    async def _wait_for_publish(self, access_token: str, publish_id: str) -> dict:
        for _ in range(self.max_polls):
            data = await self._api(
                TIKTOK_STATUS_URL, access_token, json={"publish_id": publish_id}
            )
            status = data.get("status")
            if status == "PUBLISH_COMPLETE":
                return data
            if status in FAILED_STATUSES:
                raise PublishFailed(
                    f"TikTok publish failed: {data.get('fail_reason') or 'unknown reason'}"
                )
            await asyncio.sleep(self.poll_interval)
        raise PublishFailed("TikTok publish timed out")

    async def post(self, access_token: str, details: PostDetails) -> PostResult:
        async def publish() -> PostResult:
            if not details.media:
                raise PublishFailed("TikTok posts require a video or photos")

            publish_id = await self._init_publish(access_token, details)
            status = await self._wait_for_publish(access_token, publish_id)

            post_ids = status.get("publicaly_available_post_id") or []
            post_id = str(post_ids[0]) if post_ids else publish_id
            logger.info(f"Published TikTok post {post_id}.")
            return PostResult(success=True, post_id=post_id)

        return await publish_with(self.identifier, publish, LOG_STEP)
