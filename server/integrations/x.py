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
    basic_auth_header,
    build_url,
    code_challenge_for,
    download_media,
    generate_code_verifier,
    generate_state,
    publish_with,
    refresh_with,
    request_json,
)

logger = logging.getLogger(__name__)

LOG_STEP = "INT-X"

X_AUTH_URL = "https://twitter.com/i/oauth2/authorize"
X_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
X_ME_URL = "https://api.twitter.com/2/users/me"
X_TWEETS_URL = "https://api.twitter.com/2/tweets"
X_MEDIA_UPLOAD_URL = "https://api.x.com/2/media/upload"
SCOPES = ["tweet.read", "tweet.write", "users.read", "offline.access", "media.write"]

MAX_TWEET_LENGTH = 280


class XAdapter:
    """Twitter/X via OAuth 2.0 authorization code + PKCE."""

    identifier = "twitter"
    uses_pkce = True

    def __init__(
        self,
        config: ProviderConfig,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store
        self._http_client = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    def _token_headers(self) -> dict:
        return {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": basic_auth_header(
                self.config.client_id, self.config.client_secret
            ),
        }

    def generate_auth_url(self) -> AuthUrl:
        state = generate_state()
        code_verifier = generate_code_verifier()
        url = build_url(
            X_AUTH_URL,
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": " ".join(SCOPES),
                "state": state,
                "code_challenge": code_challenge_for(code_verifier),
                "code_challenge_method": "S256",
            },
        )
        return AuthUrl(url=url, state=state, code_verifier=code_verifier)

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails:
        async def exchange() -> AuthTokenDetails:
            if not code_verifier:
                raise TokenExchangeFailed("Missing PKCE code verifier")

            tokens = await request_json(
                self.http,
                "POST",
                X_TOKEN_URL,
                headers=self._token_headers(),
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                    "code_verifier": code_verifier,
                },
                error=TokenExchangeFailed,
            )
            access_token = tokens["access_token"]

            me = await request_json(
                self.http,
                "GET",
                X_ME_URL,
                params={"user.fields": "profile_image_url,name,username"},
                headers={"Authorization": f"Bearer {access_token}"},
                error=ProfileFetchFailed,
            )
            user = me.get("data") or {}
            if not user.get("id"):
                raise ProfileFetchFailed("X profile response did not include a user id")

            return AuthTokenDetails(
                id=str(user["id"]),
                name=user.get("name", ""),
                picture=user.get("profile_image_url", ""),
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
            return await request_json(
                self.http,
                "POST",
                X_TOKEN_URL,
                headers=self._token_headers(),
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                },
            )

        return await refresh_with(
            self.store, self.identifier, user_id, internal_id, exchange, LOG_STEP
        )

    async def _upload_media(self, access_token: str, details: PostDetails) -> list[str]:
        media_ids = []
        for item in details.media:
            content, content_type = await download_media(self.http, item.url)
            category = "tweet_video" if item.type == "video" else "tweet_image"
            uploaded = await request_json(
                self.http,
                "POST",
                X_MEDIA_UPLOAD_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                data={"media_category": category},
                files={"media": ("upload", content, content_type)},
            )
            media_id = (uploaded.get("data") or {}).get("id") or uploaded.get("media_id_string")
            if not media_id:
                raise PublishFailed("X media upload returned no media id")
            media_ids.append(str(media_id))
        return media_ids

    async def post(self, access_token: str, details: PostDetails) -> PostResult:
        async def publish() -> PostResult:
            if len(details.text) > MAX_TWEET_LENGTH:
                raise PublishFailed(
                    f"Tweet must be {MAX_TWEET_LENGTH} characters or less"
                )

            try:
                await request_json(
                    self.http,
                    "GET",
                    X_ME_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except ProviderHTTPError as e:
                if e.is_auth_failure:
                    raise PublishNeedsReauth()
                raise

            # every media item must upload before the tweet is created
            media_ids = await self._upload_media(access_token, details)

            payload: dict = {"text": details.text}
            if media_ids:
                payload["media"] = {"media_ids": media_ids}
            if details.poll and not media_ids:
                payload["poll"] = {
                    "options": details.poll.options,
                    "duration_minutes": details.poll.duration_minutes,
                }
            if details.reply_settings and details.reply_settings != "everyone":
                payload["reply_settings"] = details.reply_settings

            response = await request_json(
                self.http,
                "POST",
                X_TWEETS_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )
            tweet_id = (response.get("data") or {}).get("id")
            if not tweet_id:
                raise PublishFailed("X did not return a tweet id")

            logger.info(f"Published tweet {tweet_id}.")
            return PostResult(
                success=True,
                post_id=str(tweet_id),
                release_url=f"https://twitter.com/i/web/status/{tweet_id}",
            )

        return await publish_with(self.identifier, publish, LOG_STEP)
