import logging

import httpx
from core.errors import (
    ProfileFetchFailed,
    ProviderHTTPError,
    PublishFailed,
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
    code_challenge_for,
    download_media,
    generate_code_verifier,
    generate_state,
    publish_with,
    refresh_with,
    request_json,
)

logger = logging.getLogger(__name__)

LOG_STEP = "INT-YOUTUBE"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
YOUTUBE_CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"
YOUTUBE_UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
SCOPES = [
    "https://www.googleapis.com/auth/youtube.upload",
    "https://www.googleapis.com/auth/youtube.readonly",
]

MAX_TITLE_LENGTH = 100
PEOPLE_AND_BLOGS_CATEGORY = "22"


class YouTubeAdapter:
    """YouTube channel uploads through Google OAuth (offline access, PKCE)."""

    identifier = "youtube"
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

    def generate_auth_url(self) -> AuthUrl:
        state = generate_state()
        code_verifier = generate_code_verifier()
        url = build_url(
            GOOGLE_AUTH_URL,
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": " ".join(SCOPES),
                "state": state,
                "access_type": "offline",
                "prompt": "consent",
                "include_granted_scopes": "true",
                "code_challenge": code_challenge_for(code_verifier),
                "code_challenge_method": "S256",
            },
        )
        return AuthUrl(url=url, state=state, code_verifier=code_verifier)

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails:
        async def exchange() -> AuthTokenDetails:
            data = {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": self.config.redirect_uri,
            }
            if code_verifier:
                data["code_verifier"] = code_verifier

            tokens = await request_json(
                self.http, "POST", GOOGLE_TOKEN_URL, data=data, error=TokenExchangeFailed
            )
            access_token = tokens["access_token"]

            channels = await request_json(
                self.http,
                "GET",
                YOUTUBE_CHANNELS_URL,
                params={"part": "snippet", "mine": "true"},
                headers={"Authorization": f"Bearer {access_token}"},
                error=ProfileFetchFailed,
            )
            items = channels.get("items") or []
            if not items:
                raise ProfileFetchFailed("No YouTube channel found for this account")

            channel = items[0]
            snippet = channel.get("snippet") or {}
            thumbnails = snippet.get("thumbnails") or {}
            picture = (thumbnails.get("high") or thumbnails.get("default") or {}).get("url", "")

            return AuthTokenDetails(
                id=channel["id"],
                name=snippet.get("title", ""),
                picture=picture,
                access_token=access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_in=int(tokens.get("expires_in") or 0),
                username=snippet.get("customUrl", ""),
            )

        return await authenticate_with(
            self.store, self.identifier, user_id, exchange, LOG_STEP
        )

    async def refresh_token(self, user_id: str, internal_id: str) -> RefreshedTokens:
        # Google keeps the refresh token stable; refresh_with retains the stored one
        async def exchange(refresh_token: str) -> dict:
            return await request_json(
                self.http,
                "POST",
                GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
            )

        return await refresh_with(
            self.store, self.identifier, user_id, internal_id, exchange, LOG_STEP
        )

    async def post(self, access_token: str, details: PostDetails) -> PostResult:
        async def publish() -> PostResult:
            videos = [item for item in details.media if item.type == "video"]
            if len(videos) != 1:
                raise PublishFailed("YouTube uploads require exactly one video")

            title = (details.title or details.text or "Untitled").strip()[:MAX_TITLE_LENGTH]
            content, content_type = await download_media(self.http, videos[0].url)
            if not content_type.startswith("video/"):
                content_type = "video/*"

            session = await self.http.post(
                YOUTUBE_UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "X-Upload-Content-Type": content_type,
                    "X-Upload-Content-Length": str(len(content)),
                },
                json={
                    "snippet": {
                        "title": title,
                        "description": details.text,
                        "tags": details.tags,
                        "categoryId": PEOPLE_AND_BLOGS_CATEGORY,
                    },
                    "status": {
                        "privacyStatus": details.privacy_status,
                        "selfDeclaredMadeForKids": False,
                    },
                },
            )
            if not session.is_success:
                raise ProviderHTTPError(session.status_code, session.text, YOUTUBE_UPLOAD_URL)

            upload_url = session.headers.get("location")
            if not upload_url:
                raise PublishFailed("YouTube did not return a resumable upload URL")

            video = await request_json(
                self.http,
                "PUT",
                upload_url,
                content=content,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": content_type,
                },
            )
            video_id = video.get("id")
            if not video_id:
                raise PublishFailed("YouTube upload finished without a video id")

            logger.info(f"Uploaded YouTube video {video_id}.")
            return PostResult(
                success=True,
                post_id=video_id,
                release_url=f"https://www.youtube.com/watch?v={video_id}",
            )

        return await publish_with(self.identifier, publish, LOG_STEP)
