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
    download_media,
    generate_state,
    publish_with,
    refresh_with,
    request_json,
)

logger = logging.getLogger(__name__)

LOG_STEP = "INT-LINKEDIN"

LINKEDIN_AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
LINKEDIN_USERINFO_URL = "https://api.linkedin.com/v2/userinfo"
LINKEDIN_REGISTER_UPLOAD_URL = "https://api.linkedin.com/v2/assets?action=registerUpload"
LINKEDIN_UGC_POSTS_URL = "https://api.linkedin.com/v2/ugcPosts"
SCOPES = ["openid", "profile", "email", "w_member_social"]

UPLOAD_MECHANISM = "com.linkedin.digitalmedia.uploading.MediaUploadHttpRequest"
RECIPES = {
    "image": "urn:li:digitalmediaRecipe:feedshare-image",
    "video": "urn:li:digitalmediaRecipe:feedshare-video",
}


def person_urn(member_id: str) -> str:
    if member_id.startswith("urn:li:"):
        return member_id
    return f"urn:li:person:{member_id}"


class LinkedInAdapter:
    """LinkedIn member posting through the UGC Posts API."""

    identifier = "linkedin"
    uses_pkce = False

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

    def _api_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "X-Restli-Protocol-Version": "2.0.0",
        }

    def generate_auth_url(self) -> AuthUrl:
        state = generate_state()
        url = build_url(
            LINKEDIN_AUTH_URL,
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": " ".join(SCOPES),
                "state": state,
            },
        )
        return AuthUrl(url=url, state=state)

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails:
        async def exchange() -> AuthTokenDetails:
            tokens = await request_json(
                self.http,
                "POST",
                LINKEDIN_TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
                error=TokenExchangeFailed,
            )
            access_token = tokens.get("access_token")
            if not access_token:
                raise TokenExchangeFailed(f"Failed to get access token: {tokens}")

            profile = await request_json(
                self.http,
                "GET",
                LINKEDIN_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                error=ProfileFetchFailed,
            )
            member_id = profile.get("sub")
            if not member_id:
                raise ProfileFetchFailed("LinkedIn profile 'sub' ID not found in API response.")

            name = profile.get("name") or " ".join(
                part for part in (profile.get("given_name"), profile.get("family_name")) if part
            )
            return AuthTokenDetails(
                id=member_id,
                name=name or "LinkedIn User",
                picture=profile.get("picture", ""),
                access_token=access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_in=int(tokens.get("expires_in") or 0),
                username=profile.get("email", ""),
            )

        return await authenticate_with(
            self.store, self.identifier, user_id, exchange, LOG_STEP
        )

    async def refresh_token(self, user_id: str, internal_id: str) -> RefreshedTokens:
        async def exchange(refresh_token: str) -> dict:
            response = await request_json(
                self.http,
                "POST",
                LINKEDIN_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
            )
            if not response.get("access_token"):
                raise ValueError(f"Failed to refresh token: {response}")
            return response

        return await refresh_with(
            self.store, self.identifier, user_id, internal_id, exchange, LOG_STEP
        )

    async def _resolve_author(self, access_token: str, details: PostDetails) -> str:
        if details.account_id:
            return person_urn(details.account_id)
        try:
            profile = await request_json(
                self.http,
                "GET",
                LINKEDIN_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except ProviderHTTPError as e:
            if e.is_auth_failure:
                raise PublishNeedsReauth()
            raise
        if not profile.get("sub"):
            raise PublishFailed("Could not resolve LinkedIn member id")
        return person_urn(profile["sub"])

    async def _upload_asset(self, access_token: str, author: str, item: MediaItem) -> str:
        registration = await request_json(
            self.http,
            "POST",
            LINKEDIN_REGISTER_UPLOAD_URL,
            headers=self._api_headers(access_token),
            json={
                "registerUploadRequest": {
                    "recipes": [RECIPES[item.type]],
                    "owner": author,
                    "serviceRelationships": [
                        {
                            "relationshipType": "OWNER",
                            "identifier": "urn:li:userGeneratedContent",
                        }
                    ],
                }
            },
        )
        value = registration.get("value") or {}
        asset = value.get("asset")
        upload = (value.get("uploadMechanism") or {}).get(UPLOAD_MECHANISM) or {}
        upload_url = upload.get("uploadUrl")
        if not asset or not upload_url:
            raise PublishFailed("LinkedIn did not return an upload URL for the media")

        content, content_type = await download_media(self.http, item.url)
        response = await self.http.put(
            upload_url,
            content=content,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": content_type,
                **(upload.get("headers") or {}),
            },
        )
        if not response.is_success:
            raise ProviderHTTPError(response.status_code, response.text, upload_url)
        return asset

    async def post(self, access_token: str, details: PostDetails) -> PostResult:
        async def publish() -> PostResult:
            author = await self._resolve_author(access_token, details)

            kinds = {item.type for item in details.media}
            if len(kinds) > 1:
                raise PublishFailed("LinkedIn posts cannot mix images and videos")

            media_entries = []
            for item in details.media:
                asset = await self._upload_asset(access_token, author, item)
                media_entries.append(
                    {
                        "status": "READY",
                        "description": {"text": item.alt_text or ""},
                        "media": asset,
                        "title": {"text": ""},
                    }
                )

            share_content: dict = {
                "shareCommentary": {"text": details.text},
                "shareMediaCategory": "NONE",
            }
            if media_entries:
                share_content["shareMediaCategory"] = kinds.pop().upper()
                share_content["media"] = media_entries

            body = {
                "author": author,
                "lifecycleState": "PUBLISHED",
                "specificContent": {"com.linkedin.ugc.ShareContent": share_content},
                "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
            }

            response = await self.http.post(
                LINKEDIN_UGC_POSTS_URL,
                headers=self._api_headers(access_token),
                json=body,
            )
            if not response.is_success:
                raise ProviderHTTPError(
                    response.status_code, response.text, LINKEDIN_UGC_POSTS_URL
                )

            post_id = response.headers.get("x-restli-id")
            if not post_id and response.content:
                post_id = response.json().get("id")
            if not post_id:
                raise PublishFailed("LinkedIn did not return a post id")

            logger.info(f"Published LinkedIn post {post_id}.")
            return PostResult(
                success=True,
                post_id=post_id,
                release_url=f"https://www.linkedin.com/feed/update/{post_id}",
            )

        return await publish_with(self.identifier, publish, LOG_STEP)
