import base64
import hashlib
import logging
import secrets
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol

import httpx
from core.errors import (
    IntegrationError,
    NoRefreshTokenOnRecord,
    ProviderHTTPError,
    PublishNeedsReauth,
    TokenRefreshRejected,
)
from core.logging_setup import log_context, log_step
from pydantic import BaseModel, ConfigDict, Field
from services.credential_store import CredentialStore, IntegrationUpsert

logger = logging.getLogger(__name__)


class ProviderConfig(BaseModel):
    """Client credentials for one provider, passed in by the composition root."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    redirect_uri: str


class AuthUrl(BaseModel):
    url: str
    state: str
    code_verifier: str | None = None


class AuthTokenDetails(BaseModel):
    id: str = ""
    name: str = ""
    picture: str = ""
    access_token: str = ""
    refresh_token: str | None = None
    expires_in: int = 0
    username: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, message: str) -> "AuthTokenDetails":
        return cls(error=message or "Authentication failed")


class RefreshedTokens(BaseModel):
    access_token: str
    refresh_token: str | None = None


class MediaItem(BaseModel):
    url: str
    type: Literal["image", "video"] = "image"
    alt_text: str | None = None


class Poll(BaseModel):
    options: list[str] = Field(min_length=2, max_length=4)
    duration_minutes: int = Field(default=1440, ge=5, le=10080)


class PostDetails(BaseModel):
    text: str = ""
    title: str | None = None
    media: list[MediaItem] = Field(default_factory=list)
    account_id: str | None = None
    reply_settings: Literal["everyone", "mentionedUsers", "following"] | None = None
    poll: Poll | None = None
    privacy_status: Literal["public", "unlisted", "private"] = "public"
    tags: list[str] = Field(default_factory=list)
    privacy_level: str | None = None


class PostResult(BaseModel):
    success: bool
    post_id: str | None = None
    release_url: str | None = None
    error: str | None = None
    needs_reauth: bool = False


class ProviderAdapter(Protocol):
    """
    Uniform OAuth + publish contract implemented once per platform.

    authenticate() and post() never raise; refresh_token() raises only
    NoRefreshTokenOnRecord or TokenRefreshRejected.
    """

    identifier: str
    uses_pkce: bool

    def generate_auth_url(self) -> AuthUrl: ...

    async def authenticate(
        self, code: str, user_id: str, code_verifier: str | None = None
    ) -> AuthTokenDetails: ...

    async def refresh_token(self, user_id: str, internal_id: str) -> RefreshedTokens: ...

    async def post(self, access_token: str, details: PostDetails) -> PostResult: ...


# --- OAuth primitives ---


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    # 64 random bytes -> 86 url-safe chars, inside RFC 7636's 43..128 range
    return secrets.token_urlsafe(64)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def build_url(base: str, params: dict[str, Any]) -> str:
    query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
    return f"{base}?{query}"


def expires_at(expires_in: int | float | None, now: datetime | None = None) -> datetime | None:
    if not expires_in:
        return None
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=int(expires_in))


def basic_auth_header(client_id: str, client_secret: str) -> str:
    creds = f"{client_id}:{client_secret}"
    return f"Basic {base64.b64encode(creds.encode()).decode()}"


# --- HTTP ---


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    error: type[IntegrationError] | None = None,
    **kwargs: Any,
) -> dict:
    """
    Performs a provider API call and returns the decoded JSON body.
    Non-2xx answers raise ProviderHTTPError, or `error` when given.
    """
    response = await client.request(method, url, **kwargs)
    if not response.is_success:
        if error is not None:
            raise error(
                f"{error.__doc__}: HTTP {response.status_code} {response.text[:300]}"
            )
        raise ProviderHTTPError(response.status_code, response.text, url)
    if not response.content:
        return {}
    return response.json()


async def download_media(client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
    response = await client.get(url, follow_redirects=True)
    if not response.is_success:
        raise ProviderHTTPError(response.status_code, response.text, url)
    content_type = response.headers.get("content-type", "application/octet-stream")
    return response.content, content_type.split(";")[0].strip()


# --- Lifecycle bookkeeping shared by all adapters ---


async def authenticate_with(
    store: CredentialStore,
    provider: str,
    user_id: str,
    exchange: Callable[[], Awaitable[AuthTokenDetails]],
    log_step_name: str,
) -> AuthTokenDetails:
    """
    Runs a provider's code exchange + profile fetch and upserts the result.
    Any failure becomes AuthTokenDetails.error and nothing is stored.
    """
    with log_step(log_step_name), log_context(provider=provider, user_id=user_id):
        try:
            details = await exchange()
        except Exception as e:
            logger.error(f"{provider} authentication error: {e}")
            return AuthTokenDetails.failure(str(e))

        if not details.access_token or not details.id:
            logger.error(f"{provider} authentication returned no token or account id.")
            return AuthTokenDetails.failure("Authentication failed")

        try:
            await store.upsert(
                IntegrationUpsert(
                    user_id=user_id,
                    provider_identifier=provider,
                    internal_id=details.id,
                    name=details.name or None,
                    picture=details.picture or None,
                    profile=details.username or "",
                    token=details.access_token,
                    refresh_token=details.refresh_token,
                    token_expiration=expires_at(details.expires_in),
                )
            )
        except Exception as e:
            logger.error(f"Failed to store {provider} integration: {e}", exc_info=True)
            return AuthTokenDetails.failure("Failed to store integration")

        logger.info(f"Connected {provider} account {details.id}.")
        return details


async def refresh_with(
    store: CredentialStore,
    provider: str,
    user_id: str,
    internal_id: str,
    exchange: Callable[[str], Awaitable[dict]],
    log_step_name: str,
) -> RefreshedTokens:
    """
    Exchanges the stored refresh token via `exchange` and writes the result.

    A rejected refresh flags the row with refresh_needed before raising and
    leaves token/expiry untouched. If another writer stored new tokens while
    the provider call was in flight, their tokens win and are returned.
    """
    with log_step(log_step_name), log_context(provider=provider, user_id=user_id):
        record = await store.find(user_id, provider, internal_id)
        if record is None:
            logger.warning(f"No {provider} integration {internal_id} to refresh.")
            raise NoRefreshTokenOnRecord()

        if not record.refresh_token:
            logger.warning(f"{provider} integration {record.id} has no refresh token.")
            await store.update(record.id, refresh_needed=True)
            raise NoRefreshTokenOnRecord()

        try:
            payload = await exchange(record.refresh_token)
            access_token = payload["access_token"]
        except Exception as e:
            logger.error(f"{provider} token refresh rejected for {record.id}: {e}")
            await store.update(record.id, refresh_needed=True)
            raise TokenRefreshRejected() from e

        refresh_token = payload.get("refresh_token") or record.refresh_token
        applied = await store.update_tokens(
            record.id,
            record.token_version,
            access_token,
            refresh_token,
            expires_at(payload.get("expires_in")),
        )
        if not applied:
            current = await store.get(record.id)
            if current is not None:
                logger.info(f"Kept concurrently refreshed tokens for {record.id}.")
                return RefreshedTokens(
                    access_token=current.token, refresh_token=current.refresh_token
                )

        logger.info(f"Refreshed {provider} token for integration {record.id}.")
        return RefreshedTokens(access_token=access_token, refresh_token=refresh_token)


async def publish_with(
    provider: str,
    operation: Callable[[], Awaitable[PostResult]],
    log_step_name: str,
) -> PostResult:
    """Runs a publish operation, folding every failure into a PostResult."""
    with log_step(log_step_name), log_context(provider=provider):
        try:
            return await operation()
        except PublishNeedsReauth as e:
            logger.warning(f"{provider} publish needs re-authentication: {e}")
            return PostResult(success=False, error=str(e), needs_reauth=True)
        except ProviderHTTPError as e:
            if e.is_auth_failure:
                logger.warning(f"{provider} rejected the access token ({e.status_code}).")
                return PostResult(
                    success=False,
                    error="Token expired or invalid. Please re-authenticate.",
                    needs_reauth=True,
                )
            logger.error(f"Error posting to {provider}: {e}")
            return PostResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Error posting to {provider}: {e}", exc_info=True)
            return PostResult(success=False, error=str(e) or f"Failed to post to {provider}")
