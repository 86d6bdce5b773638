import logging
import secrets
import urllib.parse
from datetime import datetime, timedelta
from typing import Any

from core.authentication import SessionUser
from core.config import settings
from core.errors import (
    CsrfStateMismatch,
    IntegrationError,
    MissingCallbackParameters,
    TokenRefreshError,
    UnsupportedProvider,
)
from core.logging_setup import log_context, log_step
from integrations.base import PostDetails, PostResult
from integrations.registry import ProviderRegistry, canonical_provider
from pydantic import BaseModel

from services.credential_store import (
    CredentialStore,
    IntegrationRecord,
    utcnow,
)
from services.state_store import TransientStateStore, state_key, verifier_key

logger = logging.getLogger(__name__)

LOG_STEP = "ORCHESTRATOR"

UNAUTHORIZED = "Unauthorized"
NOT_FOUND = "Integration not found"


class ActionResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    redirect_to: str | None = None


class IntegrationSummary(BaseModel):
    """What the UI is allowed to see of an integration; never the tokens."""

    id: str
    name: str | None = None
    picture: str | None = None
    provider_identifier: str
    profile: str | None = None
    internal_id: str
    refresh_needed: bool = False
    disabled: bool = False
    token_expiration: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: IntegrationRecord) -> "IntegrationSummary":
        return cls(
            id=record.id,
            name=record.name,
            picture=record.picture,
            provider_identifier=record.provider_identifier,
            profile=record.profile,
            internal_id=record.internal_id,
            refresh_needed=record.refresh_needed,
            disabled=record.disabled,
            token_expiration=record.token_expiration,
            created_at=record.created_at,
        )


class RefreshReport(BaseModel):
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0


class IntegrationOrchestrator:
    """
    Coordinates authorize -> callback -> store -> refresh -> post.

    Every operation is a single attempt and answers with a result object;
    retries belong to the caller.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CredentialStore,
        state_ttl: int | None = None,
        integrations_page: str | None = None,
        login_path: str | None = None,
    ):
        self.registry = registry
        self.store = store
        self.state_ttl = state_ttl or settings.OAUTH_STATE_TTL_SECONDS
        self.integrations_page = integrations_page or settings.INTEGRATIONS_PAGE_PATH
        self.login_path = login_path or settings.LOGIN_PATH

    def _unauthorized(self) -> ActionResult:
        return ActionResult(success=False, error=UNAUTHORIZED, redirect_to=self.login_path)

    def _page_url(self, **params: str) -> str:
        return f"{self.integrations_page}?{urllib.parse.urlencode(params)}"

    async def _owned_record(
        self, integration_id: str, user_id: str | None
    ) -> IntegrationRecord | None:
        record = await self.store.get(integration_id)
        if record is None or not record.is_active:
            return None
        if user_id is not None and record.user_id != user_id:
            logger.warning(
                f"User {user_id} tried to access integration {integration_id} they do not own."
            )
            return None
        return record

    # --- OAuth ---

    def authorize(
        self,
        session: SessionUser | None,
        provider: str,
        state_store: TransientStateStore,
    ) -> ActionResult:
        with log_step(LOG_STEP), log_context(provider=provider):
            if session is None:
                logger.warning("Authorize requested without a session.")
                return self._unauthorized()

            try:
                adapter = self.registry.get(provider)
                auth = adapter.generate_auth_url()
            except UnsupportedProvider as e:
                logger.warning(str(e))
                return ActionResult(success=False, error=str(e))
            except Exception as e:
                logger.error(f"Failed to build authorization URL: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to start authorization")

            state_store.put(state_key(adapter.identifier), auth.state, self.state_ttl)
            if auth.code_verifier:
                state_store.put(
                    verifier_key(adapter.identifier), auth.code_verifier, self.state_ttl
                )

            logger.info(f"Authorization started for user {session.id}.")
            return ActionResult(success=True, data={"url": auth.url})

    async def handle_callback(
        self,
        session: SessionUser | None,
        provider: str,
        code: str | None,
        state: str | None,
        error: str | None,
        state_store: TransientStateStore,
    ) -> str:
        """
        Completes an OAuth round-trip and returns the URL to redirect to.

        Both transient keys are taken first, so they are gone whatever the
        outcome. A state mismatch ends the flow before any token exchange.
        """
        identifier = canonical_provider(provider)
        with log_step(LOG_STEP), log_context(provider=identifier):
            stored_state = state_store.take_once(state_key(identifier))
            stored_verifier = state_store.take_once(verifier_key(identifier))

            if session is None:
                logger.warning("Callback received without a session.")
                return self.login_path

            if error:
                logger.info(f"Provider reported an authorization error: {error}")
                return self._page_url(error=f"{identifier}_auth_denied")

            try:
                adapter = self.registry.get(identifier)

                if not code or not state or not stored_state:
                    raise MissingCallbackParameters()
                if adapter.uses_pkce and not stored_verifier:
                    raise MissingCallbackParameters()
                if not secrets.compare_digest(state.encode(), stored_state.encode()):
                    raise CsrfStateMismatch()

                details = await adapter.authenticate(code, session.id, stored_verifier)
            except IntegrationError as e:
                logger.warning(f"Callback rejected ({e.code}): {e}")
                return self._page_url(error=e.code)
            except Exception as e:
                logger.error(f"Unexpected error during callback: {e}", exc_info=True)
                return self._page_url(error="server_error")

            if not details.ok:
                return self._page_url(error=details.error or "Authentication failed")

            logger.info(f"User {session.id} connected account {details.id}.")
            return self._page_url(success=identifier)

    # --- Tokens ---

    async def refresh_token(
        self,
        provider: str,
        integration_id: str,
        session: SessionUser | None = None,
    ) -> ActionResult:
        with log_step(LOG_STEP), log_context(provider=provider):
            if not self.registry.is_supported(provider):
                return ActionResult(success=False, error=str(UnsupportedProvider(provider)))

            adapter = self.registry.get(provider)
            try:
                record = await self._owned_record(
                    integration_id, session.id if session else None
                )
                if record is None or record.provider_identifier != adapter.identifier:
                    return ActionResult(success=False, error=NOT_FOUND)

                tokens = await adapter.refresh_token(record.user_id, record.internal_id)
            except TokenRefreshError as e:
                return ActionResult(
                    success=False, error=str(e), redirect_to=self.integrations_page
                )
            except Exception as e:
                logger.error(f"Unexpected error refreshing {integration_id}: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to refresh token")

            return ActionResult(success=True, data=tokens)

    async def refresh_expiring(self, within: timedelta) -> RefreshReport:
        """
        One pass over integrations whose token expires inside `within`.
        Rows already flagged refresh_needed are not retried.
        """
        report = RefreshReport()
        with log_step(LOG_STEP):
            records = await self.store.list_expiring(utcnow() + within)
            for record in records:
                if not self.registry.is_supported(record.provider_identifier):
                    logger.info(
                        f"Skipping {record.id}: {record.provider_identifier} is not supported."
                    )
                    report.skipped += 1
                    continue

                result = await self.refresh_token(record.provider_identifier, record.id)
                if result.success:
                    report.refreshed += 1
                else:
                    report.failed += 1

            if records:
                logger.info(
                    f"Refresh pass: {report.refreshed} refreshed, "
                    f"{report.failed} failed, {report.skipped} skipped."
                )
        return report

    # --- Publishing ---

    async def post(
        self, provider: str, access_token: str, details: PostDetails
    ) -> PostResult:
        with log_step(LOG_STEP), log_context(provider=provider):
            try:
                adapter = self.registry.get(provider)
                return await adapter.post(access_token, details)
            except UnsupportedProvider as e:
                return PostResult(success=False, error=str(e))
            except Exception as e:
                logger.error(f"Unexpected error posting: {e}", exc_info=True)
                return PostResult(success=False, error=f"Failed to post to {provider}")

    async def publish(
        self,
        session: SessionUser | None,
        integration_id: str,
        details: PostDetails,
    ) -> ActionResult:
        """
        Publishes through one of the session user's integrations. A token that
        is expired or flagged refresh_needed is refreshed first; an auth failure
        from the provider flags the integration and points the user back at the
        integrations page.
        """
        if session is None:
            return self._unauthorized()

        with log_step(LOG_STEP), log_context(user_id=session.id):
            try:
                record = await self._owned_record(integration_id, session.id)
                if record is None:
                    return ActionResult(success=False, error=NOT_FOUND)
                if record.disabled:
                    return ActionResult(success=False, error="Integration is disabled")

                access_token = record.token
                expired = record.token_expiration and record.token_expiration <= utcnow()
                if record.refresh_needed or expired:
                    refreshed = await self.refresh_token(
                        record.provider_identifier, record.id, session
                    )
                    if not refreshed.success:
                        return ActionResult(
                            success=False,
                            error=refreshed.error,
                            redirect_to=self.integrations_page,
                        )
                    access_token = refreshed.data.access_token

                details = details.model_copy(
                    update={"account_id": details.account_id or record.internal_id}
                )
                result = await self.post(record.provider_identifier, access_token, details)

                if result.needs_reauth:
                    await self.store.update(record.id, refresh_needed=True)
                    return ActionResult(
                        success=False,
                        data=result,
                        error=result.error,
                        redirect_to=self.integrations_page,
                    )
            except Exception as e:
                logger.error(f"Error publishing through {integration_id}: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to publish")

            return ActionResult(success=result.success, data=result, error=result.error)

    # --- Listing ---

    async def check_integration(
        self, session: SessionUser | None, provider: str
    ) -> ActionResult:
        if session is None:
            return self._unauthorized()

        with log_step(LOG_STEP), log_context(provider=provider, user_id=session.id):
            try:
                record = await self.store.find(session.id, canonical_provider(provider))
            except Exception as e:
                logger.error(f"Failed to check integration: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to check integration")

            return ActionResult(
                success=True,
                data={
                    "is_connected": record is not None,
                    "integration": IntegrationSummary.from_record(record) if record else None,
                },
            )

    async def get_user_integrations(self, user_id: str) -> ActionResult:
        with log_step(LOG_STEP), log_context(user_id=user_id):
            try:
                records = await self.store.list_active(user_id)
            except Exception as e:
                logger.error(f"Error fetching user integrations: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to fetch integrations")
            return ActionResult(
                success=True,
                data=[IntegrationSummary.from_record(record) for record in records],
            )

    async def delete_integration(
        self, integration_id: str, user_id: str | None = None
    ) -> ActionResult:
        with log_step(LOG_STEP), log_context(user_id=user_id):
            try:
                record = await self._owned_record(integration_id, user_id)
                if record is None:
                    return ActionResult(success=False, error=NOT_FOUND)
                await self.store.soft_delete(integration_id)
            except Exception as e:
                logger.error(f"Error deleting integration: {e}", exc_info=True)
                return ActionResult(success=False, error="Failed to delete integration")

            logger.info(f"Soft-deleted integration {integration_id}.")
            return ActionResult(success=True)
