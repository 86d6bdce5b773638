import logging
from typing import Optional

from core.authentication import SessionUser, get_session
from core.config import settings
from core.errors import UnsupportedProvider
from core.logging_setup import log_step
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from integrations.base import PostDetails
from pydantic import BaseModel
from services.integration_service import (
    NOT_FOUND,
    UNAUTHORIZED,
    ActionResult,
    IntegrationOrchestrator,
)
from services.state_store import CookieStateStore

logger = logging.getLogger(__name__)


class RefreshRequest(BaseModel):
    integration_id: str


def _status_for(result: ActionResult) -> int:
    if result.success:
        return 200
    if result.error == UNAUTHORIZED:
        return 401
    if result.error == NOT_FOUND:
        return 404
    if result.error and result.error.startswith(str(UnsupportedProvider())):
        return 400
    return 200


def _json(result: ActionResult) -> JSONResponse:
    return JSONResponse(
        status_code=_status_for(result), content=result.model_dump(mode="json")
    )


def _unauthorized() -> JSONResponse:
    return _json(
        ActionResult(success=False, error=UNAUTHORIZED, redirect_to=settings.LOGIN_PATH)
    )


def create_integrations_router(orchestrator: IntegrationOrchestrator) -> APIRouter:
    """
    Creates the REST API router for connecting, listing and publishing
    through social media integrations.
    """
    router = APIRouter(
        prefix="/api/integrations",
    )
    LOG_STEP = "API-INTEGRATIONS"

    def _state_store(request: Request) -> CookieStateStore:
        return CookieStateStore(request=request, secure=settings.is_production)

    @router.get("/")
    async def list_integrations(session: SessionUser | None = Depends(get_session)):
        """
        Returns the active integrations of the signed-in user, oldest first.
        """
        with log_step(LOG_STEP):
            if session is None:
                return _unauthorized()
            return _json(await orchestrator.get_user_integrations(session.id))

    @router.get("/{provider}/authorize")
    async def authorize(
        provider: str,
        request: Request,
        session: SessionUser | None = Depends(get_session),
    ):
        """
        Redirects to the provider's consent screen and sets the state cookie(s).
        """
        with log_step(LOG_STEP):
            state_store = _state_store(request)
            result = orchestrator.authorize(session, provider, state_store)
            if not result.success:
                return _json(result)

            response = RedirectResponse(url=result.data["url"])
            return state_store.apply(response)

    @router.get("/{provider}/callback")
    async def callback(
        provider: str,
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        session: SessionUser | None = Depends(get_session),
    ):
        """
        Handles the OAuth redirect from the provider. The state cookies are
        cleared on every outcome.
        """
        with log_step(LOG_STEP):
            state_store = _state_store(request)
            url = await orchestrator.handle_callback(
                session, provider, code, state, error, state_store
            )
            return state_store.apply(RedirectResponse(url=url))

    @router.get("/{provider}/status")
    async def status(provider: str, session: SessionUser | None = Depends(get_session)):
        with log_step(LOG_STEP):
            return _json(await orchestrator.check_integration(session, provider))

    @router.post("/{provider}/refresh")
    async def refresh(
        provider: str,
        body: RefreshRequest,
        session: SessionUser | None = Depends(get_session),
    ):
        """
        Refreshes the tokens of one integration. Tokens are never returned.
        """
        with log_step(LOG_STEP):
            if session is None:
                return _unauthorized()

            result = await orchestrator.refresh_token(provider, body.integration_id, session)
            return _json(result.model_copy(update={"data": None}))

    @router.post("/{integration_id}/post")
    async def publish(
        integration_id: str,
        details: PostDetails,
        session: SessionUser | None = Depends(get_session),
    ):
        with log_step(LOG_STEP):
            return _json(await orchestrator.publish(session, integration_id, details))

    @router.delete("/{integration_id}")
    async def delete(
        integration_id: str, session: SessionUser | None = Depends(get_session)
    ):
        with log_step(LOG_STEP):
            if session is None:
                return _unauthorized()
            return _json(await orchestrator.delete_integration(integration_id, session.id))

    return router
