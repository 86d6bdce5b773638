import logging

import httpx
from core.config import settings
from core.logging_setup import log_step

logger = logging.getLogger(__name__)

LOG_STEP = "HTTP-CLIENT"

USER_AGENT = "social-publisher-integrations/0.1"

_provider_client: httpx.AsyncClient | None = None


def build_provider_client(timeout_seconds: float | None = None) -> httpx.AsyncClient:
    """
    Client used for every provider API call. Redirects are not followed:
    upload session URLs come back in Location headers and are read, not chased.
    """
    timeout = timeout_seconds or settings.HTTP_TIMEOUT_SECONDS
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        headers={"User-Agent": USER_AGENT},
        follow_redirects=False,
    )


def get_http_client() -> httpx.AsyncClient:
    global _provider_client
    if _provider_client is None or _provider_client.is_closed:
        _provider_client = build_provider_client()
    return _provider_client


async def init_http_client():
    client = get_http_client()
    with log_step(LOG_STEP):
        logger.info(f"Provider HTTP client ready (timeout {client.timeout.read}s).")


async def close_http_client():
    global _provider_client
    if _provider_client is not None:
        await _provider_client.aclose()
        _provider_client = None
        with log_step(LOG_STEP):
            logger.info("Provider HTTP client closed.")
