import logging

import httpx
from core.config import Settings
from core.errors import UnsupportedProvider
from core.logging_setup import log_step
from services.credential_store import CredentialStore

from integrations.base import ProviderAdapter, ProviderConfig
from integrations.instagram import InstagramAdapter
from integrations.linkedin import LinkedInAdapter
from integrations.tiktok import TikTokAdapter
from integrations.x import XAdapter
from integrations.youtube import YouTubeAdapter

logger = logging.getLogger(__name__)

LOG_STEP = "REGISTRY"

ALIASES = {"x": "twitter"}

# canonical identifier -> (settings prefix, adapter class)
PROVIDERS = {
    "twitter": ("X", XAdapter),
    "linkedin": ("LINKEDIN", LinkedInAdapter),
    "youtube": ("YOUTUBE", YouTubeAdapter),
    "instagram": ("INSTAGRAM", InstagramAdapter),
    "tiktok": ("TIKTOK", TikTokAdapter),
}


def canonical_provider(provider: str) -> str:
    key = (provider or "").strip().lower()
    return ALIASES.get(key, key)


class ProviderRegistry:
    """Maps provider identifiers to their adapter instances."""

    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.identifier] = adapter

    def is_supported(self, provider: str) -> bool:
        return canonical_provider(provider) in self._adapters

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(canonical_provider(provider))
        if adapter is None:
            raise UnsupportedProvider(provider)
        return adapter

    @property
    def identifiers(self) -> list[str]:
        return list(self._adapters)


def build_registry(
    settings: Settings,
    store: CredentialStore,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderRegistry:
    """
    Builds the registry from the *_CLIENT_ID / *_CLIENT_SECRET / *_REDIRECT_URI
    settings. A provider without a client id is left out.
    """
    registry = ProviderRegistry()
    with log_step(LOG_STEP):
        for identifier, (prefix, adapter_cls) in PROVIDERS.items():
            client_id = getattr(settings, f"{prefix}_CLIENT_ID")
            if not client_id:
                logger.info(f"{identifier} is not configured; skipping.")
                continue

            config = ProviderConfig(
                client_id=client_id,
                client_secret=getattr(settings, f"{prefix}_CLIENT_SECRET"),
                redirect_uri=settings.redirect_uri_for(
                    identifier, getattr(settings, f"{prefix}_REDIRECT_URI")
                ),
            )
            registry.register(adapter_cls(config, store, http_client))

        logger.info(f"Enabled providers: {', '.join(registry.identifiers) or 'none'}")
    return registry
