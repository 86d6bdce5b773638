import pytest

from core.config import Settings
from core.errors import UnsupportedProvider
from integrations.instagram import InstagramAdapter
from integrations.registry import ProviderRegistry, build_registry, canonical_provider
from integrations.x import XAdapter

from lib.fakes import FakeAdapter


def _settings(**overrides) -> Settings:
    values = {
        "JWT_SECRET_KEY": "secret",
        "ENCRYPTION_KEY": "key",
        "APP_BASE_URL": "https://app.test/",
        "X_CLIENT_ID": "",
        "LINKEDIN_CLIENT_ID": "",
        "YOUTUBE_CLIENT_ID": "",
        "INSTAGRAM_CLIENT_ID": "",
        "TIKTOK_CLIENT_ID": "",
    }
    values.update(overrides)
    return Settings(**values)


# Purpose: verify only providers with a client id end up in the registry.
def test_build_registry_skips_unconfigured_providers():
    registry = build_registry(
        _settings(X_CLIENT_ID="x-id", X_CLIENT_SECRET="x-secret", INSTAGRAM_CLIENT_ID="ig-id"),
        store=None,
    )

    assert sorted(registry.identifiers) == ["instagram", "twitter"]
    assert isinstance(registry.get("twitter"), XAdapter)
    assert isinstance(registry.get("instagram"), InstagramAdapter)
    assert not registry.is_supported("linkedin")


# Purpose: verify adapters get their config from settings, with a derived default redirect URI.
def test_build_registry_passes_explicit_config():
    registry = build_registry(
        _settings(
            X_CLIENT_ID="x-id",
            X_CLIENT_SECRET="x-secret",
            TIKTOK_CLIENT_ID="tt-key",
            TIKTOK_REDIRECT_URI="https://custom.test/cb",
        ),
        store=None,
    )

    x = registry.get("twitter")
    assert x.config.client_id == "x-id"
    assert x.config.client_secret == "x-secret"
    assert x.config.redirect_uri == "https://app.test/api/integrations/twitter/callback"
    assert registry.get("tiktok").config.redirect_uri == "https://custom.test/cb"


# Purpose: verify the x alias and casing resolve to the twitter adapter.
def test_alias_resolves_to_twitter():
    registry = ProviderRegistry([FakeAdapter("twitter")])

    assert canonical_provider("X") == "twitter"
    assert registry.is_supported("x")
    assert registry.get("x") is registry.get("twitter")


# Purpose: verify unknown providers raise a reportable error instead of crashing.
def test_unknown_provider_raises():
    registry = ProviderRegistry([FakeAdapter("twitter")])

    with pytest.raises(UnsupportedProvider) as excinfo:
        registry.get("mastodon")

    assert str(excinfo.value) == "Unsupported provider: mastodon"
    assert excinfo.value.provider == "mastodon"
    assert not registry.is_supported("mastodon")
