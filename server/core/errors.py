class IntegrationError(Exception):
    """base exception for integration lifecycle errors"""

    code = "integration_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class AuthRequired(IntegrationError):
    """Unauthorized"""

    code = "auth_required"


class CsrfStateMismatch(IntegrationError):
    """OAuth state returned by the provider does not match the stored state"""

    code = "invalid_state"


class MissingCallbackParameters(IntegrationError):
    """OAuth callback is missing code, state or stored verifier"""

    code = "invalid_request"


class TokenExchangeFailed(IntegrationError):
    """authorization code could not be exchanged for tokens"""

    code = "token_exchange_failed"


class ProfileFetchFailed(IntegrationError):
    """provider profile or account discovery failed"""

    code = "profile_fetch_failed"


class TokenRefreshError(IntegrationError):
    """Failed to refresh token"""

    code = "token_refresh_failed"


class NoRefreshTokenOnRecord(TokenRefreshError):
    """No refresh token found"""

    code = "no_refresh_token"


class TokenRefreshRejected(TokenRefreshError):
    """Failed to refresh token"""

    code = "token_refresh_rejected"


class CredentialDecryptionFailed(IntegrationError):
    """Internal configuration error."""

    code = "credential_unreadable"


class UnsupportedProvider(IntegrationError):
    """Unsupported provider"""

    code = "unsupported_provider"

    def __init__(self, provider: str | None = None):
        self.provider = provider
        super().__init__(
            f"Unsupported provider: {provider}" if provider else "Unsupported provider"
        )


class PublishFailed(IntegrationError):
    """publishing to the provider failed"""

    code = "publish_failed"


class PublishNeedsReauth(PublishFailed):
    """Invalid or expired token. Please re-authenticate."""

    code = "needs_reauth"


class ProviderHTTPError(IntegrationError):
    """raised when a provider API answers with a non-2xx status"""

    code = "provider_http_error"

    def __init__(self, status_code: int, body: str = "", url: str = ""):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"HTTP error! status: {status_code}, message: {body[:500]}")

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)
