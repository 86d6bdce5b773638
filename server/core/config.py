import sys

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Defines the application's configuration settings.

    Pydantic will automatically read from the environment or a .env file.
    Provider redirect URIs default to the callback route under APP_BASE_URL.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    APP_BASE_URL: str = "http://localhost:8000"

    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/publisher"

    JWT_SECRET_KEY: str

    ENCRYPTION_KEY: str

    LOGGING_LEVEL: str = "INFO"

    HTTP_TIMEOUT_SECONDS: float = 30.0

    OAUTH_STATE_TTL_SECONDS: int = 600

    INTEGRATIONS_PAGE_PATH: str = "/integrations"

    LOGIN_PATH: str = "/login"

    TOKEN_REFRESH_INTERVAL_SECONDS: int = 0

    TOKEN_REFRESH_WINDOW_SECONDS: int = 900

    X_CLIENT_ID: str = ""
    X_CLIENT_SECRET: str = ""
    X_REDIRECT_URI: str = ""

    LINKEDIN_CLIENT_ID: str = ""
    LINKEDIN_CLIENT_SECRET: str = ""
    LINKEDIN_REDIRECT_URI: str = ""

    YOUTUBE_CLIENT_ID: str = ""
    YOUTUBE_CLIENT_SECRET: str = ""
    YOUTUBE_REDIRECT_URI: str = ""

    INSTAGRAM_CLIENT_ID: str = ""
    INSTAGRAM_CLIENT_SECRET: str = ""
    INSTAGRAM_REDIRECT_URI: str = ""

    TIKTOK_CLIENT_ID: str = ""
    TIKTOK_CLIENT_SECRET: str = ""
    TIKTOK_REDIRECT_URI: str = ""

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def redirect_uri_for(self, provider: str, configured: str = "") -> str:
        if configured:
            return configured
        return f"{self.APP_BASE_URL.rstrip('/')}/api/integrations/{provider}/callback"


try:
    settings = Settings()

except Exception as e:
    print(f"FATAL: Failed to load application settings: {e}", file=sys.stderr)
    sys.exit("Failed to load configuration. Exiting.")
