"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from urllib.parse import urlparse


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Application
    APP_ENV: str = "development"
    API_V1_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    # Public base URL the CRM calls back into (events, placements)
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Rate limiting
    RATE_LIMIT_DEFAULT: str = "120/minute"

    # Bitrix24 Marketplace app
    BITRIX24_CLIENT_ID: str = ""
    BITRIX24_CLIENT_SECRET: str = ""
    BITRIX24_OAUTH_URL: str = "https://oauth.bitrix.info/oauth/token/"
    BITRIX24_APP_URL: str = "http://localhost:3000/bitrix24-app"

    # Open Channel connector
    BITRIX24_CONNECTOR_ID: str = "thoth_whatsapp"
    BITRIX24_CONNECTOR_NAME: str = "Thoth WhatsApp"
    BITRIX24_CONNECTOR_ID_PATTERN: str = r"^thoth[_\-]"

    # Lifecycle tuning
    BITRIX24_TOKEN_REFRESH_BUFFER_MINUTES: int = 10
    BITRIX24_HTTP_TIMEOUT_SECONDS: float = 15.0
    BITRIX24_VERIFY_MAX_ATTEMPTS: int = 2
    BITRIX24_VERIFY_RETRY_DELAY_SECONDS: float = 1.5
    BITRIX24_DUPLICATE_LINE_SCAN_MAX: int = 10

    # Substrings identifying event handlers that belong to this platform.
    # Empty means "the host of PUBLIC_BASE_URL".
    BITRIX24_HANDLER_MARKERS: List[str] = []

    @property
    def BITRIX24_EVENTS_URL(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}{self.API_V1_PREFIX}/bitrix24/events"

    @property
    def BITRIX24_SETTINGS_URL(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}{self.API_V1_PREFIX}/bitrix24/placement"

    @property
    def BITRIX24_OWNED_MARKERS(self) -> List[str]:
        if self.BITRIX24_HANDLER_MARKERS:
            return [m.lower() for m in self.BITRIX24_HANDLER_MARKERS]
        host = urlparse(self.PUBLIC_BASE_URL).netloc
        return [host.lower()] if host else []

    # CORS
    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        if self.APP_ENV == "development":
            return ["*"]  # Allow all origins in development
        return [self.FRONTEND_URL, "https://*.bitrix24.com", "https://*.bitrix24.com.br"]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )


settings = Settings()
