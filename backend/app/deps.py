"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None

    # Meta Pixel / Conversions API
    FACEBOOK_PIXEL_ID: Optional[str] = None
    FACEBOOK_ACCESS_TOKEN: Optional[str] = None
    FACEBOOK_TEST_EVENT_CODE: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v18.0"
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    CAPI_TIMEOUT_SECONDS: float = 5.0
    CAPI_MAX_RETRIES: int = 3
    CAPI_RETRY_BASE_DELAY_SECONDS: float = 1.0
    VALIDATE_TOKEN_ON_STARTUP: bool = False

    # Event preparation
    DEFAULT_CURRENCY: str = "BRL"
    DEFAULT_COUNTRY: Optional[str] = "br"
    CUSTOMER_DATA_HASHING: bool = True
    # JSON object merged over the built-in funnel -> Meta event table
    CUSTOM_EVENT_MAPPING: Dict[str, str] = {}

    # Deduplication and session state (in-memory)
    DEDUP_ENABLED: bool = True
    DEDUP_WINDOW_HOURS: float = 24
    DEDUP_MAX_ENTRIES: Optional[int] = None
    SESSION_INACTIVITY_HOURS: float = 24
    SWEEP_INTERVAL_SECONDS: int = 3600

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def conversions_api_base(self) -> str:
        return f"{self.META_GRAPH_BASE_URL.rstrip('/')}/{self.META_GRAPH_API_VERSION}"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_bridge():
    """FastAPI dependency returning the process-wide FunnelBridge."""
    from . import state

    return state.get_bridge()
