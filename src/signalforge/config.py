from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field("sqlite:///./signalforge.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    rate_limit_per_minute: int = Field(600, alias="RATE_LIMIT_PER_MINUTE")

    # Tenant-wide destination defaults (per-destination config takes precedence)
    klaviyo_api_key: str | None = Field(None, alias="KLAVIYO_API_KEY")
    klaviyo_api_revision: str = Field("2024-02-15", alias="KLAVIYO_API_REVISION")
    meta_pixel_id: str | None = Field(None, alias="META_PIXEL_ID")
    meta_access_token: str | None = Field(None, alias="META_ACCESS_TOKEN")
    meta_test_event_code: str | None = Field(None, alias="META_TEST_EVENT_CODE")
    meta_graph_version: str = Field("v18.0", alias="META_GRAPH_VERSION")
    shopify_webhook_secret: str | None = Field(None, alias="SHOPIFY_WEBHOOK_SECRET")
    ingest_secret: str | None = Field(None, alias="INGEST_SECRET")

    # Sync dispatcher
    sync_batch_size: int = Field(50, alias="SYNC_BATCH_SIZE")
    sync_max_attempts: int = Field(3, alias="SYNC_MAX_ATTEMPTS")
    destination_timeout_seconds: float = Field(30.0, alias="DESTINATION_TIMEOUT_SECONDS")

    # Predictive & abandonment sweeps
    predictive_window_days: int = Field(30, alias="PREDICTIVE_WINDOW_DAYS")
    cart_abandon_minutes: int = Field(60, alias="CART_ABANDON_MINUTES")
    checkout_abandon_minutes: int = Field(180, alias="CHECKOUT_ABANDON_MINUTES")

    # Payload caps for free-form property / trait maps
    max_payload_bytes: int = Field(10240, alias="MAX_PAYLOAD_BYTES")
    max_payload_depth: int = Field(10, alias="MAX_PAYLOAD_DEPTH")
    default_api_key_scopes: str = Field("collect|identify", alias="DEFAULT_API_KEY_SCOPES")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_scopes(raw: str | None) -> set[str]:
    """Parse a `collect|identify` style scope list."""
    if not raw:
        return set()
    return {s.strip() for s in raw.split("|") if s.strip()}


def format_scopes(scopes) -> str:
    return "|".join(sorted({s.strip() for s in scopes if s and s.strip()}))
