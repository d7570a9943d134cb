"""Application configuration via pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "calcast"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    secret_key: str = Field(..., description="API bearer token signing secret")

    # Credential encryption + OAuth handshake
    encryption_key: str = Field(..., description="Key material for credential encryption")
    oauth_state_secret: str | None = None
    state_ttl_seconds: int = 600

    @property
    def effective_state_secret(self) -> str:
        return self.oauth_state_secret or self.encryption_key

    # Key-value store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Google OAuth / Calendar
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_calendar_id: str = "primary"
    public_base_url: str = "http://localhost:8000"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/oauth/callback"

    # Token lifecycle
    refresh_skew_seconds: int = 60

    # Broadcast
    http_timeout_seconds: float = 10.0
    call_timeout_seconds: float = 15.0
    broadcast_deadline_seconds: float = 30.0
    broadcast_max_concurrency: int = 8
    default_event_duration_minutes: int = 60

    # JWT
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
