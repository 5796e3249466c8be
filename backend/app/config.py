"""
Configuration settings for the Salla merchant integration
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App identification
    app_name: str = "Salla Merchant App"
    app_version: str = "1.0.0"
    debug: bool = False

    # Salla OAuth
    salla_client_id: str
    salla_client_secret: str
    salla_redirect_uri: str = ""
    # "online" runs the authorization-code flow; "custom" (easy mode) is webhook driven
    salla_authorization_mode: str = "online"
    salla_scopes: str = "offline_access"

    # Salla endpoints
    salla_auth_url: str = "https://accounts.salla.sa"
    salla_api_url: str = "https://api.salla.dev/admin/v2"

    # Database
    database_url: str

    # Redis (OAuth state and refresh locks)
    redis_url: str = "redis://localhost:6379"

    # Security
    encryption_key: str
    encryption_previous_keys: str = ""

    # App URLs
    app_url: str = "http://localhost:8000"
    refresh_token_path: str = "/api/oauth/refresh-token"

    # Outbound calls
    http_timeout_seconds: float = 30.0
    refresh_lock_timeout_seconds: float = 15.0
    # Extra Redis lock lifetime on top of the worst-case provider call
    refresh_lock_ttl_margin_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Default callback URL if not provided
        if not self.salla_redirect_uri:
            self.salla_redirect_uri = f"{self.app_url}/api/oauth/callback"

    @property
    def previous_encryption_keys(self) -> list[str]:
        """Retired keys still accepted for decryption."""
        return [k.strip() for k in self.encryption_previous_keys.split(",") if k.strip()]

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver."""
        url = self.database_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("sqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    @property
    def refresh_lock_ttl_seconds(self) -> float:
        """
        Lifetime of the Redis refresh lock.

        httpx applies the timeout to connect, write, read and pool separately,
        so one provider call can take up to four timeouts.
        """
        return 4 * self.http_timeout_seconds + self.refresh_lock_ttl_margin_seconds

    @property
    def reauthorize_url(self) -> str:
        """Where clients restart the authorization flow."""
        return f"{self.app_url}/api/oauth/redirect"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
