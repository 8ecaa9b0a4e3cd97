"""Configuration for the EMDEX proxy, loaded from the environment or .env."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream
    emdex_api_url: str = ""
    emdex_email: str = ""
    emdex_password: str = ""
    emdex_timeout: float = 10.0
    emdex_login_path: str = "/api/v1/login"
    use_mock_emdex: bool = False

    # Token lifetime (in seconds)
    token_refresh_buffer: int = 60
    token_default_expires_in: int = 3600

    # Response cache
    cache_max_size: int = 1000
    cache_eviction_ratio: float = 0.1
    search_cache_ttl: int = 3600  # 1 hour
    details_cache_ttl: int = 86400  # 24 hours
    verify_cache_ttl: int = 86400  # 24 hours

    log_level: str = "INFO"

    @property
    def emdex_configured(self) -> bool:
        return bool(self.emdex_api_url and self.emdex_email and self.emdex_password)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
