"""Application-wide configuration management using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration shared across services.

    Environment variables mirror the deployment setup and allow overrides per service.
    """

    model_config = SettingsConfigDict(env_file=".env", env_nested_delimiter="__", extra="allow")

    environment: str = "development"
    service_name: str = "mediasync"

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Media backend (object listing, URL issuing, job status)
    media_api_base: str = "http://localhost:3000"
    media_api_token: Optional[str] = None
    media_request_timeout: float = 30.0
    media_list_page_size: int = 100

    # URL resolution
    media_url_mode: Literal["signed", "proxy"] = "signed"
    media_proxy_url_template: str = "{base}/api/media/file?key={key}"
    media_signed_url_ttl_seconds: int = 3600
    media_url_freshness_seconds: float = 300.0  # refresh well before the signed URL expires

    # Job polling
    job_poll_active_interval: float = 3.0
    job_poll_idle_interval: float = 10.0
    job_poll_timeout_seconds: float = 1200.0  # 20 minutes for slow job types

    # Transient fetch retries
    fetch_retry_attempts: int = 3
    fetch_retry_max_wait: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache configuration for the current process."""

    return Settings()  # type: ignore[arg-type]


settings = get_settings()
