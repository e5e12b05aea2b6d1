from __future__ import annotations

from typing import Optional

from pydantic import AnyHttpUrl, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Transport configuration loaded from arguments or environment variables.

    Either an access token or an API key is required (no anonymous client).
    """

    model_config = SettingsConfigDict(env_prefix="SIGNATURE_", case_sensitive=False)

    base_url: AnyHttpUrl = Field(..., description="API base URL, e.g. https://sign.example.com")
    access_token: Optional[str] = Field(None, min_length=1, description="JWT bearer token")
    api_key: Optional[str] = Field(None, min_length=1, description="Legacy API key (sent as X-API-Key)")
    refresh_token: Optional[str] = Field(None, min_length=1, description="Refresh token for automatic renewal")

    timeout_ms: int = Field(30_000, ge=1, description="Per-request timeout (milliseconds)")

    enable_etag_cache: bool = Field(False, description="Send If-None-Match and serve 304s from a local cache")
    etag_cache_default_ttl_ms: int = Field(300_000, ge=1, description="TTL when the server sends no max-age")
    etag_cache_max_size: int = Field(500, ge=1, description="Maximum number of cached resources")

    debug: bool = Field(False, description="Log request, response, retry and cache events")

    @model_validator(mode="after")
    def _require_credential(self) -> "Settings":
        if not self.access_token and not self.api_key:
            raise ValueError("access_token or api_key is required")
        return self

    def base_url_str(self) -> str:
        return str(self.base_url).rstrip("/")

    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0
