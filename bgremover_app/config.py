"""
Configuration loader for the background-removal front end.

Environment variables are centralized here to keep the rest of the code
focused on the submission flow and to make operational tuning clear.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Prediction flow (client side)
    predictions_base_url: str = "http://localhost:8000/api/predictions"
    poll_interval_seconds: float = 1.0
    request_timeout_seconds: int = 30

    # Upstream prediction provider (server side proxy)
    replicate_api_url: str = "https://api.replicate.com/v1/predictions"
    replicate_api_token: Optional[str] = None
    replicate_model_version: str = Field(
        "fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"
    )

    # Cloudflare R2 / S3-compatible storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket_name: Optional[str] = None
    r2_public_base_url: Optional[str] = None
    upload_key_prefix: str = "uploads"

    # Document store
    mongo_url: Optional[str] = None
    mongo_db_name: str = "bgremover"

    # Quota
    anonymous_limit: int = 5
    signed_in_limit: int = 105

    # Identity
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Display / download
    preview_max_edge: int = 475
    download_suffix: str = "-new"

    # Session lifetime (HTTP layer)
    session_idle_ttl_seconds: float = 3600.0
    session_sweep_interval_seconds: float = 60.0

    log_level: str = "INFO"

    @field_validator("poll_interval_seconds", "session_idle_ttl_seconds", "session_sweep_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("intervals must be positive")
        return v

    @field_validator("anonymous_limit", "signed_in_limit")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("quota limits must be positive")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def limit_for(signed_in: bool, settings: Optional[Settings] = None) -> int:
    """
    Free submission limit for a session.

    Signing in unlocks the extra sign-up credits on top of the anonymous quota.
    """
    settings = settings or get_settings()
    if signed_in:
        return settings.signed_in_limit
    return settings.anonymous_limit
