"""
Configuration loader for the background-removal comparison service.

Environment variables are centralized here to keep the rest of the code
focused on orchestration and to make operational tuning clear. API keys can be
overridden per request; `resolve_credentials` folds those overrides into an
explicit `Credentials` object once, before any network call is made.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings

from .errors import MissingCredential

VISION_PROVIDERS = {"replicate", "gemini", "claude"}
STORAGE_BACKENDS = {"local", "apps_script"}


class Settings(BaseSettings):
    # Replicate (background-removal providers)
    replicate_api_key: Optional[str] = Field(None, env="REPLICATE_API_KEY")
    replicate_base_url: str = Field("https://api.replicate.com/v1", env="REPLICATE_BASE_URL")

    # Polling
    request_timeout_seconds: int = Field(30, env="REQUEST_TIMEOUT_SECONDS")
    poll_interval_seconds: float = Field(2.0, env="POLL_INTERVAL_SECONDS")
    max_poll_attempts: int = Field(150, env="MAX_POLL_ATTEMPTS")
    pipeline_timeout_seconds: float = Field(300.0, env="PIPELINE_TIMEOUT_SECONDS")

    # Vision scoring
    vision_provider: str = Field("replicate", env="VISION_PROVIDER")
    vision_replicate_version: str = Field(
        "2facb4a474a0462c15041b78b1ad70952ea46b5ec6ad29583c0b29dbd4249591",  # llava-13b
        env="VISION_REPLICATE_VERSION",
    )
    gemini_api_key: Optional[str] = Field(None, env="GEMINI_API_KEY")
    gemini_model: str = Field("gemini-1.5-flash", env="GEMINI_MODEL")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta", env="GEMINI_BASE_URL"
    )
    anthropic_api_key: Optional[str] = Field(None, env="ANTHROPIC_API_KEY")
    claude_model: str = Field("claude-3-5-sonnet-latest", env="CLAUDE_MODEL")
    anthropic_base_url: str = Field("https://api.anthropic.com/v1", env="ANTHROPIC_BASE_URL")
    vision_max_long_edge: int = Field(1024, env="VISION_MAX_LONG_EDGE")

    # Saved tests
    storage_backend: str = Field("local", env="STORAGE_BACKEND")
    local_tests_path: Path = Field(Path("data/tests.json"), env="LOCAL_TESTS_PATH")
    google_script_url: Optional[str] = Field(None, env="GOOGLE_SCRIPT_URL")

    # Cloudflare R2 / S3-compatible staging for large inline images
    r2_endpoint: Optional[str] = Field(None, env="R2_ENDPOINT")
    r2_access_key_id: Optional[str] = Field(None, env="R2_ACCESS_KEY_ID")
    r2_secret_access_key: Optional[str] = Field(None, env="R2_SECRET_ACCESS_KEY")
    r2_bucket_name: Optional[str] = Field(None, env="R2_BUCKET_NAME")
    r2_public_base_url: Optional[str] = Field(None, env="R2_PUBLIC_BASE_URL")
    inline_image_max_bytes: int = Field(5 * 1024 * 1024, env="INLINE_IMAGE_MAX_BYTES")

    log_level: str = Field("INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("vision_provider")
    def validate_vision_provider(cls, v: str) -> str:  # noqa: B902
        v = v.strip().lower()
        if v not in VISION_PROVIDERS:
            raise ValueError("VISION_PROVIDER must be one of replicate|gemini|claude")
        return v

    @validator("storage_backend")
    def validate_storage_backend(cls, v: str) -> str:  # noqa: B902
        v = v.strip().lower()
        if v not in STORAGE_BACKENDS:
            raise ValueError("STORAGE_BACKEND must be one of local|apps_script")
        return v

    @validator("poll_interval_seconds", "pipeline_timeout_seconds")
    def validate_positive_seconds(cls, v: float) -> float:  # noqa: B902
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @validator("max_poll_attempts")
    def validate_max_poll_attempts(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("MAX_POLL_ATTEMPTS must be at least 1")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


@dataclass(frozen=True)
class Credentials:
    """API keys in effect for a single request."""

    replicate_api_key: Optional[str] = None
    vision_api_key: Optional[str] = None
    vision_provider: str = "replicate"

    def require_replicate(self) -> str:
        if not self.replicate_api_key:
            raise MissingCredential("Replicate")
        return self.replicate_api_key

    def require_vision(self) -> str:
        if not self.vision_api_key:
            raise MissingCredential(_VISION_SERVICE_NAMES[self.vision_provider])
        return self.vision_api_key


_VISION_SERVICE_NAMES = {"replicate": "Replicate", "gemini": "Gemini", "claude": "Anthropic"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_credentials(
    settings: Optional[Settings] = None,
    replicate_api_key: Optional[str] = None,
    vision_api_key: Optional[str] = None,
) -> Credentials:
    """
    Merge request-supplied keys over the server's configured keys.

    A request override always wins. The vision key falls back to whichever
    server key belongs to the configured vision provider; for the Replicate
    vision backend that is the same key used for background removal.
    """
    settings = settings or get_settings()
    replicate_key = _clean(replicate_api_key) or _clean(settings.replicate_api_key)

    provider = settings.vision_provider
    if provider == "gemini":
        server_vision_key = _clean(settings.gemini_api_key)
    elif provider == "claude":
        server_vision_key = _clean(settings.anthropic_api_key)
    else:
        server_vision_key = replicate_key
    vision_key = _clean(vision_api_key) or server_vision_key

    return Credentials(
        replicate_api_key=replicate_key,
        vision_api_key=vision_key,
        vision_provider=provider,
    )
