"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/enhance.db"
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Record stores
    STORE_BACKEND: Literal["sql", "json", "memory"] = "sql"
    DATA_DIR: str = "./data"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    PUBLIC_BASE_URL: str = ""

    # Rate limiting
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_CONNECT_TIMEOUT_SECONDS: float = 1.0
    RATE_LIMIT_KEY_PREFIX: str = "enhance:rate"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Credits
    FREE_MONTHLY_CREDITS: int = 3
    CREDIT_COST_ENHANCE: int = 1
    INVITE_REFERRER_BONUS: int = 5
    INVITE_INVITEE_BONUS: int = 5
    INVITE_MAX_PER_MONTH: int = 20
    INVITE_CREDIT_EXPIRES_DAYS: int = 30

    # Job queue
    JOB_TIMEOUT_SECONDS: int = 600
    JOB_RETENTION_SECONDS: int = 7200
    JOB_SWEEP_INTERVAL_SECONDS: float = 60.0
    JOB_SNAPSHOT_INTERVAL_SECONDS: float = 5.0
    JOB_MAX_CONCURRENT: int = 5
    ESTIMATED_SECONDS_IMAGE: int = 30
    ESTIMATED_SECONDS_VIDEO: int = 120

    # Generation provider
    GENERATION_API_BASE_URL: str = "https://api.evolink.ai"
    GENERATION_API_KEY: str = ""
    GENERATION_MODEL: str = "nano-banana-2-lite"
    GENERATION_IMAGE_SIZE: str = "9:16"
    GENERATION_IMAGE_QUALITY: str = "2K"
    GENERATION_SUBMIT_TIMEOUT_SECONDS: float = 30.0
    GENERATION_POLL_TIMEOUT_SECONDS: float = 10.0
    GENERATION_POLL_INTERVAL_SECONDS: float = 2.0
    GENERATION_POLL_MAX_ATTEMPTS: int = 60
    GENERATION_POLL_DEADLINE_SECONDS: float = 120.0

    # Media
    UPLOAD_DIR: str = "./data/uploads"
    UPLOAD_URL_PREFIX: str = "/uploads"
    MEDIA_FETCH_TIMEOUT_SECONDS: float = 30.0

    # Video tooling
    CUTOUT_API_URL: str = ""
    CUTOUT_API_KEY: str = ""
    CUTOUT_TIMEOUT_SECONDS: float = 60.0
    VIDEO_DURATION_SECONDS: int = 5
    VIDEO_FPS: int = 30
    VIDEO_WIDTH: int = 1080
    VIDEO_HEIGHT: int = 1920
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def require_generation_api_key() -> str:
    """Return configured generation provider API key or raise a configuration error."""
    api_key = (settings.GENERATION_API_KEY or "").strip()
    if not api_key:
        raise ValueError("GENERATION_API_KEY is not configured")
    return api_key


def validate_runtime_settings() -> None:
    """Fail fast when job timing settings cannot work together."""
    if settings.JOB_SNAPSHOT_INTERVAL_SECONDS <= 0 or settings.JOB_SWEEP_INTERVAL_SECONDS <= 0:
        raise ValueError("Job sweep and snapshot intervals must be positive.")
    if settings.JOB_SNAPSHOT_INTERVAL_SECONDS > settings.JOB_SWEEP_INTERVAL_SECONDS:
        raise ValueError("JOB_SNAPSHOT_INTERVAL_SECONDS must not exceed JOB_SWEEP_INTERVAL_SECONDS.")
    if settings.JOB_RETENTION_SECONDS < settings.JOB_TIMEOUT_SECONDS:
        raise ValueError("JOB_RETENTION_SECONDS must be at least JOB_TIMEOUT_SECONDS.")
    if settings.GENERATION_POLL_MAX_ATTEMPTS < 1:
        raise ValueError("GENERATION_POLL_MAX_ATTEMPTS must be at least 1.")
