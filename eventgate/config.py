from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "eventgate.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False, extra="ignore")

    api_token: str = Field(default="dev-token", description="Bearer token required for admin API calls")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Base of the URLs encoded in tickets and returned to registrants
    public_base_url: str = Field(default="http://localhost:8000")

    # Rate limiting (sliding window)
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_backend: str = Field(default="memory", description="memory|redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    registration_rate_limit: int = Field(default=3, ge=1, description="Registrations per IP per window")
    registration_rate_window_seconds: int = Field(default=3600, ge=1)
    checkin_rate_limit: int = Field(default=100, ge=1, description="Check-in scans per device per window")
    checkin_rate_window_seconds: int = Field(default=60, ge=1)

    # QR rendering
    qr_image_size: int = Field(default=400, ge=64)
    qr_margin: int = Field(default=2, ge=0)

    # Kiosk scanner
    scanner_cooldown_seconds: float = Field(default=3.0, ge=0)
    scanner_camera_index: int = Field(default=0)
    scanner_device_id: Optional[str] = Field(default=None)
    scanner_window_fraction: float = Field(default=0.6, gt=0, le=1)

    @field_validator("rate_limit_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = (value or "").strip().lower()
        if value not in {"memory", "redis"}:
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return value

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def base_url(self) -> str:
        return self.public_base_url.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
