"""
Runtime configuration for bookingsync.

Values come from environment variables (a .env file is loaded by the CLI
through bookingsync.env). CLI flags override individual fields.

Usage:
    from bookingsync.config import Settings

    settings = Settings.from_env()
    settings.max_retries
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Upstream, storage and pacing settings for a sync run."""

    access_token: str = ""
    base_url: str = "https://connect.squareup.com"
    api_version: str = "2024-01-18"
    database_url: str = "sqlite:///data/bookings.db"
    organization_id: str = "default"
    location_id: Optional[str] = None

    page_limit: int = 100  # upstream maximum
    max_retries: int = 5
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    page_delay: float = 0.1
    request_timeout: float = 30.0
    max_window_days: int = 31  # upstream start_at filter span limit

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            access_token=environ.get("SQUARE_ACCESS_TOKEN", ""),
            base_url=environ.get("SQUARE_BASE_URL", defaults.base_url).rstrip("/"),
            api_version=environ.get("SQUARE_API_VERSION", defaults.api_version),
            database_url=environ.get("DATABASE_URL", defaults.database_url),
            organization_id=environ.get("BOOKINGSYNC_ORGANIZATION_ID", defaults.organization_id),
            location_id=environ.get("BOOKINGSYNC_LOCATION_ID") or None,
            page_limit=_env_int(environ, "PAGE_LIMIT", defaults.page_limit),
            max_retries=_env_int(environ, "MAX_RETRIES", defaults.max_retries),
            initial_retry_delay=_env_float(environ, "INITIAL_RETRY_DELAY", defaults.initial_retry_delay),
            max_retry_delay=_env_float(environ, "MAX_RETRY_DELAY", defaults.max_retry_delay),
            page_delay=_env_float(environ, "PAGE_DELAY", defaults.page_delay),
            request_timeout=_env_float(environ, "REQUEST_TIMEOUT", defaults.request_timeout),
            max_window_days=_env_int(environ, "MAX_WINDOW_DAYS", defaults.max_window_days),
            log_level=environ.get("LOG_LEVEL", defaults.log_level),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        if not 1 <= self.page_limit <= 100:
            raise ValueError("PAGE_LIMIT must be between 1 and 100")
        if self.max_retries < 1:
            raise ValueError("MAX_RETRIES must be at least 1")
        if self.initial_retry_delay < 0 or self.max_retry_delay < self.initial_retry_delay:
            raise ValueError("retry delays must satisfy 0 <= INITIAL_RETRY_DELAY <= MAX_RETRY_DELAY")
        if self.max_window_days < 1:
            raise ValueError("MAX_WINDOW_DAYS must be positive")
