from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "CLDBAR_",
        "extra": "ignore",
    }

    # Profiles (read-only; written by the desktop shell)
    profiles_file: str = "profiles.yaml"

    # Persisted aggregate cache
    cache_db_path: str = "data/cldbar-cache.db"
    fingerprint_mode: str = "stat"  # "stat" (size+mtime) | "content" (sha256 of bytes)

    # Refresh cadence used by the UI shell; also bounds sidecar staleness
    refresh_interval_seconds: int = 5
    scan_workers: int = 4
    # Files last modified before now - lookback are not scanned at all
    scan_lookback_days: int = 90

    # A session with no events inside this window is inactive
    claude_activity_window_seconds: int = 30 * 60
    gemini_activity_window_seconds: int = 30 * 60
    zai_activity_window_seconds: int = 30 * 60

    # Calendar-day bucketing; empty = host local time zone
    timezone: str = ""

    # Rate-limit sidecar snapshots (local Claude accounts)
    # Extra absolute paths checked after <config_dir>/usage-limits.json,
    # e.g. the statusline cache /tmp/claude-statusline/limits.json
    rate_limit_sidecar_paths: list[str] = []
    rate_limit_max_age_seconds: int = 900

    # Remote APIs
    anthropic_api_base: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    http_timeout_seconds: float = 30.0
    validate_timeout_seconds: float = 10.0
    api_cache_ttl_seconds: int = 60
    api_lookback_days: int = 30

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # Logging
    log_level: str = "INFO"


settings = Settings()
