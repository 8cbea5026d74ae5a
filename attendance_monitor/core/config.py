# attendance_monitor/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global application configuration.

    Values are loaded from environment variables at runtime.

    Groups
    ------
    - Application / logging
    - Local durable store (DB URL, bounds)
    - Optional remote attendance API
    - Attendance classification thresholds
    - Realtime channel timing
    - Notification filtering
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Attendance Monitor"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")
    LOG_LEVEL: str = Field("INFO", description="Root log level.")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./attendance_monitor.db",
        description="SQLAlchemy-compatible database URL for the local record store",
    )

    INTERNAL_API_KEY: str | None = Field(
        default=None,
        description="API key required for pushing realtime events",
    )

    # --- Remote attendance API (optional) ---
    ATTENDANCE_API_BASE_URL: str | None = Field(
        default=None,
        description=(
            "Base URL of the remote attendance backend, e.g. http://localhost:5000/api. "
            "When unset, persistence stays local only."
        ),
    )
    ATTENDANCE_API_TIMEOUT_SECONDS: float = Field(default=10.0)
    ATTENDANCE_API_HEALTH_TIMEOUT_SECONDS: float = Field(default=3.0)

    # --- Attendance classification ---
    LEFT_EARLY_MINUTES: int = Field(
        default=5,
        description="Participants leaving before this many minutes are marked 'Left Early'.",
    )
    ATTENDANCE_THRESHOLD_PERCENT: int = Field(
        default=85,
        description="Minimum attendance percentage counted as 'Present'.",
    )
    PARTIAL_THRESHOLD_PERCENT: int = Field(default=70)
    LATE_THRESHOLD_PERCENT: int = Field(default=30)
    DURATION_REFRESH_SECONDS: float = Field(
        default=3600.0,
        description="Interval of the background refresh of active participant durations.",
    )

    # --- Realtime channel ---
    HEARTBEAT_INTERVAL_SECONDS: float = Field(default=30.0)
    RECONNECT_BASE_DELAY_SECONDS: float = Field(default=3.0)
    MAX_RECONNECT_ATTEMPTS: int = Field(default=5)

    # --- Notifications ---
    NOTIFICATION_SUPPRESS_SECONDS: float = Field(default=30.0)
    NOTIFICATION_RATE_LIMIT: int = Field(default=5)
    NOTIFICATION_RATE_WINDOW_SECONDS: float = Field(default=60.0)
    NOTIFICATION_CLEANUP_SECONDS: float = Field(default=60.0)
    NOTIFICATION_DEFAULT_DURATION_MS: int = Field(default=4000)
    NOTIFICATION_CRITICAL_PATTERN: str = Field(
        default="Backend server",
        description="Error messages containing this text bypass de-dup and rate limiting.",
    )

    # --- Local store bounds ---
    STORE_MAX_RECORDS: int = Field(default=100)
    PROFILE_HISTORY_LIMIT: int = Field(default=20)


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Using LRU cache ensures settings are read and validated only once,
    while still being easily importable across the app.
    """
    return Settings()
