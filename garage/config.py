"""
Application configuration using pydantic-settings.
"""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


def find_env_file() -> str:
    """Find .env file by checking multiple locations."""
    current_dir = Path(__file__).parent
    candidates = [
        current_dir / ".env",  # garage/.env
        current_dir.parent / ".env",  # project root/.env
    ]

    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    # Default to project root
    return str(current_dir.parent / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./garage.db"
    STORE_MAX_RETRIES: int = 3  # Attempts on lock contention before surfacing
    STORE_RETRY_INITIAL_DELAY: float = 0.05  # seconds

    # Shared secret for /internal endpoints called by external cron (empty = staff users only)
    INTERNAL_API_TOKEN: str = ""

    # Redis (optional, used for the reminder sweep lock)
    REDIS_URL: str = ""

    # Twilio SMS (in-memory gateway is used when credentials are empty)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""

    # Garage
    GARAGE_NAME: str = "LCF Auto Performance"
    GARAGE_TIMEZONE: str = "Europe/Paris"
    SLOT_TIMES: List[str] = [
        "10:00",
        "10:30",
        "11:00",
        "11:30",
        "14:00",
        "14:30",
        "15:00",
        "15:30",
        "16:00",
        "16:30",
        "17:00",
        "17:30",
    ]

    # Business rules
    MODIFICATION_WINDOW_HOURS: int = 24  # Owners cannot modify inside this window

    # Reminders
    REMINDER_LEAD_HOURS: int = 24
    REMINDER_WINDOW_MINUTES: int = 30  # Half-width of the window around the lead time
    REMINDER_CONCURRENCY: int = 10
    REMINDER_ITEM_TIMEOUT_SECONDS: float = 10.0
    REMINDER_SWEEP_BUDGET_SECONDS: float = 300.0
    REMINDER_CRON_SCHEDULE: str = "0 * * * *"  # Every hour, on the hour

    # Loyalty
    LOYALTY_POINTS_PER_APPOINTMENT: int = 10
    LOYALTY_WELCOME_BONUS: int = 50


settings = Settings()
