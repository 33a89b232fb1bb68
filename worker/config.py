"""Worker configuration."""

from garage.config import Settings


class WorkerSettings(Settings):
    """Worker settings loaded from environment variables.

    Shares every key with the API (database, Twilio, reminder window) and adds
    the scheduler's own knobs.
    """

    # Scheduler settings
    RUN_REMINDERS_ON_STARTUP: bool = False  # Catch up immediately after a restart
    SCHEDULER_MISFIRE_GRACE_SECONDS: int = 300


settings = WorkerSettings()
