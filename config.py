"""Configuration module for Reminder Notification Sync Service.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the notification sync service.

    All settings can be overridden via environment variables.
    Example: export STORE_URL="https://project.supabase.co/rest/v1"
    """

    # Local schedule-record database
    DATABASE_URL: str = "sqlite:///./notification_schedules.db"
    """Database holding the device's notification schedule records"""

    # Identity of this installation
    USER_ID: str = ""
    """Authenticated user whose reminders are synced"""

    DEVICE_ID: str = "local-device"
    """Stable local device identifier (part of the schedule-record key)"""

    PLATFORM: str = "ios"
    """Device platform: 'ios', 'android' or 'web'"""

    IS_PHYSICAL_DEVICE: bool = True
    """Simulators and emulators cannot receive delivery tokens"""

    DEVICE_PUSH_TOKEN: str = ""
    """Push token issued to this device by its delivery service"""

    # Remote reminder store (PostgREST-compatible)
    STORE_URL: str = "http://127.0.0.1:54321/rest/v1"
    """Base URL of the remote store's REST endpoint"""

    STORE_API_KEY: str = ""
    """Anon/public API key sent as the 'apikey' header"""

    STORE_ACCESS_TOKEN: str = ""
    """User access token sent as the bearer token (scopes rows to USER_ID)"""

    STORE_TIMEOUT: float = 15.0
    """Timeout in seconds for remote store requests"""

    EXPO_PROJECT_ID: str = ""
    """Project id used to mint Expo push tokens (non-Android platforms)"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    # Background Worker Configuration
    WORKER_ENABLED: bool = True
    """Enable/disable the background sync worker"""

    SYNC_INTERVAL: int = 60
    """Interval in seconds between periodic reconciliation passes"""

    CHANGE_POLL_INTERVAL: int = 15
    """Interval in seconds for polling the store for reminder changes"""

    DELIVERY_INTERVAL: int = 1
    """Interval in seconds for delivering due local notifications"""

    # Scheduling behaviour
    HOLD_TOLERANCE_SECONDS: int = 60
    """Drift allowed between a record's scheduled time and the new target before rescheduling"""

    DEFAULT_SNOOZE_MINUTES: int = 15
    """Snooze length used when a request or the user's preferences give none"""

    DEFAULT_NOTIFICATION_BODY: str = "Reminder is due!"
    """Notification body used when a reminder has no description"""

    # Logging
    LOG_DIR: str = "logs"
    """Directory for rotating log files (relative paths resolve next to this module)"""

    LOG_LEVEL: str = "INFO"
    """Log level for service loggers"""

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
