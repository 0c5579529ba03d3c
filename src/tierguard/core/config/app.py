"""
Application-wide settings.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Defines settings shared by every component: project identity, runtime
    environment, and logging output.

    Performance Note:
        - LOG_JSON should stay enabled in production; the console renderer is
          noticeably slower under load.
    """
    PROJECT_NAME: str = "tierguard"
    VERSION: str = "0.1.0"
    APP_ENV: str = "development"
    DEBUG: bool = False

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        """
        Uppercases and validates the log level name.

        Args:
            value: Level name as configured.

        Returns:
            The normalized level name.
        """
        level = value.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {value}")
        return level
