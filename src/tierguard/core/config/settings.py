"""Main settings and configuration management.

This module composes the settings from the different modules (app, redis)
into a single `Settings` class.

It loads settings from environment variables and .env files and validates
them. There is deliberately no module-level instance: callers create one with
`create_settings()` and pass it to the components that need it.

Environment Support:
- Development: Uses .env
- Test: Uses .env.test
- Staging: Uses .env.staging
- Production: Uses .env.production
"""

import os
from pathlib import Path

import structlog
from pydantic_settings import SettingsConfigDict

from .app import AppSettings
from .redis import RedisSettings

logger = structlog.get_logger(__name__)

ENV_FILES = {
    "development": ".env",
    "test": ".env.test",
    "staging": ".env.staging",
    "production": ".env.production",
}


class Settings(AppSettings, RedisSettings):
    """The settings class that aggregates all process configuration.

    It inherits from the specialized settings classes, providing a unified
    interface to all configuration parameters. Rate limiting behaviour is
    configured separately through `RateLimitingConfig` and the policy
    configuration snapshot.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.APP_ENV in ("staging", "production")

    def validate_required_fields(self) -> None:
        """Validates settings that must be present outside development.

        Raises:
            ValueError: If a staging/production deployment has no Redis password.
        """
        if self.is_production and not self.REDIS_PASSWORD.get_secret_value():
            error_msg = f"REDIS_PASSWORD must be set in {self.APP_ENV} environment"
            logger.error("settings_validation_failed", error=error_msg)
            raise ValueError(error_msg)


def create_settings(**overrides) -> Settings:
    """Create a settings instance with environment-specific configuration.

    Args:
        **overrides: Explicit field values that win over the environment.

    Returns:
        Settings: Configured settings instance
    """
    env = os.getenv("APP_ENV", "development")
    env_file = ENV_FILES.get(env, ".env")

    if env != "development" and Path(env_file).exists():
        logger.info("loading_environment_file", env_file=env_file, environment=env)
        settings_instance = Settings(_env_file=env_file, **overrides)
    elif Path(".env").exists():
        logger.info("loading_environment_file", env_file=".env", environment=env)
        settings_instance = Settings(**overrides)
    else:
        logger.debug("no_environment_file", environment=env)
        settings_instance = Settings(**overrides)

    settings_instance.validate_required_fields()
    return settings_instance
