"""
Redis counter store settings.
"""
import logging

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RedisSettings(BaseSettings):
    """
    Defines settings for the Redis connection backing the counter store.

    Security Note:
        - REDIS_PASSWORD must be set in production to prevent unauthorized access.
        - Use REDIS_SSL (rediss://) when the store is reached over an untrusted network.
    Performance Note:
        - REDIS_SOCKET_TIMEOUT bounds every round-trip at the socket level; the
          decision engine additionally bounds each store call with its own
          timeout, so keep this value at or slightly above that budget.
    """
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = Field(ge=1, le=65535, default=6379)
    REDIS_DB: int = Field(ge=0, default=0)
    REDIS_PASSWORD: SecretStr = SecretStr("")
    REDIS_SSL: bool = False
    REDIS_URL: str = Field(default="", validate_default=True)
    REDIS_SOCKET_TIMEOUT: float = Field(default=0.25, gt=0)
    REDIS_KEY_PREFIX: str = "tierguard"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def assemble_redis_url(cls, v: str | None, info: ValidationInfo) -> str:
        """
        Assembles the Redis connection URL if not provided explicitly.
        Masks password in logs for security.

        Args:
            v: Explicitly provided URL or None.
            info: Validation context with other field values.

        Returns:
            Assembled or provided Redis URL.
        """
        if v:
            return v

        values = info.data
        protocol = "rediss" if values.get("REDIS_SSL") else "redis"
        redis_password = values.get("REDIS_PASSWORD")
        secret = redis_password.get_secret_value() if isinstance(redis_password, SecretStr) else ""
        password = f":{secret}@" if secret else ""

        url = (
            f"{protocol}://{password}{values.get('REDIS_HOST')}:"
            f"{values.get('REDIS_PORT')}/{values.get('REDIS_DB', 0)}"
        )
        logger.debug("Assembled REDIS_URL (password masked for security).")
        return url
