"""Rate Limiting Configuration

Runtime switches and tuning knobs for the decision engine, loaded from the
environment. Tier quotas and priority multipliers are not configured here;
they live in the versioned policy snapshot (`tierguard.config.rate_limiting`).
"""

from typing import Annotated, Literal, Optional, Set

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Upper bound on how stale a resolved policy may be.
MAX_POLICY_STALENESS_SECONDS = 300.0


class RateLimitingConfig(BaseSettings):
    """Configuration for the rate limiting decision engine."""

    # Global settings
    enable_rate_limiting: bool = Field(True, alias="RATE_LIMITING_ENABLED")
    disable_rate_limiting: bool = Field(False, alias="RATE_LIMITING_DISABLED")
    emergency_disable: bool = Field(False, alias="RATE_LIMITING_EMERGENCY_DISABLE")

    # Exemptions (comma-separated in the environment)
    exempt_clients: Annotated[Set[str], NoDecode] = Field(
        default_factory=set, alias="RATE_LIMITING_EXEMPT_CLIENTS"
    )
    exempt_endpoints: Annotated[Set[str], NoDecode] = Field(
        default_factory=set, alias="RATE_LIMITING_EXEMPT_ENDPOINTS"
    )
    exempt_tiers: Annotated[Set[str], NoDecode] = Field(
        default_factory=set, alias="RATE_LIMITING_EXEMPT_TIERS"
    )

    # Counter store
    store_backend: Literal["memory", "redis"] = Field("memory", alias="RATE_LIMITING_STORE_BACKEND")
    store_timeout_seconds: float = Field(0.05, gt=0, le=5.0, alias="RATE_LIMITING_STORE_TIMEOUT")
    counter_grace_seconds: float = Field(1.0, ge=0, alias="RATE_LIMITING_COUNTER_GRACE")

    # Algorithms
    sliding_window_segments: int = Field(10, ge=1, le=1000, alias="RATE_LIMITING_SLIDING_SEGMENTS")

    # Policy resolution
    policy_cache_ttl_seconds: float = Field(
        60.0, gt=0, le=MAX_POLICY_STALENESS_SECONDS, alias="RATE_LIMITING_CACHE_TTL"
    )
    config_refresh_seconds: float = Field(
        60.0, gt=0, le=MAX_POLICY_STALENESS_SECONDS, alias="RATE_LIMITING_CONFIG_REFRESH"
    )
    policy_config_path: Optional[str] = Field(None, alias="RATE_LIMITING_POLICY_FILE")

    # Store circuit breaker
    circuit_breaker_enabled: bool = Field(True, alias="RATE_LIMITING_CIRCUIT_BREAKER")
    circuit_breaker_failure_threshold: int = Field(
        5, ge=1, alias="RATE_LIMITING_CIRCUIT_FAILURES"
    )
    circuit_breaker_reset_timeout: float = Field(
        30.0, gt=0, alias="RATE_LIMITING_CIRCUIT_RESET"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="RATE_LIMITING_", extra="ignore", populate_by_name=True
    )

    @field_validator("exempt_clients", "exempt_endpoints", "exempt_tiers", mode="before")
    @classmethod
    def parse_comma_separated_sets(cls, v):
        """Parse comma-separated strings into sets."""
        if isinstance(v, str):
            return {item.strip() for item in v.split(",") if item.strip()}
        elif isinstance(v, (list, set, tuple, frozenset)):
            return set(v)
        return set()

    @field_validator("exempt_tiers")
    @classmethod
    def normalize_tiers(cls, v: Set[str]) -> Set[str]:
        return {tier.lower() for tier in v}

    def is_rate_limiting_disabled(self) -> bool:
        """Check if rate limiting is globally disabled."""
        return self.disable_rate_limiting or self.emergency_disable or not self.enable_rate_limiting

    def get_bypass_reason(
        self,
        client_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        client_tier: Optional[str] = None,
    ) -> Optional[str]:
        """Get the reason why rate limiting is bypassed for a request.

        Returns:
            A short reason code, or None if the request must be limited.
        """
        if self.emergency_disable:
            return "emergency_disable"

        if self.disable_rate_limiting or not self.enable_rate_limiting:
            return "rate_limiting_disabled"

        if client_id and client_id in self.exempt_clients:
            return "exempt_client"

        if endpoint and endpoint in self.exempt_endpoints:
            return "exempt_endpoint"

        if client_tier and str(client_tier).lower() in self.exempt_tiers:
            return "exempt_tier"

        return None
