"""Rate limiting runtime configuration (environment-driven switches)."""

from .config import MAX_POLICY_STALENESS_SECONDS, RateLimitingConfig

__all__ = ["RateLimitingConfig", "MAX_POLICY_STALENESS_SECONDS"]
