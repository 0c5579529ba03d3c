"""
Policy Resolution

Maps (client tier, effective priority, endpoint) to the concrete policies a
request is checked against. Resolution is cheap but runs on every request, so
results are kept in a short-lived read-through cache. The configuration
snapshot itself is re-read from its source at a bounded interval; both bounds
are capped so a configuration change is visible within five minutes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional, Tuple

import structlog

from tierguard.core.clock import Clock, SystemClock
from tierguard.core.exceptions import PolicyNotFoundError
from tierguard.core.rate_limiting.config import MAX_POLICY_STALENESS_SECONDS

from .entities import RateLimitPolicy
from .value_objects import ClientTier, PriorityLevel

if TYPE_CHECKING:
    from tierguard.config.rate_limiting import ConfigSource, PolicyConfigSnapshot

logger = structlog.get_logger(__name__)

CacheKey = Tuple[Optional[ClientTier], PriorityLevel, str]


class PolicyResolver:
    """
    Resolve policies from a versioned configuration snapshot.

    HIGH priority resolves to a single bypass policy without consulting the
    configuration. Lookups that find no rule (unknown tier, unmatched
    endpoint) fall back to the most restrictive known rules, never to an
    unlimited policy.

    Args:
        config_source: Supplies configuration snapshots
        clock: Time source; only its monotonic reading is used
        cache_ttl_seconds: Lifetime of a cached resolution
        refresh_interval_seconds: How often the source is re-read
        max_cache_entries: Cache is emptied when it grows past this size

    Raises:
        ConfigurationError: The initial snapshot cannot be loaded
    """

    def __init__(
        self,
        config_source: ConfigSource,
        clock: Optional[Clock] = None,
        cache_ttl_seconds: float = 60.0,
        refresh_interval_seconds: float = 60.0,
        max_cache_entries: int = 10_000,
    ):
        self.config_source = config_source
        self.clock = clock or SystemClock()
        self.cache_ttl_seconds = min(cache_ttl_seconds, MAX_POLICY_STALENESS_SECONDS)
        self.refresh_interval_seconds = min(refresh_interval_seconds, MAX_POLICY_STALENESS_SECONDS)
        self.max_cache_entries = max_cache_entries

        self._snapshot: PolicyConfigSnapshot = config_source.load()
        self._loaded_at = self.clock.monotonic()
        self._cache: Dict[CacheKey, Tuple[Tuple[RateLimitPolicy, ...], float]] = {}
        logger.info("policy_config_loaded", version=self._snapshot.version)

    @property
    def snapshot(self) -> PolicyConfigSnapshot:
        return self._snapshot

    @property
    def snapshot_version(self) -> str:
        return self._snapshot.version

    def invalidate(self) -> None:
        """Drop every cached resolution."""
        self._cache.clear()

    def refresh(self, force: bool = False) -> bool:
        """
        Re-read the configuration source if the refresh interval has passed.

        A failing reload keeps the current snapshot. A new version replaces it
        and invalidates the cache.

        Returns:
            True when a new snapshot version was installed
        """
        now = self.clock.monotonic()
        if not force and now - self._loaded_at < self.refresh_interval_seconds:
            return False
        self._loaded_at = now

        try:
            snapshot = self.config_source.load()
        except Exception as e:
            logger.error(
                "policy_config_reload_failed",
                error=str(e),
                error_type=type(e).__name__,
                kept_version=self._snapshot.version,
            )
            return False

        if snapshot.version == self._snapshot.version:
            return False

        logger.info(
            "policy_config_version_changed",
            previous_version=self._snapshot.version,
            version=snapshot.version,
        )
        self._snapshot = snapshot
        self.invalidate()
        return True

    def resolve_all(
        self,
        tier: Optional[ClientTier],
        priority: PriorityLevel,
        endpoint: str,
    ) -> Tuple[RateLimitPolicy, ...]:
        """
        Resolve every policy that applies to a request, in configured order.

        Args:
            tier: Client tier, None when unrecognised
            priority: Effective (already authorized) priority
            endpoint: Endpoint identifier

        Returns:
            Non-empty tuple of policies
        """
        if priority is PriorityLevel.HIGH:
            return (RateLimitPolicy.unlimited(),)

        self.refresh()
        key = (tier, priority, endpoint)
        now = self.clock.monotonic()
        cached = self._cache.get(key)
        if cached is not None and cached[1] > now:
            return cached[0]

        policies = self._build(tier, priority, endpoint)
        if len(self._cache) >= self.max_cache_entries:
            self._cache.clear()
        self._cache[key] = (policies, now + self.cache_ttl_seconds)
        return policies

    def resolve(
        self,
        tier: Optional[ClientTier],
        priority: PriorityLevel,
        endpoint: str,
    ) -> RateLimitPolicy:
        """Resolve the primary (first configured) policy for a request."""
        return self.resolve_all(tier, priority, endpoint)[0]

    def _build(
        self,
        tier: Optional[ClientTier],
        priority: PriorityLevel,
        endpoint: str,
    ) -> Tuple[RateLimitPolicy, ...]:
        snapshot = self._snapshot
        try:
            if tier is None:
                raise PolicyNotFoundError("Unrecognised client tier")
            rules = snapshot.rules_for(tier, endpoint)
        except PolicyNotFoundError as e:
            logger.warning(
                "policy_not_found",
                tier=tier.label if tier is not None else None,
                endpoint=endpoint,
                error=e.message,
                config_version=snapshot.version,
            )
            rules = snapshot.fallback_rules(endpoint)

        multiplier = snapshot.multiplier_for(priority)
        return tuple(rule.to_policy(multiplier) for rule in rules)
