"""
Rate Limiting Policy Configuration

Versioned, read-only policy configuration: per-tier endpoint rules and the
priority multiplier table. A snapshot is validated as a whole when loaded and
never modified afterwards; changes arrive as a new snapshot with a new
version.

Endpoint rules are matched in this order:
1. Exact endpoint (``/reports/export``)
2. Longest prefix pattern (``/reports/*``)
3. Tier wildcard (``*``)

Example JSON document::

    {
        "version": "2024-06-01",
        "tiers": {
            "trial": {"endpoints": {"*": {"limit": 60, "window_seconds": 60}}},
            "premium": {"endpoints": {
                "*": {"limit": 1000, "window_seconds": 60, "algorithm": "token_bucket",
                      "burst_multiplier": 1.5},
                "/reports/*": [
                    {"limit": 100, "window_seconds": 60, "algorithm": "sliding_log"},
                    {"limit": 3, "window_seconds": 30, "algorithm": "concurrency"}
                ]
            }}
        },
        "priority_multipliers": {"medium": 2.0, "low": 1.0, "background": 0.2}
    }
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tierguard.core.exceptions import (
    ConfigurationError,
    MalformedPriorityError,
    PolicyNotFoundError,
    UnknownTierError,
)
from tierguard.domain.rate_limiting.entities import RateLimitPolicy
from tierguard.domain.rate_limiting.value_objects import (
    AlgorithmKind,
    ClientTier,
    PriorityLevel,
)

logger = structlog.get_logger(__name__)

WILDCARD = "*"

DEFAULT_PRIORITY_MULTIPLIERS: Dict[PriorityLevel, float] = {
    PriorityLevel.MEDIUM: 2.0,
    PriorityLevel.LOW: 1.0,
    PriorityLevel.BACKGROUND: 0.2,
}


class RuleConfig(BaseModel):
    """One limit applied to a tier/endpoint pair."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    limit: int = Field(gt=0)
    window_seconds: float = Field(gt=0)
    algorithm: AlgorithmKind = AlgorithmKind.FIXED_WINDOW
    burst_multiplier: float = Field(1.0, ge=1.0)
    name: str = ""

    @property
    def requests_per_second(self) -> float:
        return self.limit / self.window_seconds

    def to_policy(self, multiplier: float = 1.0, name: Optional[str] = None) -> RateLimitPolicy:
        """Build the policy for this rule with its limit scaled by ``multiplier``."""
        return RateLimitPolicy(
            limit=self.limit,
            window_seconds=self.window_seconds,
            algorithm=self.algorithm,
            burst_multiplier=self.burst_multiplier,
            name=name if name is not None else self.name,
        ).scaled(multiplier)


class TierConfig(BaseModel):
    """Endpoint pattern to rules mapping for one tier."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoints: Dict[str, Tuple[RuleConfig, ...]]

    @field_validator("endpoints", mode="before")
    @classmethod
    def accept_single_rules(cls, value):
        """Allow a bare rule where a list of rules is expected."""
        if not isinstance(value, dict):
            return value
        return {
            pattern: [rules] if isinstance(rules, (dict, RuleConfig)) else rules
            for pattern, rules in value.items()
        }

    @field_validator("endpoints")
    @classmethod
    def require_rules(cls, value: Dict[str, Tuple[RuleConfig, ...]]):
        for pattern, rules in value.items():
            if not pattern:
                raise ValueError("endpoint pattern must not be empty")
            if not rules:
                raise ValueError(f"endpoint {pattern!r} has no rules")
        return value

    def match(self, endpoint: str) -> Optional[Tuple[str, Tuple[RuleConfig, ...]]]:
        """Find the rules for ``endpoint``; returns (matched pattern, rules) or None."""
        if endpoint in self.endpoints:
            return endpoint, self.endpoints[endpoint]

        best: Optional[str] = None
        for pattern in self.endpoints:
            if pattern == WILDCARD or not pattern.endswith("/*"):
                continue
            prefix = pattern[:-1]
            if endpoint.startswith(prefix) or endpoint == prefix[:-1]:
                if best is None or len(pattern) > len(best):
                    best = pattern
        if best is not None:
            return best, self.endpoints[best]

        if WILDCARD in self.endpoints:
            return WILDCARD, self.endpoints[WILDCARD]
        return None

    def all_rules(self) -> Tuple[RuleConfig, ...]:
        return tuple(rule for rules in self.endpoints.values() for rule in rules)


# Applied when no configured rule can be found at all
BUILTIN_FALLBACK_RULE = RuleConfig(
    limit=10, window_seconds=60, algorithm=AlgorithmKind.FIXED_WINDOW, name="builtin_fallback"
)


def _most_restrictive(rules) -> Optional[RuleConfig]:
    return min(rules, key=lambda rule: rule.requests_per_second, default=None)


class PolicyConfigSnapshot(BaseModel):
    """
    Immutable, versioned policy configuration.

    Tier and priority keys accept enum names (case-insensitive) or values.
    HIGH has no multiplier: it always bypasses counting.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "1"
    tiers: Dict[ClientTier, TierConfig]
    priority_multipliers: Dict[PriorityLevel, float] = Field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_MULTIPLIERS)
    )

    @field_validator("tiers", mode="before")
    @classmethod
    def parse_tier_keys(cls, value):
        if not isinstance(value, dict):
            return value
        try:
            return {ClientTier.from_value(tier): config for tier, config in value.items()}
        except UnknownTierError as e:
            raise ValueError(e.message) from e

    @field_validator("priority_multipliers", mode="before")
    @classmethod
    def parse_priority_keys(cls, value):
        if not isinstance(value, dict):
            return value
        merged = dict(DEFAULT_PRIORITY_MULTIPLIERS)
        try:
            for level, multiplier in value.items():
                merged[PriorityLevel.from_value(level)] = multiplier
        except MalformedPriorityError as e:
            raise ValueError(e.message) from e
        return merged

    @field_validator("priority_multipliers")
    @classmethod
    def validate_multipliers(cls, value: Dict[PriorityLevel, float]):
        if PriorityLevel.HIGH in value:
            raise ValueError("HIGH priority bypasses limits and cannot carry a multiplier")
        for level, multiplier in value.items():
            if multiplier <= 0:
                raise ValueError(f"multiplier for {level.label} must be positive")
        return value

    def multiplier_for(self, priority: PriorityLevel) -> float:
        return self.priority_multipliers.get(priority, 1.0)

    def rules_for(self, tier: ClientTier, endpoint: str) -> Tuple[RuleConfig, ...]:
        """
        Rules configured for a tier and endpoint.

        Raises:
            PolicyNotFoundError: The tier is absent or none of its patterns match
        """
        tier_config = self.tiers.get(tier)
        if tier_config is None:
            raise PolicyNotFoundError(f"No configuration for tier {tier.label}")
        matched = tier_config.match(endpoint)
        if matched is None:
            raise PolicyNotFoundError(f"No rule for {endpoint} in tier {tier.label}")
        return matched[1]

    def fallback_rules(self, endpoint: str) -> Tuple[RuleConfig, ...]:
        """
        Most restrictive known rules, used when a lookup fails.

        Order: Trial rules for the endpoint, the most restrictive Trial rule,
        the most restrictive rule of any tier, then a builtin rule. Never
        unlimited.
        """
        trial = self.tiers.get(ClientTier.TRIAL)
        if trial is not None:
            matched = trial.match(endpoint)
            if matched is not None:
                return matched[1]
            strictest = _most_restrictive(trial.all_rules())
            if strictest is not None:
                return (strictest,)

        strictest = _most_restrictive(
            rule for tier_config in self.tiers.values() for rule in tier_config.all_rules()
        )
        if strictest is not None:
            return (strictest,)
        return (BUILTIN_FALLBACK_RULE,)


def default_policy_snapshot() -> PolicyConfigSnapshot:
    """Default tier table shipped with the package."""
    return PolicyConfigSnapshot.model_validate(
        {
            "version": "default-1",
            "tiers": {
                "trial": {
                    "endpoints": {
                        "*": {"limit": 60, "window_seconds": 60, "name": "trial_default"},
                        "/reports/*": {
                            "limit": 1,
                            "window_seconds": 30,
                            "algorithm": "concurrency",
                            "name": "trial_reports",
                        },
                    }
                },
                "standard": {
                    "endpoints": {
                        "*": {
                            "limit": 300,
                            "window_seconds": 60,
                            "algorithm": "sliding_window",
                            "name": "standard_default",
                        },
                    }
                },
                "premium": {
                    "endpoints": {
                        "*": {
                            "limit": 1000,
                            "window_seconds": 60,
                            "algorithm": "token_bucket",
                            "burst_multiplier": 1.5,
                            "name": "premium_default",
                        },
                        "/reports/*": [
                            {
                                "limit": 100,
                                "window_seconds": 60,
                                "algorithm": "sliding_log",
                                "name": "premium_reports_rate",
                            },
                            {
                                "limit": 3,
                                "window_seconds": 30,
                                "algorithm": "concurrency",
                                "name": "premium_reports_concurrency",
                            },
                        ],
                    }
                },
                "critical": {
                    "endpoints": {
                        "*": {
                            "limit": 5000,
                            "window_seconds": 60,
                            "algorithm": "token_bucket",
                            "burst_multiplier": 2.0,
                            "name": "critical_default",
                        },
                    }
                },
            },
        }
    )


class ConfigSource(ABC):
    """Where policy snapshots come from."""

    @abstractmethod
    def load(self) -> PolicyConfigSnapshot:
        """
        Load the current snapshot.

        Raises:
            ConfigurationError: The configuration is missing or invalid
        """
        pass


class StaticConfigSource(ConfigSource):
    """In-memory source; ``update`` swaps in a new snapshot."""

    def __init__(self, snapshot: Optional[PolicyConfigSnapshot] = None):
        self._snapshot = snapshot or default_policy_snapshot()

    def load(self) -> PolicyConfigSnapshot:
        return self._snapshot

    def update(self, snapshot: PolicyConfigSnapshot) -> None:
        logger.info(
            "policy_config_updated",
            previous_version=self._snapshot.version,
            version=snapshot.version,
        )
        self._snapshot = snapshot


class JsonFileConfigSource(ConfigSource):
    """Reads a snapshot from a JSON document on disk each time it is loaded."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> PolicyConfigSnapshot:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read policy file {self.path}: {e}") from e
        try:
            return PolicyConfigSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid policy file {self.path}: {e.error_count()} validation error(s)"
            ) from e
