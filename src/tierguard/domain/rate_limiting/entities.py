"""Rate Limiting Domain Entities

Objects that represent the inputs and outputs of a rate limiting decision.

Entities:
- RateLimitPolicy: Resolved numeric parameters applied to one request
- Decision: Result of a rate limiting decision
- ActiveSlot / SlotLease: A held concurrency slot and the caller's handle on it
- RateLimitRequest: Request for a rate limiting decision
- AuthorizationResult: Outcome of priority authorization

Design Principles:
- Policies and decisions are immutable once created
- Factory methods express the distinct decision outcomes
- Requests keep identity (request_id) for tracing and slot ownership
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from tierguard.core.clock import to_datetime

from .value_objects import AlgorithmKind, ClientTier, CounterKey, PriorityLevel

# Marker for "no finite remaining count" (bypass and fail-open decisions).
UNBOUNDED_REMAINING = -1


@dataclass(frozen=True)
class RateLimitPolicy:
    """Value object holding the parameters one algorithm enforces.

    A policy is re-resolved for every request. ``bypass`` marks the High
    priority fast path: such a policy carries no usable limit and the engine
    must not consult any counter for it.

    Business Rules:
    - limit and window must be positive
    - burst_multiplier cannot be below 1.0
    - capacity never drops below one request
    """

    limit: int
    window_seconds: float
    algorithm: AlgorithmKind
    burst_multiplier: float = 1.0
    bypass: bool = False
    name: str = ""

    def __post_init__(self):
        """Validate policy configuration at creation"""
        if self.bypass:
            return
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.burst_multiplier < 1.0:
            raise ValueError("burst_multiplier cannot be below 1.0")

    @property
    def capacity(self) -> int:
        """Maximum burst the algorithm may admit at once.

        Only algorithms that support bursts honour the burst multiplier.
        """
        if not self.algorithm.supports_burst:
            return self.limit
        return max(1, math.floor(self.limit * self.burst_multiplier))

    @property
    def refill_rate(self) -> float:
        """Steady-state tokens per second."""
        return self.limit / self.window_seconds

    def scaled(self, multiplier: float) -> RateLimitPolicy:
        """Return a copy with the limit scaled, floored, and kept at least 1."""
        return replace(self, limit=max(1, math.floor(self.limit * multiplier)))

    @classmethod
    def unlimited(cls, name: str = "priority_bypass") -> RateLimitPolicy:
        """Factory for the High priority bypass policy"""
        return cls(
            limit=0,
            window_seconds=0,
            algorithm=AlgorithmKind.FIXED_WINDOW,
            bypass=True,
            name=name,
        )


@dataclass(frozen=True)
class ActiveSlot:
    """A concurrency slot held by one request until release or expiry."""

    request_id: str
    acquired_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class SlotLease:
    """Caller's handle on an ActiveSlot; pass it back to release the slot."""

    key: CounterKey
    slot: ActiveSlot

    @property
    def token(self) -> str:
        return self.slot.request_id


@dataclass(frozen=True)
class Decision:
    """Result of a rate limiting decision.

    Contains whether the request was admitted, remaining capacity, when the
    limit resets and how long a denied caller should wait. Never mutated after
    creation; helpers return modified copies.
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: float
    reason: str
    algorithm: Optional[AlgorithmKind] = None
    fail_open: bool = False
    leases: Tuple[SlotLease, ...] = ()

    @property
    def is_blocked(self) -> bool:
        """Check if the request was blocked"""
        return not self.allowed

    @property
    def reset_at_unix(self) -> int:
        """Get reset time as Unix timestamp for HTTP headers"""
        return math.ceil(self.reset_at.timestamp())

    def with_leases(self, leases: Tuple[SlotLease, ...]) -> Decision:
        return replace(self, leases=tuple(leases))

    def to_http_headers(self) -> Dict[str, str]:
        """Convert the decision to conventional rate limit headers.

        - X-RateLimit-Remaining: requests left (omitted when unbounded)
        - X-RateLimit-Reset: Unix time at which capacity resets
        - Retry-After: whole seconds to wait (only when blocked)
        """
        headers = {}
        if self.remaining != UNBOUNDED_REMAINING:
            headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        headers["X-RateLimit-Reset"] = str(self.reset_at_unix)
        if self.is_blocked:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after)))
        if self.algorithm is not None:
            headers["X-RateLimit-Policy"] = self.algorithm.value
        return headers

    @classmethod
    def allow(
        cls,
        remaining: int,
        reset_at: float,
        algorithm: Optional[AlgorithmKind],
        reason: str = "within_limit",
        **kwargs,
    ) -> Decision:
        """Factory method for admitted requests"""
        return cls(
            allowed=True,
            remaining=max(0, remaining),
            reset_at=to_datetime(reset_at),
            retry_after=0.0,
            reason=reason,
            algorithm=algorithm,
            **kwargs,
        )

    @classmethod
    def deny(
        cls,
        retry_after: float,
        reset_at: float,
        algorithm: AlgorithmKind,
        reason: str = "limit_exceeded",
        remaining: int = 0,
    ) -> Decision:
        """Factory method for rejected requests"""
        return cls(
            allowed=False,
            remaining=max(0, remaining),
            reset_at=to_datetime(reset_at),
            retry_after=max(0.0, retry_after),
            reason=reason,
            algorithm=algorithm,
        )

    @classmethod
    def bypassed(cls, now: float, reason: str) -> Decision:
        """Factory method for requests admitted without consulting any counter"""
        return cls(
            allowed=True,
            remaining=UNBOUNDED_REMAINING,
            reset_at=to_datetime(now),
            retry_after=0.0,
            reason=reason,
        )

    @classmethod
    def failed_open(
        cls, now: float, reason: str, leases: Tuple[SlotLease, ...] = ()
    ) -> Decision:
        """Factory method for admitting a request because the store failed"""
        return cls(
            allowed=True,
            remaining=UNBOUNDED_REMAINING,
            reset_at=to_datetime(now),
            retry_after=0.0,
            reason=reason,
            fail_open=True,
            leases=tuple(leases),
        )


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of checking a requested priority against a client tier."""

    requested: PriorityLevel
    effective: PriorityLevel
    authorized: bool
    reason: str

    @property
    def clamped(self) -> bool:
        return self.effective != self.requested


@dataclass
class RateLimitRequest:
    """Entity representing a request for a rate limiting decision.

    Carries the resolved identity supplied by the surrounding pipeline. The
    tier and priority are kept raw; parsing them (and defaulting malformed
    values) is the decision engine's job.
    """

    client_id: str
    endpoint: str
    client_tier: Any = None
    priority: Any = None
    request_id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self):
        """Validate request has minimum required information"""
        if not self.client_id:
            raise ValueError("Request must have a client_id")
        if not self.endpoint:
            raise ValueError("Request must have an endpoint")

    @property
    def tier(self) -> Optional[ClientTier]:
        return ClientTier.parse(self.client_tier)

    @property
    def requested_priority(self) -> PriorityLevel:
        return PriorityLevel.parse(self.priority)

    @property
    def tier_label(self) -> Optional[str]:
        tier = self.tier
        if tier is not None:
            return tier.label
        return None if self.client_tier is None else str(self.client_tier)
