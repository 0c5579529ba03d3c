"""
Rate Limiting Value Objects

Immutable value objects representing core concepts in the rate limiting domain.
These objects encapsulate business rules and invariants while providing
type safety and rich behavior.

Value Objects:
- PriorityLevel: Client-declared urgency of a request
- ClientTier: Subscription classification of a client
- AlgorithmKind: Enumeration of supported algorithms
- CounterKey: Identity of one mutable counter in the store

Design Principles:
- Immutability: All value objects are immutable after creation
- Validation: Business rules enforced at construction time
- Total ordering where the domain is ordered (priorities, tiers)
- Equality: Value-based equality for proper hashing and comparison
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Optional
from urllib.parse import quote

from tierguard.core.exceptions import MalformedPriorityError, UnknownTierError


def _coerce_enum_member(enum_cls, value: Any):
    """Resolve enum members from themselves, their int value, or their name."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a valid {enum_cls.__name__}")
    if isinstance(value, int):
        return enum_cls(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return enum_cls(int(text))
        return enum_cls[text.upper()]
    raise ValueError(f"Unsupported {enum_cls.__name__} value type: {type(value).__name__}")


class PriorityLevel(IntEnum):
    """
    Ordered urgency levels a request may declare.

    BACKGROUND < LOW < MEDIUM < HIGH. HIGH is a bypass level: authorized HIGH
    requests are admitted without consulting any counter.
    """
    BACKGROUND = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def from_value(cls, value: Any) -> PriorityLevel:
        """Strictly parse a priority, raising MalformedPriorityError on bad input."""
        try:
            return _coerce_enum_member(cls, value)
        except (KeyError, ValueError) as e:
            raise MalformedPriorityError(f"Unrecognised priority level: {value!r}") from e

    @classmethod
    def parse(cls, value: Any, default: Optional[PriorityLevel] = None) -> PriorityLevel:
        """
        Leniently parse a priority extracted from request content.

        Missing or unparseable values never propagate as errors; they silently
        become the default (LOW).
        """
        fallback = cls.LOW if default is None else default
        if value is None:
            return fallback
        try:
            return cls.from_value(value)
        except MalformedPriorityError:
            return fallback

    @property
    def label(self) -> str:
        return self.name.lower()


class ClientTier(IntEnum):
    """Ordered subscription tiers. TRIAL is the most restrictive."""
    TRIAL = 0
    STANDARD = 1
    PREMIUM = 2
    CRITICAL = 3

    @classmethod
    def from_value(cls, value: Any) -> ClientTier:
        """Strictly parse a tier, raising UnknownTierError on bad input."""
        try:
            return _coerce_enum_member(cls, value)
        except (KeyError, ValueError) as e:
            raise UnknownTierError(f"Unrecognised client tier: {value!r}") from e

    @classmethod
    def parse(cls, value: Any) -> Optional[ClientTier]:
        """Parse a tier, returning None when it is not recognised."""
        if value is None:
            return None
        try:
            return cls.from_value(value)
        except UnknownTierError:
            return None

    @property
    def label(self) -> str:
        return self.name.lower()


class AlgorithmKind(str, Enum):
    """
    Enumeration of supported rate limiting algorithms.

    Each algorithm has different characteristics suitable for different use cases:
    - FIXED_WINDOW: Cheapest; allows up to 2x burst across a window boundary
    - SLIDING_WINDOW: Segmented approximation of a true sliding window
    - TOKEN_BUCKET: Allows bursts up to capacity but maintains the long-term rate
    - SLIDING_LOG: Exact, at the cost of storing every timestamp in the window
    - CONCURRENCY: Bounds in-flight requests rather than request rate
    """
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    SLIDING_LOG = "sliding_log"
    CONCURRENCY = "concurrency"

    @property
    def supports_burst(self) -> bool:
        """Check if algorithm honours the policy burst multiplier"""
        return self is AlgorithmKind.TOKEN_BUCKET


@dataclass(frozen=True, slots=True)
class CounterKey:
    """
    Immutable value object identifying one mutable counter.

    Composite of (client_id, endpoint, algorithm, window_bucket). Algorithms
    that keep a single state per client/endpoint leave ``window_bucket`` unset.

    Business Rules:
    - Keys must be deterministic for the same inputs
    - Client and endpoint are percent-encoded so separators cannot collide
    - All keys of one client/endpoint share a Redis cluster hash slot
    """
    client_id: str
    endpoint: str
    algorithm: AlgorithmKind
    window_bucket: Optional[int] = None

    def __post_init__(self):
        """Validate key components at construction time"""
        if not self.client_id:
            raise ValueError("client_id must not be empty")
        if not self.endpoint:
            raise ValueError("endpoint must not be empty")

    @property
    def scope(self) -> str:
        """Hash-tagged client/endpoint part shared by every bucket of this key."""
        return "{" + quote(self.client_id, safe="") + "|" + quote(self.endpoint, safe="") + "}"

    def storage_key(self, prefix: str = "tierguard") -> str:
        """
        Render the key used in the backing store.

        Format: prefix:algorithm:{client|endpoint}[:bucket]
        """
        base = f"{prefix}:{self.algorithm.value}:{self.scope}"
        if self.window_bucket is None:
            return base
        return f"{base}:{self.window_bucket}"

    def for_bucket(self, bucket: int) -> CounterKey:
        """Create a new key for a specific window bucket"""
        return replace(self, window_bucket=bucket)

    def __str__(self) -> str:
        return self.storage_key()
