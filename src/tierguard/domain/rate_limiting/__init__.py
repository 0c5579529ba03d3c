"""Rate Limiting Domain Module

This module contains the domain model of the priority-aware rate limiting
engine. It follows Domain-Driven Design principles with:

- Value Objects: Priority levels, client tiers, algorithm kinds, counter keys
- Entities: Policies, decisions, slot leases and requests
- Repositories: The counter store contract every algorithm runs against
- Domain Services: Algorithm engines, priority authorization, policy
  resolution and the composite decision engine

The design supports several algorithms per endpoint, distributed accuracy
through atomic store operations, and fail-open resilience.
"""

from .algorithms import (
    ConcurrencySlotEngine,
    FixedWindowEngine,
    RateLimitAlgorithmEngine,
    SlidingLogEngine,
    SlidingWindowEngine,
    TokenBucketEngine,
    build_algorithm_engines,
)
from .authorization import AUTHORIZATION_MATRIX, PriorityAuthorizer
from .entities import (
    UNBOUNDED_REMAINING,
    ActiveSlot,
    AuthorizationResult,
    Decision,
    RateLimitPolicy,
    RateLimitRequest,
    SlotLease,
)
from .policies import PolicyResolver
from .repositories import CounterStore
from .services import DecisionStage, RateLimitDecisionEngine
from .telemetry import (
    AuditEventKind,
    NullTelemetrySink,
    TelemetryEvent,
    TelemetryEventKind,
    TelemetrySink,
)
from .value_objects import AlgorithmKind, ClientTier, CounterKey, PriorityLevel

__all__ = [
    "PriorityLevel",
    "ClientTier",
    "AlgorithmKind",
    "CounterKey",
    "RateLimitPolicy",
    "Decision",
    "ActiveSlot",
    "SlotLease",
    "AuthorizationResult",
    "RateLimitRequest",
    "UNBOUNDED_REMAINING",
    "CounterStore",
    "RateLimitAlgorithmEngine",
    "FixedWindowEngine",
    "SlidingWindowEngine",
    "TokenBucketEngine",
    "SlidingLogEngine",
    "ConcurrencySlotEngine",
    "build_algorithm_engines",
    "AUTHORIZATION_MATRIX",
    "PriorityAuthorizer",
    "PolicyResolver",
    "DecisionStage",
    "RateLimitDecisionEngine",
    "TelemetrySink",
    "NullTelemetrySink",
    "TelemetryEvent",
    "TelemetryEventKind",
    "AuditEventKind",
]
