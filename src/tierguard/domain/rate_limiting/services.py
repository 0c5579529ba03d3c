"""
Rate Limiting Domain Services

The composite decision engine: the single entry point the request pipeline
awaits once per inbound request. It coordinates the priority authorizer, the
policy resolver and the algorithm engines, and turns every failure of the
counter store into an admitted, fail-open decision.

Decision flow:
    START -> PRIORITY_RESOLVED -> POLICY_RESOLVED -> ALGORITHM_CHECKED -> DECIDED

- Operational bypass (disabled, exempt) decides at START
- HIGH priority decides at POLICY_RESOLVED without touching the store
- Any store failure decides immediately, allowed, with ``fail_open=True``
- No retries happen within one decision
- Exactly one telemetry event is emitted per decision

Design Principles:
- Dependency Injection: every collaborator is passed in, nothing is global
- Fail open: availability of the protected service wins over limiting
- Cancellation propagates; only ``Exception`` subclasses are handled
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

import structlog

from tierguard.core.circuit_breaker import CircuitBreaker, CircuitBreakerError
from tierguard.core.clock import Clock, SystemClock
from tierguard.core.exceptions import CounterStoreError, StoreTimeoutError
from tierguard.core.rate_limiting.config import RateLimitingConfig

from .algorithms import ConcurrencySlotEngine, RateLimitAlgorithmEngine
from .authorization import PriorityAuthorizer
from .entities import AuthorizationResult, Decision, RateLimitPolicy, RateLimitRequest, SlotLease
from .policies import PolicyResolver
from .repositories import CounterStore
from .telemetry import NullTelemetrySink, TelemetryEventKind, TelemetrySink
from .value_objects import AlgorithmKind, ClientTier, CounterKey

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DecisionStage(str, Enum):
    """Progress of one request through the decision state machine."""
    START = "start"
    PRIORITY_RESOLVED = "priority_resolved"
    POLICY_RESOLVED = "policy_resolved"
    ALGORITHM_CHECKED = "algorithm_checked"
    DECIDED = "decided"


@dataclass
class DecisionContext:
    """Context object carrying everything known about one decision so far"""
    request: RateLimitRequest
    now: float
    started_at: float
    stage: DecisionStage = DecisionStage.START
    tier: Optional[ClientTier] = None
    authorization: Optional[AuthorizationResult] = None
    policies: Tuple[RateLimitPolicy, ...] = ()
    leases: List[SlotLease] = field(default_factory=list)

    def advance(self, stage: DecisionStage) -> None:
        self.stage = stage

    @property
    def priority_label(self) -> str:
        if self.authorization is not None:
            return self.authorization.effective.label
        return self.request.requested_priority.label


class RateLimitDecisionEngine:
    """
    Main domain service orchestrating rate limiting decisions.

    Args:
        authorizer: Clamps requested priorities to the tier's authorization
        resolver: Resolves the policies of a request
        engines: One algorithm engine per AlgorithmKind
        telemetry: Receives exactly one event per decision
        clock: Time source used when the caller supplies no ``now``
        config: Operational switches, exemptions and the store timeout
        circuit_breaker: Optional breaker wrapped around every store call
        store: Store reported by ``health_check``; defaults to the engines' store
    """

    def __init__(
        self,
        authorizer: PriorityAuthorizer,
        resolver: PolicyResolver,
        engines: Mapping[AlgorithmKind, RateLimitAlgorithmEngine],
        telemetry: Optional[TelemetrySink] = None,
        clock: Optional[Clock] = None,
        config: Optional[RateLimitingConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        store: Optional[CounterStore] = None,
    ):
        self.authorizer = authorizer
        self.resolver = resolver
        self.engines = dict(engines)
        self.telemetry = telemetry or NullTelemetrySink()
        self.clock = clock or SystemClock()
        self.config = config or RateLimitingConfig()
        self.circuit_breaker = circuit_breaker
        self.store = store or next(iter(self.engines.values())).store
        self.store_timeout = self.config.store_timeout_seconds

    async def decide(
        self,
        client_id: str,
        client_tier: Any,
        endpoint: str,
        priority: Any = None,
        now: Optional[float] = None,
    ) -> Decision:
        """
        Decide one request from its raw attributes.

        ``client_tier`` and ``priority`` may be enum members, names or values;
        a missing or malformed priority runs as LOW.
        """
        request = RateLimitRequest(
            client_id=client_id,
            endpoint=endpoint,
            client_tier=client_tier,
            priority=priority,
        )
        return await self.check(request, now=now)

    async def check(self, request: RateLimitRequest, now: Optional[float] = None) -> Decision:
        """
        Main entry point for rate limiting decisions.

        Never raises for store, configuration or input problems: those end
        in an allowed (fail-open or fallback) decision. Cancellation of the
        calling task propagates.

        Args:
            request: The request to decide
            now: Decision time in epoch seconds; defaults to the clock

        Returns:
            The Decision. Allowed decisions may carry concurrency leases that
            must be handed to ``release`` when the request finishes.
        """
        ctx = DecisionContext(
            request=request,
            now=self.clock.now() if now is None else now,
            started_at=self.clock.monotonic(),
        )
        with structlog.contextvars.bound_contextvars(
            request_id=request.request_id, client_id=request.client_id
        ):
            bypass_reason = self.config.get_bypass_reason(
                client_id=request.client_id,
                endpoint=request.endpoint,
                client_tier=request.tier_label,
            )
            if bypass_reason:
                return self._finish(
                    ctx, Decision.bypassed(ctx.now, bypass_reason), TelemetryEventKind.BYPASSED
                )

            try:
                return await self._decide(ctx)
            except CounterStoreError as e:
                return self._fail_open(ctx, e.code, e)
            except CircuitBreakerError as e:
                return self._fail_open(ctx, "circuit_open", e)
            except Exception as e:
                logger.exception("rate_limit_internal_error", stage=ctx.stage.value)
                return self._fail_open(ctx, "internal_error", e)

    async def _decide(self, ctx: DecisionContext) -> Decision:
        request = ctx.request
        ctx.tier = request.tier
        ctx.authorization = self.authorizer.authorize(
            ctx.tier,
            request.requested_priority,
            client_id=request.client_id,
            endpoint=request.endpoint,
        )
        ctx.advance(DecisionStage.PRIORITY_RESOLVED)

        ctx.policies = self.resolver.resolve_all(
            ctx.tier, ctx.authorization.effective, request.endpoint
        )
        ctx.advance(DecisionStage.POLICY_RESOLVED)

        if any(policy.bypass for policy in ctx.policies):
            return self._finish(
                ctx, Decision.bypassed(ctx.now, "priority_bypass"), TelemetryEventKind.BYPASSED
            )

        decision = await self._run_policies(ctx)
        kind = TelemetryEventKind.ALLOWED if decision.allowed else TelemetryEventKind.DENIED
        return self._finish(ctx, decision, kind)

    async def _run_policies(self, ctx: DecisionContext) -> Decision:
        """
        Check every policy in order.

        The first denial wins and refunds everything earlier policies took for
        this request (counts, tokens, log entries and slots), so a denied
        request is never accounted. When all allow, the tightest decision
        (least remaining) is returned carrying every acquired lease.
        """
        decisions: List[Decision] = []
        admitted: List[Tuple[RateLimitAlgorithmEngine, CounterKey, RateLimitPolicy]] = []
        for index, policy in enumerate(ctx.policies):
            engine = self.engines[policy.algorithm]
            key = self._counter_key(ctx.request, policy, index)
            decision = await self._guarded(
                engine.check, key, policy, ctx.now, ctx.request.request_id
            )
            ctx.leases.extend(decision.leases)

            if not decision.allowed:
                ctx.advance(DecisionStage.ALGORITHM_CHECKED)
                await self._refund(ctx, admitted)
                ctx.leases.clear()
                return decision
            decisions.append(decision)
            admitted.append((engine, key, policy))

        ctx.advance(DecisionStage.ALGORITHM_CHECKED)
        tightest = min(decisions, key=lambda d: d.remaining)
        return tightest.with_leases(tuple(ctx.leases))

    async def _refund(self, ctx: DecisionContext, admitted) -> None:
        """
        Undo earlier admissions of a denied request, newest first.

        Failures are logged; a count that cannot be given back expires with
        its window.
        """
        for engine, key, policy in reversed(admitted):
            try:
                await self._guarded(engine.refund, key, policy, ctx.now, ctx.request.request_id)
            except (CounterStoreError, CircuitBreakerError) as e:
                logger.warning(
                    "admission_refund_failed",
                    key=str(key),
                    algorithm=policy.algorithm.value,
                    error=str(e),
                    error_code=e.code,
                )

    @staticmethod
    def _counter_key(request: RateLimitRequest, policy: RateLimitPolicy, index: int) -> CounterKey:
        # Stacked rules after the first get their own counters
        endpoint = request.endpoint if index == 0 else f"{request.endpoint}#{index}"
        return CounterKey(
            client_id=request.client_id,
            endpoint=endpoint,
            algorithm=policy.algorithm,
        )

    async def _bounded(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run one store-backed call within the store timeout."""
        try:
            return await asyncio.wait_for(func(*args), timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Counter store call exceeded {self.store_timeout:.3f}s"
            ) from e

    async def _guarded(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        if self.circuit_breaker is None:
            return await self._bounded(func, *args)
        return await self.circuit_breaker.execute(self._bounded, func, *args)

    async def release(self, decision: Decision, now: Optional[float] = None) -> int:
        """
        Release every concurrency slot a decision holds.

        Failures are logged; an unreleased slot is reclaimed when its lease
        expires.

        Returns:
            Number of slots actually released
        """
        return await self._release_leases(decision.leases, self.clock.now() if now is None else now)

    async def _release_leases(self, leases, now: float) -> int:
        if not leases:
            return 0
        engine: ConcurrencySlotEngine = self.engines[AlgorithmKind.CONCURRENCY]
        released = 0
        for lease in leases:
            try:
                if await self._guarded(engine.release, lease, now):
                    released += 1
            except (CounterStoreError, CircuitBreakerError) as e:
                logger.warning(
                    "slot_release_failed",
                    key=str(lease.key),
                    token=lease.token,
                    error=str(e),
                    error_code=e.code,
                )
        return released

    def _fail_open(self, ctx: DecisionContext, reason: str, error: Exception) -> Decision:
        logger.error(
            "rate_limit_store_failure",
            reason=reason,
            error=str(error),
            error_type=type(error).__name__,
            stage=ctx.stage.value,
            endpoint=ctx.request.endpoint,
        )
        decision = Decision.failed_open(ctx.now, reason, leases=tuple(ctx.leases))
        return self._finish(
            ctx,
            decision,
            TelemetryEventKind.STORE_ERROR,
            {"error": str(error), "error_type": type(error).__name__},
        )

    def _finish(
        self,
        ctx: DecisionContext,
        decision: Decision,
        kind: TelemetryEventKind,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        ctx.advance(DecisionStage.DECIDED)
        latency_ms = (self.clock.monotonic() - ctx.started_at) * 1000
        details: Dict[str, Any] = {
            "reason": decision.reason,
            "allowed": decision.allowed,
            "remaining": decision.remaining,
            "retry_after": round(decision.retry_after, 3),
            "algorithm": decision.algorithm.value if decision.algorithm else None,
            "fail_open": decision.fail_open,
            "tier": ctx.request.tier_label,
            "requested_priority": ctx.request.requested_priority.label,
            "clamped": bool(ctx.authorization and ctx.authorization.clamped),
            "config_version": self.resolver.snapshot_version,
            "latency_ms": round(latency_ms, 3),
        }
        if extra:
            details.update(extra)

        try:
            self.telemetry.emit(
                kind,
                client_id=ctx.request.client_id,
                priority=ctx.priority_label,
                endpoint=ctx.request.endpoint,
                details=details,
            )
        except Exception as e:
            logger.error("telemetry_emit_failed", error=str(e), error_type=type(e).__name__)

        if kind is TelemetryEventKind.DENIED:
            logger.info(
                "rate_limit_denied",
                endpoint=ctx.request.endpoint,
                algorithm=details["algorithm"],
                retry_after=details["retry_after"],
            )
        return decision

    async def health_check(self) -> Dict[str, Any]:
        """
        Report store health, circuit state and the active configuration version.
        """
        try:
            store_health = await asyncio.wait_for(
                self.store.health_check(), timeout=max(self.store_timeout, 1.0)
            )
        except asyncio.TimeoutError:
            store_health = {"status": "unhealthy", "error": "health check timed out"}
        except Exception as e:
            logger.warning("store_health_check_failed", error=str(e))
            store_health = {"status": "unhealthy", "error": str(e)}

        breaker = self.circuit_breaker.describe() if self.circuit_breaker else None
        healthy = store_health.get("status") == "healthy" and (
            breaker is None or breaker["state"] != "open"
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "store": store_health,
            "circuit_breaker": breaker,
            "config_version": self.resolver.snapshot_version,
            "rate_limiting_enabled": not self.config.is_rate_limiting_disabled(),
        }
