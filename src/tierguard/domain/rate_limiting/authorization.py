"""
Priority Authorization

Decides which priority a request actually runs at. Each client tier is
authorized for a fixed set of priority levels; a request asking for more is
downgraded (never rejected) and the downgrade is reported on the audit
channel.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

import structlog

from .entities import AuthorizationResult
from .telemetry import AuditEventKind, NullTelemetrySink, TelemetrySink
from .value_objects import ClientTier, PriorityLevel

logger = structlog.get_logger(__name__)

AUTHORIZATION_MATRIX: Dict[ClientTier, FrozenSet[PriorityLevel]] = {
    ClientTier.CRITICAL: frozenset(PriorityLevel),
    ClientTier.PREMIUM: frozenset(
        {PriorityLevel.MEDIUM, PriorityLevel.LOW, PriorityLevel.BACKGROUND}
    ),
    ClientTier.STANDARD: frozenset({PriorityLevel.LOW, PriorityLevel.BACKGROUND}),
    ClientTier.TRIAL: frozenset({PriorityLevel.LOW}),
}


class PriorityAuthorizer:
    """
    Clamp requested priorities to what a tier is authorized for.

    Clamping picks the highest authorized level at or below the requested
    one. When nothing at or below is authorized (Trial asking for Background)
    the tier's maximum authorized level is used instead. Unknown tiers are
    treated as Trial.
    """

    def __init__(
        self,
        telemetry: Optional[TelemetrySink] = None,
        matrix: Optional[Dict[ClientTier, FrozenSet[PriorityLevel]]] = None,
    ):
        self.telemetry = telemetry or NullTelemetrySink()
        self.matrix = matrix or AUTHORIZATION_MATRIX

    def allowed_levels(self, tier: Optional[ClientTier]) -> FrozenSet[PriorityLevel]:
        return self.matrix[tier if tier is not None else ClientTier.TRIAL]

    def max_authorized(self, tier: Optional[ClientTier]) -> PriorityLevel:
        return max(self.allowed_levels(tier))

    def authorize(
        self,
        tier: Optional[ClientTier],
        requested: PriorityLevel,
        *,
        client_id: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Validate ``requested`` against ``tier``.

        Args:
            tier: Client tier, or None when it could not be recognised
            requested: Priority the request asked for
            client_id: Reported on the audit event when clamping
            endpoint: Reported on the audit event when clamping

        Returns:
            AuthorizationResult carrying the effective priority
        """
        allowed = self.allowed_levels(tier)
        if requested in allowed:
            return AuthorizationResult(
                requested=requested,
                effective=requested,
                authorized=True,
                reason="authorized",
            )

        at_or_below = [level for level in allowed if level <= requested]
        effective = max(at_or_below) if at_or_below else self.max_authorized(tier)
        result = AuthorizationResult(
            requested=requested,
            effective=effective,
            authorized=False,
            reason="priority_clamped",
        )
        self._audit_clamp(tier, result, client_id, endpoint)
        return result

    def _audit_clamp(
        self,
        tier: Optional[ClientTier],
        result: AuthorizationResult,
        client_id: Optional[str],
        endpoint: Optional[str],
    ) -> None:
        details = {
            "tier": tier.label if tier is not None else None,
            "requested_priority": result.requested.label,
            "effective_priority": result.effective.label,
        }
        logger.info("priority_clamped", client_id=client_id, endpoint=endpoint, **details)
        try:
            self.telemetry.audit(
                AuditEventKind.PRIORITY_CLAMPED,
                client_id=client_id or "",
                details=details,
                endpoint=endpoint,
            )
        except Exception as e:
            logger.error("telemetry_audit_failed", error=str(e), error_type=type(e).__name__)
