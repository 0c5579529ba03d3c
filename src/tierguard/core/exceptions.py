from __future__ import annotations

"""Centralized, structured exception hierarchy for tierguard.

Every exception carries a machine-readable `code` for programmatic handling
and a human-readable `message` for logging. The decision engine maps these
onto its fail-open and fallback behaviour; none of them is fatal to the
process.

The hierarchy is designed to:
- Separate store failures (fail open) from policy lookups (fall back).
- Keep parsing problems of client-supplied input out of the caller's way.
- Offer a consistent structure for logging and telemetry details.
"""

from typing import Final

__all__: Final = [
    "TierGuardError",
    "ConfigurationError",
    "PolicyNotFoundError",
    "MalformedPriorityError",
    "UnknownTierError",
    "CounterStoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "StoreDataError",
]


class TierGuardError(Exception):
    """Base exception class for all custom errors in tierguard.

    Attributes:
        message (str): A human-readable error message, suitable for logging.
        code (str): A unique, machine-readable error code.
    """

    message: str
    code: str = "generic_error"

    def __init__(self, message: str, code: str = "generic_error"):
        self.message = message
        self.code = code
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Configuration and policy errors
# ---------------------------------------------------------------------------


class ConfigurationError(TierGuardError):
    """Raised when a policy configuration snapshot cannot be loaded or validated.

    The resolver keeps serving the previous snapshot when a reload fails, so
    this only surfaces on the very first load.
    """

    def __init__(self, message: str, code: str = "configuration_error"):
        super().__init__(message, code)


class PolicyNotFoundError(TierGuardError):
    """Raised when no rule is configured for a tier/endpoint combination.

    The policy resolver catches it and falls back to the most restrictive
    known policy. It never results in an unlimited policy.
    """

    def __init__(self, message: str, code: str = "policy_not_found"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Client input errors (never surfaced to the caller)
# ---------------------------------------------------------------------------


class MalformedPriorityError(TierGuardError):
    """Raised by strict priority parsing when the value is not a known level.

    Lenient parsing catches it and defaults to ``PriorityLevel.LOW``.
    """

    def __init__(self, message: str, code: str = "malformed_priority"):
        super().__init__(message, code)


class UnknownTierError(PolicyNotFoundError):
    """Raised by strict tier parsing for an unrecognised client tier."""

    def __init__(self, message: str, code: str = "unknown_tier"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Counter store errors (fail open)
# ---------------------------------------------------------------------------


class CounterStoreError(TierGuardError):
    """Base exception for counter store operations."""

    def __init__(self, message: str, code: str = "store_error"):
        super().__init__(message, code)


class StoreUnavailableError(CounterStoreError):
    """Raised when the counter store cannot be reached."""

    def __init__(self, message: str, code: str = "store_unavailable"):
        super().__init__(message, code)


class StoreTimeoutError(CounterStoreError):
    """Raised when a counter store call exceeds its time budget."""

    def __init__(self, message: str, code: str = "store_timeout"):
        super().__init__(message, code)


class StoreDataError(CounterStoreError):
    """Raised when the store returns a reply that cannot be interpreted."""

    def __init__(self, message: str, code: str = "store_data_error"):
        super().__init__(message, code)
