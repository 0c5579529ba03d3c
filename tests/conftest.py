import pytest

from tierguard.config.rate_limiting import PolicyConfigSnapshot, StaticConfigSource
from tierguard.core.circuit_breaker import CircuitBreaker
from tierguard.core.clock import ManualClock
from tierguard.core.rate_limiting.config import RateLimitingConfig
from tierguard.domain.rate_limiting.algorithms import build_algorithm_engines
from tierguard.domain.rate_limiting.authorization import PriorityAuthorizer
from tierguard.domain.rate_limiting.policies import PolicyResolver
from tierguard.domain.rate_limiting.services import RateLimitDecisionEngine
from tierguard.infrastructure.stores.memory import InMemoryCounterStore
from tierguard.infrastructure.telemetry import RecordingTelemetrySink

# Aligned to 10, 30, 60 and 120 second windows
START_TIME = 1_700_000_040.0

TEST_POLICY_DOCUMENT = {
    "version": "test-1",
    "tiers": {
        "trial": {
            "endpoints": {
                "*": {"limit": 5, "window_seconds": 60, "name": "trial_default"},
            }
        },
        "standard": {
            "endpoints": {
                "*": {"limit": 10, "window_seconds": 60, "name": "standard_default"},
                "/search": {
                    "limit": 4,
                    "window_seconds": 10,
                    "algorithm": "sliding_log",
                    "name": "standard_search",
                },
            }
        },
        "premium": {
            "endpoints": {
                "*": {
                    "limit": 10,
                    "window_seconds": 10,
                    "algorithm": "token_bucket",
                    "name": "premium_default",
                },
                "/reports/*": [
                    {
                        "limit": 5,
                        "window_seconds": 60,
                        "algorithm": "sliding_log",
                        "name": "premium_reports_rate",
                    },
                    {
                        "limit": 2,
                        "window_seconds": 30,
                        "algorithm": "concurrency",
                        "name": "premium_reports_slots",
                    },
                ],
            }
        },
        "critical": {
            "endpoints": {
                "*": {"limit": 100, "window_seconds": 60, "name": "critical_default"},
            }
        },
    },
}


@pytest.fixture
def clock():
    return ManualClock(start=START_TIME)


@pytest.fixture
def store():
    return InMemoryCounterStore()


@pytest.fixture
def telemetry():
    return RecordingTelemetrySink()


@pytest.fixture
def policy_snapshot():
    return PolicyConfigSnapshot.model_validate(TEST_POLICY_DOCUMENT)


@pytest.fixture
def config_source(policy_snapshot):
    return StaticConfigSource(policy_snapshot)


@pytest.fixture
def rate_limiting_config():
    return RateLimitingConfig(
        enable_rate_limiting=True,
        disable_rate_limiting=False,
        emergency_disable=False,
        exempt_clients=set(),
        exempt_endpoints=set(),
        exempt_tiers=set(),
        store_timeout_seconds=0.05,
        circuit_breaker_enabled=False,
    )


@pytest.fixture
def make_engine(clock, store, telemetry, config_source, rate_limiting_config):
    """Build a decision engine; any collaborator can be swapped per test."""

    def _make_engine(
        store=store,
        config=rate_limiting_config,
        source=config_source,
        circuit_breaker=None,
        sink=telemetry,
    ):
        resolver = PolicyResolver(
            source,
            clock=clock,
            cache_ttl_seconds=config.policy_cache_ttl_seconds,
            refresh_interval_seconds=config.config_refresh_seconds,
        )
        return RateLimitDecisionEngine(
            authorizer=PriorityAuthorizer(sink),
            resolver=resolver,
            engines=build_algorithm_engines(store, config),
            telemetry=sink,
            clock=clock,
            config=config,
            circuit_breaker=circuit_breaker,
            store=store,
        )

    return _make_engine


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=2, reset_timeout=30, name="test", clock=clock)


@pytest.fixture
def redis_mock(mocker):
    """AsyncMock standing in for redis.asyncio.Redis."""
    redis = mocker.AsyncMock()
    redis.script_load.side_effect = lambda script: f"sha-{abs(hash(script)) % 10_000}"
    return redis
