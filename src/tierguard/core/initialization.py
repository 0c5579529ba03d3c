"""Engine initialization and wiring.

This module handles the setup tasks required before the first decision:
environment variable loading, logging configuration, and assembling the
decision engine from its collaborators.
"""

from typing import Optional

import structlog
from dotenv import load_dotenv

from tierguard.config.rate_limiting import ConfigSource, JsonFileConfigSource, StaticConfigSource
from tierguard.core.circuit_breaker import CircuitBreaker
from tierguard.core.clock import Clock, SystemClock
from tierguard.core.config.settings import Settings, create_settings
from tierguard.core.logging import configure_logging
from tierguard.core.metrics import DecisionMetrics
from tierguard.core.rate_limiting.config import RateLimitingConfig
from tierguard.domain.rate_limiting.algorithms import build_algorithm_engines
from tierguard.domain.rate_limiting.authorization import PriorityAuthorizer
from tierguard.domain.rate_limiting.policies import PolicyResolver
from tierguard.domain.rate_limiting.repositories import CounterStore
from tierguard.domain.rate_limiting.services import RateLimitDecisionEngine
from tierguard.domain.rate_limiting.telemetry import TelemetrySink
from tierguard.infrastructure.redis import create_redis_client
from tierguard.infrastructure.stores.memory import InMemoryCounterStore
from tierguard.infrastructure.stores.redis import RedisCounterStore
from tierguard.infrastructure.telemetry import (
    FanOutTelemetrySink,
    MetricsTelemetrySink,
    StructlogTelemetrySink,
)

logger = structlog.get_logger(__name__)


def initialize_application(settings: Optional[Settings] = None) -> Settings:
    """Initialize the process with all necessary setup tasks.

    This function performs the following initialization tasks:
    1. Load environment variables
    2. Create settings (unless given)
    3. Configure logging

    Returns:
        The settings in effect
    """
    # Load environment variables
    load_dotenv(override=True)

    if settings is None:
        settings = create_settings()

    # Configure logging
    configure_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    logger.info(
        "application_initialized",
        project=settings.PROJECT_NAME,
        version=settings.VERSION,
        environment=settings.APP_ENV,
    )
    return settings


def build_counter_store(config: RateLimitingConfig, settings: Settings) -> CounterStore:
    """Create the counter store selected by ``config.store_backend``."""
    if config.store_backend == "redis":
        logger.info("counter_store_selected", backend="redis")
        return RedisCounterStore(create_redis_client(settings), key_prefix=settings.REDIS_KEY_PREFIX)
    logger.info("counter_store_selected", backend="memory")
    return InMemoryCounterStore(key_prefix=settings.REDIS_KEY_PREFIX)


def build_config_source(config: RateLimitingConfig) -> ConfigSource:
    """Policy file when one is configured, the shipped defaults otherwise."""
    if config.policy_config_path:
        return JsonFileConfigSource(config.policy_config_path)
    return StaticConfigSource()


def build_decision_engine(
    settings: Settings,
    config: Optional[RateLimitingConfig] = None,
    store: Optional[CounterStore] = None,
    config_source: Optional[ConfigSource] = None,
    telemetry: Optional[TelemetrySink] = None,
    clock: Optional[Clock] = None,
    metrics: Optional[DecisionMetrics] = None,
) -> RateLimitDecisionEngine:
    """
    Assemble a RateLimitDecisionEngine from settings.

    Every collaborator can be supplied explicitly; the rest are built from
    ``settings`` and ``config``. The default telemetry logs every event and
    feeds ``metrics``.

    Raises:
        ConfigurationError: The policy configuration cannot be loaded
    """
    config = config or RateLimitingConfig()
    clock = clock or SystemClock()
    store = store or build_counter_store(config, settings)
    if telemetry is None:
        telemetry = FanOutTelemetrySink(
            [StructlogTelemetrySink(), MetricsTelemetrySink(metrics or DecisionMetrics())]
        )

    resolver = PolicyResolver(
        config_source or build_config_source(config),
        clock=clock,
        cache_ttl_seconds=config.policy_cache_ttl_seconds,
        refresh_interval_seconds=config.config_refresh_seconds,
    )
    breaker = None
    if config.circuit_breaker_enabled:
        breaker = CircuitBreaker(
            failure_threshold=config.circuit_breaker_failure_threshold,
            reset_timeout=config.circuit_breaker_reset_timeout,
            name="counter_store",
            clock=clock,
        )

    engine = RateLimitDecisionEngine(
        authorizer=PriorityAuthorizer(telemetry),
        resolver=resolver,
        engines=build_algorithm_engines(store, config),
        telemetry=telemetry,
        clock=clock,
        config=config,
        circuit_breaker=breaker,
        store=store,
    )
    logger.info(
        "decision_engine_built",
        store=type(store).__name__,
        config_version=resolver.snapshot_version,
        circuit_breaker=breaker is not None,
    )
    return engine
