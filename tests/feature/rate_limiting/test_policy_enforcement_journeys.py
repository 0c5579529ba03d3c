"""End-to-end enforcement journeys over the in-memory store.

Based on everyday traffic shapes:
- Stacked report limits on a premium tier
- Concurrent bursts against one counter
- Sliding log precision on a search endpoint
- Operational switches that bypass limiting entirely
"""

import asyncio

import pytest

from tierguard.domain.rate_limiting.telemetry import TelemetryEventKind
from tierguard.domain.rate_limiting.value_objects import AlgorithmKind


@pytest.mark.asyncio
async def test_premium_reports_rate_and_concurrency(engine, clock):
    """A premium analyst opens reports from several tabs.

    At most two reports render at once, and at most five start per minute.
    """
    first = await engine.decide("analyst", "premium", "/reports/daily")
    second = await engine.decide("analyst", "premium", "/reports/daily")
    third = await engine.decide("analyst", "premium", "/reports/daily")

    assert first.allowed and second.allowed
    assert third.allowed is False
    assert third.algorithm is AlgorithmKind.CONCURRENCY
    assert third.retry_after == pytest.approx(30.0)

    assert await engine.release(first) == 1
    assert await engine.release(second) == 1
    clock.advance(1)

    # The denied third request gave its start back
    later = []
    for _ in range(3):
        decision = await engine.decide("analyst", "premium", "/reports/daily")
        later.append(decision.allowed)
        await engine.release(decision)
    seventh = await engine.decide("analyst", "premium", "/reports/daily")

    assert later == [True, True, True]
    assert seventh.allowed is False
    assert seventh.algorithm is AlgorithmKind.SLIDING_LOG
    assert seventh.retry_after == pytest.approx(59.0)


@pytest.mark.asyncio
async def test_concurrent_burst_never_exceeds_limit(engine, telemetry):
    """Fifty requests from one standard client arrive at the same moment."""
    decisions = await asyncio.gather(
        *(engine.decide("burst-client", "standard", "/items") for _ in range(50))
    )

    assert sum(d.allowed for d in decisions) == 10
    assert len(telemetry.of_kind(TelemetryEventKind.DENIED)) == 40


@pytest.mark.asyncio
async def test_clients_do_not_share_counters(engine):
    """Two trial users on the same endpoint each get their own quota."""
    for _ in range(5):
        assert (await engine.decide("user-1", "trial", "/items")).allowed

    assert (await engine.decide("user-1", "trial", "/items")).allowed is False
    assert (await engine.decide("user-2", "trial", "/items")).allowed is True


@pytest.mark.asyncio
async def test_search_sliding_log_frees_capacity_one_request_at_a_time(engine, clock):
    """A standard client types into a search box: four searches per ten seconds."""
    for _ in range(4):
        assert (await engine.decide("typist", "standard", "/search")).allowed
        clock.advance(2)

    denied = await engine.decide("typist", "standard", "/search")
    assert denied.allowed is False
    assert denied.retry_after == pytest.approx(2.0)

    clock.advance(2)
    assert (await engine.decide("typist", "standard", "/search")).allowed is True
    assert (await engine.decide("typist", "standard", "/search")).allowed is False


@pytest.mark.asyncio
async def test_fixed_window_resets_on_the_boundary(engine, clock):
    """A trial user waits out the advertised retry delay and is admitted again."""
    for _ in range(5):
        await engine.decide("patient-user", "trial", "/items")
    clock.advance(45)

    denied = await engine.decide("patient-user", "trial", "/items")
    assert denied.retry_after == pytest.approx(15.0)
    assert denied.to_http_headers()["Retry-After"] == "15"

    clock.advance(denied.retry_after)
    assert (await engine.decide("patient-user", "trial", "/items")).allowed is True


@pytest.mark.asyncio
async def test_emergency_disable_admits_everything(make_engine, rate_limiting_config, telemetry):
    """Operators flip the emergency switch during an incident."""
    config = rate_limiting_config.model_copy(update={"emergency_disable": True})
    engine = make_engine(config=config)

    decisions = [await engine.decide("trial-user", "trial", "/items") for _ in range(20)]

    assert all(d.allowed for d in decisions)
    assert {d.reason for d in decisions} == {"emergency_disable"}
    assert {e.kind for e in telemetry.events} == {TelemetryEventKind.BYPASSED}


@pytest.mark.asyncio
async def test_exempt_client_and_endpoint(make_engine, rate_limiting_config):
    """Uptime monitors and the status endpoint are never limited."""
    config = rate_limiting_config.model_copy(
        update={"exempt_clients": {"uptime-monitor"}, "exempt_endpoints": {"/status"}}
    )
    engine = make_engine(config=config)

    monitor = [await engine.decide("uptime-monitor", "trial", "/items") for _ in range(10)]
    status = [await engine.decide("trial-user", "trial", "/status") for _ in range(10)]
    limited = [await engine.decide("trial-user", "trial", "/items") for _ in range(6)]

    assert {d.reason for d in monitor} == {"exempt_client"}
    assert {d.reason for d in status} == {"exempt_endpoint"}
    assert limited[-1].allowed is False
