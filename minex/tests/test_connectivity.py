"""
Connectivity Tests.

Reachability probing and the reconnect trigger.
"""

import httpx
import pytest

from minex.app.services.connectivity import ConnectivityMonitor, check_api_connection

from minex.tests.conftest import TEST_BASE_URL


@pytest.fixture
async def http(transport):
    async with httpx.AsyncClient(base_url=TEST_BASE_URL, transport=transport) as client:
        yield client


@pytest.mark.asyncio
async def test_health_endpoint_means_reachable(http, transport):
    status = await check_api_connection(http)

    assert status.connected is True
    assert [r.url.path for r in transport.requests] == ["/health"]


@pytest.mark.asyncio
async def test_error_status_still_means_reachable(http, transport):
    transport.fail("GET", "/health", 500)
    assert (await check_api_connection(http)).connected is True


@pytest.mark.asyncio
async def test_fallback_probes_then_gives_up(http, transport):
    """Test that every probe path is tried before reporting offline."""
    transport.offline = True

    status = await check_api_connection(http)

    assert status.connected is False
    assert status.error == "Cannot connect to API server"
    assert [r.url.path for r in transport.requests] == ["/health", "/api/health", "/"]


@pytest.mark.asyncio
async def test_reconnect_listeners_fire_on_transition_only():
    monitor = ConnectivityMonitor(connected=False)
    fired = []

    async def on_reconnect():
        fired.append(True)

    unsubscribe = monitor.on_reconnect(on_reconnect)

    await monitor.set_connected(True)
    await monitor.set_connected(True)
    await monitor.set_connected(False)
    await monitor.set_connected(True)
    assert fired == [True, True]

    unsubscribe()
    await monitor.set_connected(False)
    await monitor.set_connected(True)
    assert fired == [True, True]


@pytest.mark.asyncio
async def test_failing_listener_is_contained():
    monitor = ConnectivityMonitor(connected=False)
    fired = []

    async def broken():
        raise RuntimeError("boom")

    async def healthy():
        fired.append(True)

    monitor.on_reconnect(broken)
    monitor.on_reconnect(healthy)

    await monitor.set_connected(True)

    assert monitor.is_connected is True
    assert fired == [True]


@pytest.mark.asyncio
async def test_probe_updates_state(http, transport):
    monitor = ConnectivityMonitor(connected=True)
    transport.offline = True

    assert await monitor.probe(http) is False
    assert monitor.is_connected is False
