from __future__ import annotations

import asyncio

import pytest

from bloxbot.adapters.bridge_poller import (
    PLUGIN_DETACHED_MESSAGE,
    STALE_BRIDGE_MESSAGE,
    STARTING_BRIDGE_MESSAGE,
    UNREACHABLE_MESSAGE,
    BridgeHealthPoller,
    detect_bridge_status,
)
from bloxbot.client.bridge_probe import BridgeHealth
from bloxbot.core.errors import EngineApiError, HostError
from bloxbot.shared.models.catalog import BridgeStatus, McpServerStatus
from conftest import FakeHost, make_client

NAME = "roblox-studio"
URL = "http://127.0.0.1:3002/health"


def _probe(result):
    calls = []

    async def probe(url: str, timeout: float):
        calls.append((url, timeout))
        return result

    probe.calls = calls
    return probe


def _client_with(status: str | None, error: str | None = None):
    client = make_client()
    if status is None:
        client.mcp_status.return_value = {}
    else:
        client.mcp_status.return_value = {NAME: McpServerStatus(NAME, status, error)}
    return client


async def _detect(client, host, probe):
    return await detect_bridge_status(
        client, host, bridge_name=NAME, health_url=URL, probe_timeout=1.0, probe=probe,
    )


@pytest.mark.asyncio
async def test_failed_entry_with_unreachable_probe_is_still_starting() -> None:
    client = _client_with("failed", "spawn error")
    host = FakeHost()
    report = await _detect(client, host, _probe(None))

    assert report.status is BridgeStatus.DISCONNECTED
    assert report.error == STARTING_BRIDGE_MESSAGE
    assert host.kill_calls == 0
    client.mcp_connect.assert_awaited_once_with(NAME)


@pytest.mark.asyncio
async def test_failed_entry_with_answering_probe_kills_stale_bridge_once() -> None:
    client = _client_with("failed")
    host = FakeHost()
    report = await _detect(client, host, _probe(BridgeHealth(True, True)))

    assert report.status is BridgeStatus.DISCONNECTED
    assert report.error == STALE_BRIDGE_MESSAGE
    assert host.kill_calls == 1
    client.mcp_connect.assert_awaited_once_with(NAME)


@pytest.mark.asyncio
async def test_kill_failure_still_reconnects() -> None:
    client = _client_with("failed")
    host = FakeHost()

    async def broken_kill():
        raise HostError("kill_stale_bridge", "permission denied")

    host.kill_stale_bridge = broken_kill
    report = await _detect(client, host, _probe(BridgeHealth(False, True)))
    assert report.error == STALE_BRIDGE_MESSAGE
    client.mcp_connect.assert_awaited_once_with(NAME)


@pytest.mark.asyncio
async def test_disabled_entry_is_not_probed() -> None:
    probe = _probe(BridgeHealth(True, True))
    report = await _detect(_client_with("disabled"), FakeHost(), probe)
    assert report.status is BridgeStatus.DISABLED
    assert probe.calls == []


@pytest.mark.asyncio
async def test_other_non_ok_entry_reports_its_state() -> None:
    report = await _detect(_client_with("needs_auth"), FakeHost(), _probe(None))
    assert report.status is BridgeStatus.DISCONNECTED
    assert report.error == "needs_auth"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("entry", "health", "expected", "error"),
    [
        ("connected", BridgeHealth(True, True), BridgeStatus.CONNECTED, None),
        ("connected", BridgeHealth(False, True), BridgeStatus.DISCONNECTED, PLUGIN_DETACHED_MESSAGE),
        ("connected", None, BridgeStatus.FAILED, UNREACHABLE_MESSAGE),
        (None, BridgeHealth(True, True), BridgeStatus.CONNECTED, None),
        (None, None, BridgeStatus.FAILED, UNREACHABLE_MESSAGE),
    ],
)
async def test_direct_probe_tiers(entry, health, expected, error) -> None:
    report = await _detect(_client_with(entry), FakeHost(), _probe(health))
    assert report.status is expected
    assert report.error == error


@pytest.mark.asyncio
async def test_mcp_status_failure_falls_back_to_probe() -> None:
    client = make_client()
    client.mcp_status.side_effect = EngineApiError(500, "oops")
    report = await _detect(client, FakeHost(), _probe(BridgeHealth(True, True)))
    assert report.status is BridgeStatus.CONNECTED


@pytest.mark.asyncio
async def test_poll_once_writes_store(store, host) -> None:
    client = _client_with("connected")
    store.set_client(client)
    poller = BridgeHealthPoller(
        store, host, bridge_name=NAME, health_url=URL, probe=_probe(BridgeHealth(True, True)),
    )
    assert await poller.poll_once() is True
    assert store.state.bridge_status is BridgeStatus.CONNECTED


@pytest.mark.asyncio
async def test_poll_once_skips_without_client(store, host) -> None:
    poller = BridgeHealthPoller(store, host, bridge_name=NAME, health_url=URL, probe=_probe(None))
    assert await poller.poll_once() is False
    assert store.state.bridge_status is BridgeStatus.UNKNOWN


@pytest.mark.asyncio
async def test_probes_never_overlap(store, host) -> None:
    release = asyncio.Event()
    calls = []

    async def slow_probe(url, timeout):
        calls.append(url)
        await release.wait()
        return BridgeHealth(True, True)

    store.set_client(_client_with(None))
    poller = BridgeHealthPoller(store, host, bridge_name=NAME, health_url=URL, probe=slow_probe)
    first = asyncio.create_task(poller.poll_once())
    await asyncio.sleep(0.01)
    assert await poller.poll_once() is False
    poller.request_probe()
    release.set()
    assert await first is True
    assert len(calls) == 1
    await poller.wait_stopped()


@pytest.mark.asyncio
async def test_result_for_discarded_client_is_dropped(store, host) -> None:
    release = asyncio.Event()

    async def slow_probe(url, timeout):
        await release.wait()
        return BridgeHealth(True, True)

    store.set_client(_client_with(None))
    poller = BridgeHealthPoller(store, host, bridge_name=NAME, health_url=URL, probe=slow_probe)
    task = asyncio.create_task(poller.poll_once())
    await asyncio.sleep(0.01)
    store.set_client(None)
    release.set()
    await task
    assert store.state.bridge_status is BridgeStatus.UNKNOWN


@pytest.mark.asyncio
async def test_interval_loop_start_and_stop(store, host) -> None:
    store.set_client(_client_with(None))
    probe = _probe(BridgeHealth(True, True))
    poller = BridgeHealthPoller(
        store, host, bridge_name=NAME, health_url=URL, interval=0.01, probe=probe,
    )
    poller.start()
    poller.start()
    await asyncio.sleep(0.05)
    await poller.wait_stopped()
    assert poller.running is False
    assert len(probe.calls) >= 2
    assert store.state.bridge_status is BridgeStatus.CONNECTED


@pytest.mark.asyncio
async def test_restart_bridge(store, host) -> None:
    client = _client_with("connected")
    store.set_client(client)
    poller = BridgeHealthPoller(store, host, bridge_name=NAME, health_url=URL, probe=_probe(None))
    await poller.restart_bridge()
    assert host.shutdown_calls == 1
    client.mcp_disconnect.assert_awaited_once_with(NAME)
    client.mcp_connect.assert_awaited_once_with(NAME)


@pytest.mark.asyncio
async def test_restart_bridge_connect_failure_marks_failed(store, host) -> None:
    client = _client_with("connected")
    client.mcp_connect.side_effect = EngineApiError(500, "cannot spawn")
    store.set_client(client)
    poller = BridgeHealthPoller(store, host, bridge_name=NAME, health_url=URL, probe=_probe(None))
    await poller.restart_bridge()
    assert store.state.bridge_status is BridgeStatus.FAILED
