from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest

from bloxbot.adapters import notices as notice_keys
from bloxbot.adapters.bridge_poller import BridgeHealthPoller
from bloxbot.adapters.notices import NoticeBoard
from bloxbot.adapters.store import SessionStore
from bloxbot.adapters.supervisor import ConnectionSupervisor
from bloxbot.core.config import ClientConfig
from bloxbot.core.errors import EngineUnavailableError
from bloxbot.core.status import EngineStatus
from conftest import FakeHost, make_client

HOLD = "hold"
FAIL = "fail"


class ScriptedStream:
    """Stand-in for ``EngineClient.event_stream``.

    Each open consumes one script step: FAIL raises on open, HOLD stays
    open until cancelled, a list yields those frames and then ends.
    """

    def __init__(self, *script) -> None:
        self.script = list(script)
        self.opens = 0

    def __call__(self):
        return self._open()

    @asynccontextmanager
    async def _open(self):
        self.opens += 1
        step = self.script.pop(0) if self.script else HOLD
        if step == FAIL:
            raise EngineUnavailableError("http://127.0.0.1:4096", "connection refused")
        yield self._frames(step)

    @staticmethod
    async def _frames(step):
        if step == HOLD:
            await asyncio.Event().wait()
        for frame in step:
            yield frame


async def _fast_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _build(tmp_path, client, *, status=None, **config_overrides):
    from bloxbot.shared.services.preferences import PreferencesRepository

    host = FakeHost(status=status or EngineStatus.running())
    store = SessionStore(host, PreferencesRepository(tmp_path / "prefs.json"))
    notices = NoticeBoard()
    shown: list[tuple[str, bool]] = []
    notices.add_listener(lambda notice, is_shown: shown.append((notice.key, is_shown)))
    config = ClientConfig(**config_overrides)
    poller = MagicMock(spec=BridgeHealthPoller)
    supervisor = ConnectionSupervisor(
        host, store, config, notices,
        client_factory=lambda port, directory: client,
        poller=poller,
        sleep=_fast_sleep,
    )
    return supervisor, host, store, notices, shown, poller


@pytest.mark.asyncio
async def test_running_engine_leads_to_ready_stream_and_poller(tmp_path) -> None:
    client = make_client()
    client.event_stream.side_effect = ScriptedStream(HOLD)
    supervisor, host, store, notices, _, poller = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: client.event_stream.side_effect.opens == 1)

    assert store.state.ready is True
    assert store.client is client
    poller.start.assert_called()
    await supervisor.close()
    assert store.client is None
    client.close.assert_awaited()


@pytest.mark.asyncio
async def test_stream_events_reach_the_store(tmp_path) -> None:
    client = make_client()
    frames = [{"type": "session.created", "properties": {"info": {"id": "s1", "time": {"created": 1}}}}]
    client.event_stream.side_effect = ScriptedStream(frames, HOLD)
    supervisor, _, store, _, _, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: any(s.id == "s1" for s in store.state.all_sessions))
    await supervisor.close()


@pytest.mark.asyncio
async def test_failures_below_threshold_then_success_reset_counter(tmp_path) -> None:
    client = make_client()
    stream = ScriptedStream(FAIL, FAIL, HOLD)
    client.event_stream.side_effect = stream
    supervisor, _, _, notices, shown, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: stream.opens == 3)
    await asyncio.sleep(0.01)

    assert supervisor.stream_failures == 0
    assert not notices.is_active(notice_keys.DEGRADED)
    assert (notice_keys.DEGRADED, True) not in shown
    await supervisor.close()


@pytest.mark.asyncio
async def test_degraded_notice_shows_once_at_threshold_and_clears_on_open(tmp_path) -> None:
    client = make_client()
    stream = ScriptedStream(FAIL, FAIL, FAIL, FAIL, FAIL, HOLD)
    client.event_stream.side_effect = stream
    supervisor, _, _, notices, shown, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: stream.opens == 6)
    await asyncio.sleep(0.01)

    assert shown.count((notice_keys.DEGRADED, True)) == 1
    assert (notice_keys.DEGRADED, False) in shown
    assert not notices.is_active(notice_keys.DEGRADED)
    assert supervisor.stream_failures == 0
    await supervisor.close()


@pytest.mark.asyncio
async def test_ended_stream_counts_as_failure(tmp_path) -> None:
    client = make_client()
    stream = ScriptedStream([], [], [], HOLD)
    client.event_stream.side_effect = stream
    supervisor, _, _, notices, shown, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: stream.opens == 4)
    # Each empty stream opened (resetting) and then ended (one failure).
    assert (notice_keys.DEGRADED, True) not in shown
    await supervisor.close()


@pytest.mark.asyncio
async def test_reconnect_action_on_degraded_notice(tmp_path) -> None:
    client = make_client()
    stream = ScriptedStream(FAIL, FAIL, FAIL)

    def _stream():
        if len(stream.script) == 0 and stream.opens >= 3:
            # Keep failing until the user reconnects.
            stream.script.append(FAIL)
        return stream()

    client.event_stream.side_effect = _stream
    supervisor, _, store, notices, _, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: notices.is_active(notice_keys.DEGRADED))
    assert notices.get(notice_keys.DEGRADED).action_label == "Reconnect"

    client.event_stream.side_effect = ScriptedStream(HOLD)
    assert notices.trigger_action(notice_keys.DEGRADED) is True
    assert supervisor.stream_failures == 0
    assert not notices.is_active(notice_keys.DEGRADED)

    await _until(lambda: store.state.ready and client.event_stream.side_effect.opens == 1)
    await supervisor.close()


@pytest.mark.asyncio
async def test_disconnect_notice_only_after_ready(tmp_path) -> None:
    client = make_client()
    client.event_stream.side_effect = ScriptedStream(HOLD, HOLD)
    supervisor, host, store, notices, shown, _ = _build(tmp_path, client)

    await supervisor.start()
    await _until(lambda: store.state.ready)

    host.push(EngineStatus.error("Exited with code 1"))
    assert notices.is_active(notice_keys.DISCONNECTED)
    assert store.state.ready is False
    assert store.client is None

    host.push(EngineStatus.starting())
    host.push(EngineStatus.running())
    assert not notices.is_active(notice_keys.DISCONNECTED)
    assert notices.is_active(notice_keys.RECONNECTED)
    await _until(lambda: store.state.ready)
    await supervisor.close()


@pytest.mark.asyncio
async def test_no_disconnect_notice_before_first_ready(tmp_path) -> None:
    client = make_client()
    supervisor, host, _, notices, shown, _ = _build(
        tmp_path, client, status=EngineStatus.starting(),
    )
    await supervisor.start()
    host.push(EngineStatus.running())
    host.push(EngineStatus.error("boom"))
    host.push(EngineStatus.running())
    assert shown == []
    await supervisor.close()


@pytest.mark.asyncio
async def test_init_exhaustion_sets_error_and_retry_recovers(tmp_path) -> None:
    client = make_client()
    client.list_sessions.side_effect = EngineUnavailableError("http://x", "down")
    client.event_stream.side_effect = ScriptedStream(HOLD)
    supervisor, _, store, _, _, _ = _build(tmp_path, client, init_max_attempts=2)

    await supervisor.start()
    await _until(lambda: store.state.init_error is not None)
    assert client.list_sessions.await_count == 2
    assert store.state.ready is False

    client.list_sessions.side_effect = None
    client.list_sessions.return_value = []
    supervisor.retry_init()
    await _until(lambda: store.state.ready)
    assert store.state.init_error is None
    await supervisor.close()


@pytest.mark.asyncio
async def test_workspace_lookup_is_retried(tmp_path) -> None:
    client = make_client()
    client.event_stream.side_effect = ScriptedStream(HOLD)
    supervisor, host, store, _, _, _ = _build(tmp_path, client)
    host.workspace_failures = 2

    await supervisor.start()
    await _until(lambda: store.state.ready)
    assert host.workspace_failures == 0
    await supervisor.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_ignores_later_status(tmp_path) -> None:
    client = make_client()
    client.event_stream.side_effect = ScriptedStream(HOLD)
    supervisor, host, store, _, _, _ = _build(tmp_path, client)
    await supervisor.start()
    await _until(lambda: store.state.ready)

    await supervisor.close()
    await supervisor.close()
    assert host.callbacks == []
    supervisor.set_status(EngineStatus.running(), 4096)
    assert store.client is None


def _exhausting_init(tmp_path):
    client = make_client()
    client.list_sessions.side_effect = EngineUnavailableError("http://x", "down")
    client.event_stream.side_effect = ScriptedStream(HOLD, HOLD)
    return client, _build(tmp_path, client, init_max_attempts=1)


@pytest.mark.asyncio
async def test_engine_restart_after_init_exhaustion_runs_fresh_init(tmp_path) -> None:
    client, (supervisor, host, store, _, _, _) = _exhausting_init(tmp_path)
    await supervisor.start()
    await _until(lambda: store.state.init_error is not None)

    client.list_sessions.side_effect = None
    client.list_sessions.return_value = []
    host.push(EngineStatus.error("Exited with code 1"))
    assert store.state.init_error is None
    host.push(EngineStatus.starting())
    host.push(EngineStatus.running())

    await _until(lambda: store.state.ready)
    assert store.state.init_error is None
    await supervisor.close()


@pytest.mark.asyncio
async def test_reconnect_after_init_exhaustion_runs_fresh_init(tmp_path) -> None:
    client, (supervisor, _, store, _, _, _) = _exhausting_init(tmp_path)
    await supervisor.start()
    await _until(lambda: store.state.init_error is not None)

    client.list_sessions.side_effect = None
    client.list_sessions.return_value = []
    supervisor.reconnect()

    await _until(lambda: store.state.ready)
    assert store.state.init_error is None
    await supervisor.close()
