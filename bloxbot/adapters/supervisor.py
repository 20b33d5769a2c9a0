"""Connection supervisor: engine status -> client -> init -> event stream.

State machine driven by the status the host pushes:

    status != Running, client present  -> discard client (ready=False),
                                          cancel init/stream/poller
    Running, no client                 -> look up workspace dir, build client
                                          (retry forever on a fixed delay)
    client, not ready                  -> init with exponential backoff;
                                          exhausted -> store.init_error
    client, ready                      -> exactly one event subscription
                                          + bridge poller

Every long-lived step runs in its own asyncio.Task owned by this object;
``close()`` cancels all of them.

Stream failures (open error, read error, end of stream) are counted.
Reaching ``degraded_failure_threshold`` consecutive failures shows a
persistent "degraded connection" notice with a Reconnect action; the next
successful open resets the counter and dismisses it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from bloxbot.adapters import notices as notice_keys
from bloxbot.adapters.bridge_poller import BridgeHealthPoller
from bloxbot.adapters.events import dict_to_event
from bloxbot.adapters.host import Host
from bloxbot.adapters.notices import Notice, NoticeBoard, NoticeLevel
from bloxbot.adapters.store import SessionStore
from bloxbot.client.engine_client import EngineClient
from bloxbot.core.config import ClientConfig
from bloxbot.core.errors import EventStreamError
from bloxbot.core.retry import with_retry
from bloxbot.core.status import EngineStatus

logger = logging.getLogger(__name__)

ClientFactory = Callable[[int, str], EngineClient]


def default_client_factory(port: int, directory: str) -> EngineClient:
    return EngineClient(f"http://127.0.0.1:{port}", directory=directory)


class ConnectionSupervisor:
    """Keeps one engine client alive and in sync while the engine runs."""

    def __init__(
        self,
        host: Host,
        store: SessionStore,
        config: ClientConfig,
        notices: NoticeBoard,
        *,
        client_factory: ClientFactory = default_client_factory,
        poller: BridgeHealthPoller | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.host = host
        self.store = store
        self.config = config
        self.notices = notices
        self.client_factory = client_factory
        self.poller = poller or BridgeHealthPoller(
            store,
            host,
            bridge_name=config.bridge_name,
            health_url=config.bridge_health_url,
            interval=config.bridge_poll_interval_seconds,
            probe_timeout=config.bridge_probe_timeout_seconds,
        )
        self._sleep = sleep

        self.status = EngineStatus.stopped()
        self.port = 0
        self.stream_failures = 0
        self._client_port: int | None = None
        self._ever_ready = False
        self._prev_label = "stopped"
        self._disconnect_shown = False
        self._closed = False
        self._unsubscribe: Callable[[], None] | None = None

        self._acquire_task: asyncio.Task[None] | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._closing: set[asyncio.Task[None]] = set()

        store.set_probe_hook(self.poller.request_probe)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Subscribe to pushed status, then pull the current status.

        The pull covers transitions the host pushed before we subscribed.
        """
        self._unsubscribe = self.host.subscribe_status(self.set_status)
        status, port = await self.host.get_status()
        if not self._closed:
            self.set_status(status, port)

    async def close(self) -> None:
        """Cancel every owned task and drop the client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.store.set_probe_hook(None)
        tasks = [t for t in (self._acquire_task, self._init_task, self._stream_task) if t]
        for task in tasks:
            task.cancel()
        await self.poller.wait_stopped()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._acquire_task = self._init_task = self._stream_task = None
        client = self.store.client
        if client is not None:
            self.store.set_client(None)
            await client.close()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("Connection supervisor closed")

    # --- Status ---

    def set_status(self, status: EngineStatus, port: int) -> None:
        """Host status callback. Safe to call repeatedly with the same value."""
        if self._closed:
            return
        if status != self.status or port != self.port:
            logger.info("Engine status %s -> %s (port %d)", self.status, status, port)
        self.status = status
        self.port = port
        self.store.set_server_status(status, port)
        self._track_connection_notices(status.label)
        self._reconcile()

    def _track_connection_notices(self, label: str) -> None:
        prev = self._prev_label
        self._prev_label = label
        if prev == "running" and label != "running" and self._ever_ready:
            self.notices.show(Notice(
                key=notice_keys.DISCONNECTED,
                level=NoticeLevel.ERROR,
                title="Disconnected from OpenCode",
                description="The server stopped unexpectedly. It will restart automatically.",
                persistent=True,
            ))
            self._disconnect_shown = True
        elif prev != "running" and label == "running":
            self.notices.dismiss(notice_keys.DISCONNECTED)
            if self._disconnect_shown:
                self._disconnect_shown = False
                self.notices.show(Notice(
                    key=notice_keys.RECONNECTED,
                    level=NoticeLevel.SUCCESS,
                    title="Reconnected to OpenCode",
                ))

    # --- State machine ---

    def _reconcile(self) -> None:
        if self._closed:
            return
        client = self.store.client

        if not self.status.is_running:
            if self._acquire_task is not None:
                self._acquire_task.cancel()
                self._acquire_task = None
            if client is not None:
                self._discard_client("engine not running")
            return

        if client is not None and self._client_port != self.port:
            self._discard_client(f"engine moved to port {self.port}")
            client = None

        if client is None:
            if self._acquire_task is None:
                self._acquire_task = asyncio.get_running_loop().create_task(self._acquire_client())
            return

        if not self.store.state.ready:
            if self._init_task is None and self.store.state.init_error is None:
                self._start_init()
            return

        if self._stream_task is None:
            self._stream_task = asyncio.get_running_loop().create_task(self._stream_loop(client))
        self.poller.start()

    def _discard_client(self, reason: str) -> None:
        client = self.store.client
        logger.info("Discarding engine client (%s)", reason)
        for task in (self._init_task, self._stream_task):
            if task is not None:
                task.cancel()
        self._init_task = None
        self._stream_task = None
        self.poller.stop()
        self.store.set_client(None)
        self._client_port = None
        if client is not None:
            task = asyncio.get_running_loop().create_task(client.close())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _acquire_client(self) -> None:
        try:
            while self.status.is_running and self.store.client is None:
                port = self.port
                try:
                    directory = await self.host.get_workspace_dir()
                    client = self.client_factory(port, directory)
                except Exception as exc:
                    logger.warning(
                        "Could not create engine client: %s; retrying in %.1fs",
                        exc, self.config.directory_retry_delay_seconds,
                    )
                    await self._sleep(self.config.directory_retry_delay_seconds)
                    continue
                if not self.status.is_running or self.port != port:
                    await client.close()
                    continue
                logger.info("Engine client created for port %d (dir=%s)", port, directory)
                self._client_port = port
                self.store.set_client(client)
        finally:
            if self._acquire_task is asyncio.current_task():
                self._acquire_task = None
        self._reconcile()

    def _start_init(self) -> None:
        generation = self.store.begin_init()
        self._init_task = asyncio.get_running_loop().create_task(self._run_init(generation))

    async def _run_init(self, generation: int) -> None:
        committed = False
        try:
            committed = await with_retry(
                lambda: self.store.init_attempt(generation),
                max_attempts=self.config.init_max_attempts,
                base_delay=self.config.init_base_delay_seconds,
                label="Engine init",
                sleep=self._sleep,
            )
        except Exception as exc:
            self.store.fail_init(generation, exc)
        finally:
            if self._init_task is asyncio.current_task():
                self._init_task = None
        if committed:
            self._ever_ready = True
            self._reconcile()

    def retry_init(self) -> None:
        """Re-run initialization after it exhausted its attempts."""
        if self._closed or self.store.client is None or self.store.state.ready:
            return
        if self._init_task is not None:
            return
        self._start_init()

    def reconnect(self) -> None:
        """Drop the client and event stream; the state machine rebuilds them."""
        if self._closed:
            return
        logger.info("Manual reconnect requested")
        self.stream_failures = 0
        self.notices.dismiss(notice_keys.DEGRADED)
        if self.store.client is not None:
            self._discard_client("manual reconnect")
        self._reconcile()

    # --- Event stream ---

    async def _stream_loop(self, client: EngineClient) -> None:
        try:
            while True:
                try:
                    async with client.event_stream() as events:
                        self._on_stream_open()
                        async for raw in events:
                            self.store.handle_event(dict_to_event(raw))
                    raise EventStreamError("event stream ended")
                except Exception as exc:
                    self._on_stream_failure(exc)
                await self._sleep(self.config.stream_reconnect_delay_seconds)
        finally:
            if self._stream_task is asyncio.current_task():
                self._stream_task = None

    def _on_stream_open(self) -> None:
        if self.stream_failures:
            logger.info("Event stream reconnected after %d failure(s)", self.stream_failures)
        else:
            logger.debug("Event stream connected")
        self.stream_failures = 0
        self.notices.dismiss(notice_keys.DEGRADED)

    def _on_stream_failure(self, exc: Exception) -> None:
        self.stream_failures += 1
        logger.warning(
            "Event stream failure #%d: %s; reopening in %.1fs",
            self.stream_failures, exc, self.config.stream_reconnect_delay_seconds,
        )
        if self.stream_failures == self.config.degraded_failure_threshold:
            self.notices.show(
                Notice(
                    key=notice_keys.DEGRADED,
                    level=NoticeLevel.WARNING,
                    title="Connection degraded",
                    description="Live updates from OpenCode keep dropping.",
                    persistent=True,
                    action_label="Reconnect",
                ),
                action=self.reconnect,
            )
