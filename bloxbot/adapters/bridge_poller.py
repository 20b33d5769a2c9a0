"""Studio bridge health detection and polling.

Two independent signals describe the bridge: the engine's view of its MCP
servers, and the bridge's own ``/health`` endpoint. They can disagree.
The classic case is a leftover bridge from a previous run still holding
the port: the engine reports its freshly spawned bridge as ``failed``
while ``/health`` answers fine. ``detect_bridge_status`` reconciles the
two in priority order:

    engine entry      direct probe        result
    ---------------   -----------------   ------------------------------
    failed            answers             kill stale, reconnect -> disconnected
    failed            unreachable         reconnect -> disconnected
    disabled          (not probed)        disabled
    other non-ok      (not probed)        disconnected (state label)
    connected / none  unreachable         failed
    connected / none  plugin detached     disconnected
    connected / none  attached            connected
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from bloxbot.adapters.host import Host
from bloxbot.adapters.store import SessionStore
from bloxbot.client.bridge_probe import BridgeHealth, probe_bridge_health
from bloxbot.client.engine_client import EngineClient
from bloxbot.shared.models.catalog import BridgeStatus

logger = logging.getLogger(__name__)

Probe = Callable[[str, float], Awaitable[BridgeHealth | None]]

STALE_BRIDGE_MESSAGE = "Studio bridge lost, reconnecting"
STARTING_BRIDGE_MESSAGE = "Studio bridge is still starting"
UNREACHABLE_MESSAGE = "Studio bridge is not responding"
PLUGIN_DETACHED_MESSAGE = "Roblox Studio plugin is not connected"


@dataclass(frozen=True)
class BridgeReport:
    status: BridgeStatus
    error: str | None = None


async def detect_bridge_status(
    client: EngineClient,
    host: Host,
    *,
    bridge_name: str,
    health_url: str,
    probe_timeout: float = 1.0,
    probe: Probe = probe_bridge_health,
) -> BridgeReport:
    """Work out the bridge status from the engine and a direct probe."""
    try:
        statuses = await client.mcp_status()
    except Exception as exc:
        logger.debug("MCP status unavailable, falling back to direct probe: %s", exc)
        statuses = None

    entry = statuses.get(bridge_name) if statuses else None
    if entry is not None:
        if entry.status == "failed":
            health = await probe(health_url, probe_timeout)
            if health is not None:
                logger.warning(
                    "Bridge '%s' failed but %s answers; killing stale bridge process",
                    bridge_name, health_url,
                )
                try:
                    await host.kill_stale_bridge()
                except Exception:
                    logger.error("Failed to kill stale bridge", exc_info=True)
                await _connect(client, bridge_name)
                return BridgeReport(BridgeStatus.DISCONNECTED, STALE_BRIDGE_MESSAGE)
            await _connect(client, bridge_name)
            return BridgeReport(BridgeStatus.DISCONNECTED, STARTING_BRIDGE_MESSAGE)
        if entry.status == "disabled":
            return BridgeReport(BridgeStatus.DISABLED)
        if entry.status != "connected":
            return BridgeReport(BridgeStatus.DISCONNECTED, entry.error or entry.status)

    health = await probe(health_url, probe_timeout)
    if health is None:
        return BridgeReport(BridgeStatus.FAILED, UNREACHABLE_MESSAGE)
    if not health.attached:
        return BridgeReport(BridgeStatus.DISCONNECTED, PLUGIN_DETACHED_MESSAGE)
    return BridgeReport(BridgeStatus.CONNECTED)


async def _connect(client: EngineClient, name: str) -> None:
    try:
        await client.mcp_connect(name)
    except Exception as exc:
        logger.warning("Asking engine to connect '%s' failed: %s", name, exc)


class BridgeHealthPoller:
    """Runs ``detect_bridge_status`` on an interval and writes the store.

    Probes never overlap: a tick that finds a probe in flight is a no-op.
    """

    def __init__(
        self,
        store: SessionStore,
        host: Host,
        *,
        bridge_name: str,
        health_url: str,
        interval: float = 0.5,
        probe_timeout: float = 1.0,
        probe: Probe = probe_bridge_health,
    ) -> None:
        self.store = store
        self.host = host
        self.bridge_name = bridge_name
        self.health_url = health_url
        self.interval = interval
        self.probe_timeout = probe_timeout
        self._probe = probe
        self._loop_task: asyncio.Task[None] | None = None
        self._oob_task: asyncio.Task[None] | None = None
        self._in_flight = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.debug("Bridge poller started (every %.1fs)", self.interval)
        self._loop_task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        for task in (self._loop_task, self._oob_task):
            if task is not None and not task.done():
                task.cancel()
        if self._loop_task is not None:
            logger.debug("Bridge poller stopped")
        self._loop_task = None
        self._oob_task = None
        self._in_flight = False

    async def wait_stopped(self) -> None:
        tasks = [t for t in (self._loop_task, self._oob_task) if t is not None]
        self.stop()
        await asyncio.gather(*tasks, return_exceptions=True)

    def request_probe(self) -> None:
        """Run one probe now, out of band (on ``mcp.tools.changed``)."""
        if self._in_flight or (self._oob_task is not None and not self._oob_task.done()):
            return
        self._oob_task = asyncio.get_running_loop().create_task(self.poll_once())

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> bool:
        """Probe once. Returns False if skipped (in flight or no client)."""
        client = self.store.client
        if self._in_flight or client is None:
            return False
        self._in_flight = True
        try:
            report = await detect_bridge_status(
                client,
                self.host,
                bridge_name=self.bridge_name,
                health_url=self.health_url,
                probe_timeout=self.probe_timeout,
                probe=self._probe,
            )
        except Exception:
            logger.error("Bridge status detection failed", exc_info=True)
            return True
        finally:
            self._in_flight = False
        if self.store.client is client:
            self.store.update_bridge_status(report.status, report.error)
        return True

    async def restart_bridge(self) -> None:
        """Shut the bridge down and have the engine bring it back."""
        client = self.store.client
        if client is None:
            return
        self.store.update_bridge_status(BridgeStatus.UNKNOWN, None)
        try:
            await self.host.shutdown_bridge()
        except Exception as exc:
            logger.warning("Bridge shutdown via control endpoint failed: %s", exc)
        try:
            await client.mcp_disconnect(self.bridge_name)
        except Exception as exc:
            logger.debug("Bridge disconnect failed (may already be down): %s", exc)
        try:
            await client.mcp_connect(self.bridge_name)
        except Exception as exc:
            logger.error("Failed to restart bridge: %s", exc)
            self.store.update_bridge_status(BridgeStatus.FAILED, str(exc))
            return
        logger.info("Bridge '%s' restarted", self.bridge_name)
