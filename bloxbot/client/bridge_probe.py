"""Direct probe of the bridge's own /health endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BridgeHealth:
    plugin_connected: bool
    server_active: bool

    @property
    def attached(self) -> bool:
        return self.plugin_connected and self.server_active


async def probe_bridge_health(url: str, timeout: float = 1.0) -> BridgeHealth | None:
    """GET the bridge health URL.

    Returns None when the bridge is unreachable, times out, or answers
    with a non-2xx status or an unreadable body.
    """
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as session:
            async with session.get(url) as resp:
                if resp.status >= 400:
                    logger.debug("Bridge health %s answered %d", url, resp.status)
                    return None
                data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.debug("Bridge health probe failed: %s", exc or type(exc).__name__)
        return None
    if not isinstance(data, dict):
        return None
    return BridgeHealth(
        plugin_connected=bool(data.get("pluginConnected", False)),
        server_active=bool(data.get("mcpServerActive", False)),
    )
