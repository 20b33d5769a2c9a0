"""Host interface: what the core needs from the native process host.

The host owns the engine process, pushes its status, and performs the
filesystem and process operations the client cannot do over HTTP.
``bloxbot.host.local.LocalHost`` is the implementation used by the CLI;
tests use in-memory fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from bloxbot.core.status import EngineStatus

StatusCallback = Callable[[EngineStatus, int], None]


class Host(ABC):
    """Native host contract.

    Status callbacks receive ``(status, port)``. ``subscribe_status``
    returns a callable that removes the subscription.
    """

    @abstractmethod
    def subscribe_status(self, callback: StatusCallback) -> Callable[[], None]:
        ...

    @abstractmethod
    async def get_status(self) -> tuple[EngineStatus, int]:
        ...

    @abstractmethod
    async def get_workspace_dir(self) -> str:
        """Directory the engine client is scoped to."""

    @abstractmethod
    async def check_plugin_installed(self) -> bool:
        ...

    @abstractmethod
    async def install_plugin(self) -> str:
        """Copy the bundled Studio plugin into place; returns the installed path."""

    @abstractmethod
    async def kill_stale_bridge(self) -> None:
        """Terminate a leftover bridge process squatting on the bridge port."""

    @abstractmethod
    async def shutdown_bridge(self) -> None:
        """Ask the bridge's process control server to shut the bridge down."""

    @abstractmethod
    async def get_bridge_url(self) -> str | None:
        ...
