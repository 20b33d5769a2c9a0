"""Adapters package - keeps the client in sync with the engine.

This package contains the session store and its reducer, the connection
supervisor, the bridge health poller and the notice board that connect
the engine to a UI frontend.
"""
from __future__ import annotations

__all__ = [
    "BridgeHealthPoller",
    "ChangeBus",
    "ConnectionSupervisor",
    "Host",
    "NoticeBoard",
    "SessionStore",
    "StoreState",
]

from bloxbot.adapters.bridge_poller import BridgeHealthPoller
from bloxbot.adapters.event_bus import ChangeBus
from bloxbot.adapters.host import Host
from bloxbot.adapters.notices import NoticeBoard
from bloxbot.adapters.reducer import StoreState
from bloxbot.adapters.store import SessionStore
from bloxbot.adapters.supervisor import ConnectionSupervisor
