"""Exception hierarchy for the bloxbot client core.

Specific exceptions for each failure mode. Transport and startup errors
are retried by the supervisor; user-action errors are logged by the
store and, for auth flows, re-raised to the caller.
"""
from __future__ import annotations

from typing import Any


class BloxbotError(Exception):
    """Base exception for all client-core errors."""


class EngineApiError(BloxbotError):
    """The session engine answered with a non-2xx response."""
    def __init__(self, status: int, body: Any, path: str = ""):
        self.status = status
        self.body = body
        self.path = path
        where = f" on {path}" if path else ""
        super().__init__(f"Engine API error {status}{where}: {body}")


class EngineUnavailableError(BloxbotError):
    """The session engine could not be reached (refused, reset, timeout)."""
    def __init__(self, base_url: str, reason: str):
        self.base_url = base_url
        self.reason = reason
        super().__init__(f"Engine at {base_url} unavailable: {reason}")


class EventStreamError(BloxbotError):
    """The engine event stream ended or produced an unreadable frame."""


class HostError(BloxbotError):
    """A host command (workspace lookup, process control) failed."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Host command '{command}' failed: {reason}")


class PluginInstallError(HostError):
    """Copying the Studio plugin into the Roblox plugins folder failed."""
    def __init__(self, reason: str):
        super().__init__("install_plugin", reason)
