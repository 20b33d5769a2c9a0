"""Core primitives shared by the bloxbot client: config, errors, status."""
from .config import ClientConfig, default_control_port
from .errors import (
    BloxbotError,
    EngineApiError,
    EngineUnavailableError,
    EventStreamError,
    HostError,
    PluginInstallError,
)
from .retry import with_retry
from .status import EngineStatus, StatusKind

__all__ = [
    # Config
    "ClientConfig",
    "default_control_port",
    # Errors
    "BloxbotError",
    "EngineApiError",
    "EngineUnavailableError",
    "EventStreamError",
    "HostError",
    "PluginInstallError",
    # Status
    "EngineStatus",
    "StatusKind",
    "with_retry",
]
