"""Engine process status as pushed by the host.

The host reports one of four states. Only ``Error`` carries data:

    Stopped ──> Starting ──┬──> Running ──> Error(msg) ──> Starting ...
                           │
                           └──> Error(msg)
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StatusKind(Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    ERROR = "Error"


@dataclass(frozen=True)
class EngineStatus:
    kind: StatusKind
    message: str | None = None

    @classmethod
    def stopped(cls) -> EngineStatus:
        return cls(StatusKind.STOPPED)

    @classmethod
    def starting(cls) -> EngineStatus:
        return cls(StatusKind.STARTING)

    @classmethod
    def running(cls) -> EngineStatus:
        return cls(StatusKind.RUNNING)

    @classmethod
    def error(cls, message: str) -> EngineStatus:
        return cls(StatusKind.ERROR, message)

    @property
    def is_running(self) -> bool:
        return self.kind is StatusKind.RUNNING

    @property
    def label(self) -> str:
        """Coarse label used for disconnect/reconnect bookkeeping."""
        if self.kind is StatusKind.RUNNING:
            return "running"
        if self.kind is StatusKind.STARTING:
            return "starting"
        if self.kind is StatusKind.ERROR:
            return "error"
        return "stopped"

    def __str__(self) -> str:
        if self.kind is StatusKind.ERROR:
            return f"Error({self.message})"
        return self.kind.value
