"""Session, session status and todo models as reported by the engine.

Timestamps are epoch milliseconds, exactly as the engine sends them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass
class Session:
    id: str
    title: str = ""
    created: int = 0
    updated: int = 0
    parent_id: str | None = None
    directory: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        time = data.get("time") or {}
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            created=int(time.get("created") or 0),
            updated=int(time.get("updated") or time.get("created") or 0),
            parent_id=data.get("parentID"),
            directory=data.get("directory"),
        )


class SessionStatusType(Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"


@dataclass(frozen=True)
class SessionStatus:
    type: SessionStatusType = SessionStatusType.IDLE
    attempt: int | None = None
    message: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.type is SessionStatusType.BUSY

    @classmethod
    def idle(cls) -> SessionStatus:
        return cls(SessionStatusType.IDLE)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionStatus:
        raw = data.get("type", "idle")
        try:
            kind = SessionStatusType(raw)
        except ValueError:
            kind = SessionStatusType.IDLE
        return cls(type=kind, attempt=data.get("attempt"), message=data.get("message"))


class TodoStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Todo:
    id: str
    content: str
    status: TodoStatus = TodoStatus.PENDING
    priority: str = "medium"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Todo:
        try:
            status = TodoStatus(data.get("status", "pending"))
        except ValueError:
            status = TodoStatus.PENDING
        return cls(
            id=str(data.get("id", "")),
            content=data.get("content", ""),
            status=status,
            priority=data.get("priority", "medium"),
        )
