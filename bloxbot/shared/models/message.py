"""Message and part models.

A message owns an ordered list of parts. Parts arrive incrementally over
the event stream and are appended or replaced by id, never reordered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: MessageRole = MessageRole.ASSISTANT
    created: int = 0
    completed: int | None = None
    model_id: str | None = None
    provider_id: str | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        time = data.get("time") or {}
        try:
            role = MessageRole(data.get("role", "assistant"))
        except ValueError:
            role = MessageRole.ASSISTANT
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            role=role,
            created=int(time.get("created") or 0),
            completed=time.get("completed"),
            model_id=data.get("modelID"),
            provider_id=data.get("providerID"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class Part:
    """Base part. Unknown part kinds decode to this class with ``raw`` kept."""
    id: str
    message_id: str
    session_id: str
    type: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class TextPart(Part):
    type: str = "text"
    text: str = ""
    synthetic: bool = False


@dataclass(frozen=True)
class ReasoningPart(Part):
    type: str = "reasoning"
    text: str = ""


class ToolStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ToolState:
    status: ToolStatus = ToolStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    error: str | None = None
    title: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolState:
        try:
            status = ToolStatus(data.get("status", "pending"))
        except ValueError:
            status = ToolStatus.PENDING
        return cls(
            status=status,
            input=data.get("input") or {},
            output=data.get("output"),
            error=data.get("error"),
            title=data.get("title"),
        )


@dataclass(frozen=True)
class ToolPart(Part):
    type: str = "tool"
    tool: str = ""
    call_id: str = ""
    state: ToolState = field(default_factory=ToolState)


@dataclass(frozen=True)
class StepStartPart(Part):
    type: str = "step-start"


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenUsage:
        cache = data.get("cache") or {}
        return cls(
            input=int(data.get("input") or 0),
            output=int(data.get("output") or 0),
            reasoning=int(data.get("reasoning") or 0),
            cache_read=int(cache.get("read") or 0),
            cache_write=int(cache.get("write") or 0),
        )


@dataclass(frozen=True)
class StepFinishPart(Part):
    type: str = "step-finish"
    reason: str = ""
    cost: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class RetryPart(Part):
    type: str = "retry"
    attempt: int = 0
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class CompactionPart(Part):
    type: str = "compaction"
    auto: bool = False


@dataclass(frozen=True)
class SnapshotPart(Part):
    type: str = "snapshot"
    snapshot: str = ""


@dataclass(frozen=True)
class PatchPart(Part):
    type: str = "patch"
    hash: str = ""
    files: tuple[str, ...] = ()


def part_from_dict(data: dict[str, Any]) -> Part:
    """Decode an engine part payload into its typed variant."""
    common = {
        "id": str(data.get("id", "")),
        "message_id": str(data.get("messageID", "")),
        "session_id": str(data.get("sessionID", "")),
        "raw": data,
    }
    kind = data.get("type", "")
    if kind == "text":
        return TextPart(
            **common, text=data.get("text", ""),
            synthetic=bool(data.get("synthetic", False)),
        )
    if kind == "reasoning":
        return ReasoningPart(**common, text=data.get("text", ""))
    if kind == "tool":
        return ToolPart(
            **common,
            tool=data.get("tool", ""),
            call_id=data.get("callID", ""),
            state=ToolState.from_dict(data.get("state") or {}),
        )
    if kind == "step-start":
        return StepStartPart(**common)
    if kind == "step-finish":
        return StepFinishPart(
            **common,
            reason=data.get("reason", ""),
            cost=float(data.get("cost") or 0.0),
            tokens=TokenUsage.from_dict(data.get("tokens") or {}),
        )
    if kind == "retry":
        return RetryPart(
            **common, attempt=int(data.get("attempt") or 0), error=data.get("error"),
        )
    if kind == "compaction":
        return CompactionPart(**common, auto=bool(data.get("auto", False)))
    if kind == "snapshot":
        return SnapshotPart(**common, snapshot=data.get("snapshot", ""))
    if kind == "patch":
        return PatchPart(
            **common, hash=data.get("hash", ""),
            files=tuple(data.get("files") or ()),
        )
    return Part(**common, type=str(kind))


@dataclass(frozen=True)
class MessageWithParts:
    info: Message
    parts: tuple[Part, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageWithParts:
        return cls(
            info=Message.from_dict(data.get("info") or {}),
            parts=tuple(part_from_dict(p) for p in data.get("parts") or ()),
        )
