"""Event types received on the engine's event stream.

Each event is a ``{"type": ..., "properties": {...}}`` frame, parsed into
a typed dataclass for safe consumption by the store. Unknown types decode
to the base class and are ignored downstream.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bloxbot.shared.models.message import Message, Part, part_from_dict
from bloxbot.shared.models.requests import PermissionRequest, QuestionRequest
from bloxbot.shared.models.session import Session, SessionStatus, Todo

logger = logging.getLogger(__name__)


@dataclass
class EngineEvent:
    """Base event from the engine."""
    event_type: str = ""
    properties: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> EngineEvent:
        return cls(properties=props)


@dataclass
class SessionCreated(EngineEvent):
    event_type: str = "session.created"
    session: Session | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> SessionCreated:
        info = props.get("info")
        return cls(session=Session.from_dict(info) if info else None)


@dataclass
class SessionUpdated(EngineEvent):
    event_type: str = "session.updated"
    session: Session | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> SessionUpdated:
        info = props.get("info")
        return cls(session=Session.from_dict(info) if info else None)


@dataclass
class SessionDeleted(EngineEvent):
    event_type: str = "session.deleted"
    session: Session | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> SessionDeleted:
        info = props.get("info")
        return cls(session=Session.from_dict(info) if info else None)


@dataclass
class SessionStatusChanged(EngineEvent):
    event_type: str = "session.status"
    session_id: str = ""
    status: SessionStatus | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> SessionStatusChanged:
        status = props.get("status")
        return cls(
            session_id=props.get("sessionID", ""),
            status=SessionStatus.from_dict(status) if status else None,
        )


@dataclass
class SessionIdle(EngineEvent):
    event_type: str = "session.idle"
    session_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> SessionIdle:
        return cls(session_id=props.get("sessionID", ""))


@dataclass
class MessageUpdated(EngineEvent):
    event_type: str = "message.updated"
    message: Message | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> MessageUpdated:
        info = props.get("info")
        return cls(message=Message.from_dict(info) if info else None)


@dataclass
class MessagePartUpdated(EngineEvent):
    event_type: str = "message.part.updated"
    part: Part | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> MessagePartUpdated:
        part = props.get("part")
        return cls(part=part_from_dict(part) if part else None)


@dataclass
class MessageRemoved(EngineEvent):
    event_type: str = "message.removed"
    session_id: str = ""
    message_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> MessageRemoved:
        return cls(
            session_id=props.get("sessionID", ""),
            message_id=props.get("messageID", ""),
        )


@dataclass
class MessagePartRemoved(EngineEvent):
    event_type: str = "message.part.removed"
    session_id: str = ""
    message_id: str = ""
    part_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> MessagePartRemoved:
        return cls(
            session_id=props.get("sessionID", ""),
            message_id=props.get("messageID", ""),
            part_id=props.get("partID", ""),
        )


@dataclass
class TodoUpdated(EngineEvent):
    event_type: str = "todo.updated"
    session_id: str = ""
    todos: tuple[Todo, ...] | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> TodoUpdated:
        raw = props.get("todos")
        return cls(
            session_id=props.get("sessionID", ""),
            todos=tuple(Todo.from_dict(t) for t in raw) if isinstance(raw, list) else None,
        )


@dataclass
class QuestionAsked(EngineEvent):
    event_type: str = "question.asked"
    request: QuestionRequest | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> QuestionAsked:
        return cls(request=QuestionRequest.from_dict(props) if props.get("id") else None)


@dataclass
class QuestionReplied(EngineEvent):
    event_type: str = "question.replied"
    session_id: str = ""
    request_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> QuestionReplied:
        return cls(
            session_id=props.get("sessionID", ""),
            request_id=props.get("requestID", ""),
        )


@dataclass
class QuestionRejected(EngineEvent):
    event_type: str = "question.rejected"
    session_id: str = ""
    request_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> QuestionRejected:
        return cls(
            session_id=props.get("sessionID", ""),
            request_id=props.get("requestID", ""),
        )


@dataclass
class PermissionAsked(EngineEvent):
    event_type: str = "permission.asked"
    request: PermissionRequest | None = None

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> PermissionAsked:
        return cls(request=PermissionRequest.from_dict(props) if props.get("id") else None)


@dataclass
class PermissionReplied(EngineEvent):
    event_type: str = "permission.replied"
    session_id: str = ""
    request_id: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> PermissionReplied:
        return cls(
            session_id=props.get("sessionID", ""),
            request_id=props.get("requestID", ""),
        )


@dataclass
class McpToolsChanged(EngineEvent):
    event_type: str = "mcp.tools.changed"
    server: str = ""

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> McpToolsChanged:
        return cls(server=props.get("server", ""))


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "session.created": SessionCreated,
    "session.updated": SessionUpdated,
    "session.deleted": SessionDeleted,
    "session.status": SessionStatusChanged,
    "session.idle": SessionIdle,
    "message.updated": MessageUpdated,
    "message.part.updated": MessagePartUpdated,
    "message.removed": MessageRemoved,
    "message.part.removed": MessagePartRemoved,
    "todo.updated": TodoUpdated,
    "question.asked": QuestionAsked,
    "question.replied": QuestionReplied,
    "question.rejected": QuestionRejected,
    "permission.asked": PermissionAsked,
    "permission.replied": PermissionReplied,
    "mcp.tools.changed": McpToolsChanged,
}


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert a raw stream frame to a typed event dataclass.

    Malformed properties never raise: the frame degrades to a base
    ``EngineEvent`` which the store ignores.
    """
    event_type = data.get("type", "") or ""
    props = data.get("properties")
    if not isinstance(props, dict):
        props = {}
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    try:
        event = cls.from_properties(props)
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning("Malformed %s event ignored: %s", event_type, exc)
        return EngineEvent(event_type=event_type, properties=props)
    event.event_type = event_type
    event.properties = props
    return event
