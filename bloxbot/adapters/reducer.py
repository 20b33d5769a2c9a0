"""Store state snapshot and the pure event-application function.

``apply_event(state, event)`` never mutates its input: changed containers
are copied, untouched ones are shared with the previous snapshot, and an
event with no effect returns the very same state object. That identity
is what lets the store skip notifying observers for no-op events.

Session-scoped events only touch state when they belong to the active
session; the one exception is ``session.status``/``session.idle``, which
always update the per-session status map.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace

from bloxbot.adapters.events import (
    EngineEvent,
    MessagePartRemoved,
    MessagePartUpdated,
    MessageRemoved,
    MessageUpdated,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    QuestionRejected,
    QuestionReplied,
    SessionCreated,
    SessionDeleted,
    SessionIdle,
    SessionStatusChanged,
    SessionUpdated,
    TodoUpdated,
)
from bloxbot.core.status import EngineStatus
from bloxbot.shared.models.catalog import (
    AgentInfo,
    AuthMethod,
    BridgeStatus,
    ModelInfo,
    ProviderInfo,
    split_model_key,
)
from bloxbot.shared.models.message import MessageWithParts, Part
from bloxbot.shared.models.requests import PermissionRequest, QuestionRequest
from bloxbot.shared.models.session import Session, SessionStatus, Todo


@dataclass(frozen=True)
class StoreState:
    # Connection
    status: EngineStatus = field(default_factory=EngineStatus.stopped)
    port: int = 0
    server_error: str | None = None

    # First run; None until loaded from disk
    has_launched: bool | None = None

    # Init
    ready: bool = False
    init_error: str | None = None
    init_generation: int = 0

    # Sessions
    all_sessions: tuple[Session, ...] = ()
    active_session: Session | None = None
    session_statuses: dict[str, SessionStatus] = field(default_factory=dict)
    own_session_ids: frozenset[str] = frozenset()
    show_all_sessions: bool = False

    # Messages of the active session
    message_ids: tuple[str, ...] = ()
    messages_by_id: dict[str, MessageWithParts] = field(default_factory=dict)
    is_busy: bool = False

    # Active-session extras
    todos: tuple[Todo, ...] = ()
    active_question: QuestionRequest | None = None
    active_permission: PermissionRequest | None = None

    # Catalogs
    providers: tuple[ProviderInfo, ...] = ()
    models: tuple[ModelInfo, ...] = ()
    connected_providers: tuple[str, ...] = ()
    auth_methods: dict[str, tuple[AuthMethod, ...]] = field(default_factory=dict)
    agents: tuple[AgentInfo, ...] = ()

    # Studio plugin / bridge
    plugin_installed: bool | None = None
    bridge_status: BridgeStatus = BridgeStatus.UNKNOWN
    bridge_error: str | None = None
    bridge_url: str | None = None

    # Preferences
    selected_model: str | None = None
    session_models: dict[str, str] = field(default_factory=dict)
    selected_agent: str | None = None
    selected_variant: str | None = None
    hidden_models: frozenset[str] = frozenset()

    @property
    def active_session_id(self) -> str | None:
        return self.active_session.id if self.active_session else None


def cleared_session_view(state: StoreState) -> StoreState:
    """State with the active-session view emptied."""
    return replace(
        state,
        active_session=None,
        message_ids=(),
        messages_by_id={},
        todos=(),
        active_question=None,
        active_permission=None,
        is_busy=False,
    )


def _upsert_part(parts: tuple[Part, ...], part: Part) -> tuple[Part, ...]:
    for idx, existing in enumerate(parts):
        if existing.id == part.id:
            return parts[:idx] + (part,) + parts[idx + 1:]
    return parts + (part,)


def apply_event(state: StoreState, event: EngineEvent) -> StoreState:
    """Apply one engine event to a snapshot and return the next snapshot."""
    active_id = state.active_session_id

    if isinstance(event, SessionCreated):
        session = event.session
        if session is None or any(s.id == session.id for s in state.all_sessions):
            return state
        return replace(state, all_sessions=(session,) + state.all_sessions)

    if isinstance(event, SessionUpdated):
        session = event.session
        if session is None:
            return state
        if any(s.id == session.id for s in state.all_sessions):
            sessions = tuple(session if s.id == session.id else s for s in state.all_sessions)
        else:
            sessions = (session,) + state.all_sessions
        active = session if session.id == active_id else state.active_session
        return replace(state, all_sessions=sessions, active_session=active)

    if isinstance(event, SessionDeleted):
        session = event.session
        if session is None:
            return state
        sessions = tuple(s for s in state.all_sessions if s.id != session.id)
        statuses = state.session_statuses
        if session.id in statuses:
            statuses = {k: v for k, v in statuses.items() if k != session.id}
        if len(sessions) == len(state.all_sessions) and session.id != active_id:
            return state if statuses is state.session_statuses else replace(
                state, session_statuses=statuses
            )
        next_state = replace(state, all_sessions=sessions, session_statuses=statuses)
        if session.id == active_id:
            next_state = cleared_session_view(next_state)
        return next_state

    if isinstance(event, SessionStatusChanged):
        if not event.session_id or event.status is None:
            return state
        return _with_session_status(state, event.session_id, event.status)

    if isinstance(event, SessionIdle):
        if not event.session_id:
            return state
        return _with_session_status(state, event.session_id, SessionStatus.idle())

    if isinstance(event, MessageUpdated):
        info = event.message
        if info is None or active_id is None or info.session_id != active_id:
            return state
        existing = state.messages_by_id.get(info.id)
        by_id = dict(state.messages_by_id)
        if existing is not None:
            by_id[info.id] = replace(existing, info=info)
            return replace(state, messages_by_id=by_id)
        by_id[info.id] = MessageWithParts(info=info, parts=())
        return replace(state, message_ids=state.message_ids + (info.id,), messages_by_id=by_id)

    if isinstance(event, MessagePartUpdated):
        part = event.part
        if part is None or active_id is None or part.session_id != active_id:
            return state
        msg = state.messages_by_id.get(part.message_id)
        if msg is None:
            return state
        by_id = dict(state.messages_by_id)
        by_id[part.message_id] = replace(msg, parts=_upsert_part(msg.parts, part))
        return replace(state, messages_by_id=by_id)

    if isinstance(event, MessageRemoved):
        if active_id is None or event.session_id != active_id or not event.message_id:
            return state
        if event.message_id not in state.messages_by_id:
            return state
        by_id = {k: v for k, v in state.messages_by_id.items() if k != event.message_id}
        ids = tuple(i for i in state.message_ids if i != event.message_id)
        return replace(state, message_ids=ids, messages_by_id=by_id)

    if isinstance(event, MessagePartRemoved):
        if active_id is None or event.session_id != active_id or not event.message_id:
            return state
        msg = state.messages_by_id.get(event.message_id)
        if msg is None:
            return state
        parts = tuple(p for p in msg.parts if p.id != event.part_id)
        if len(parts) == len(msg.parts):
            return state
        by_id = dict(state.messages_by_id)
        by_id[event.message_id] = replace(msg, parts=parts)
        return replace(state, messages_by_id=by_id)

    if isinstance(event, TodoUpdated):
        if active_id is None or event.session_id != active_id or event.todos is None:
            return state
        return replace(state, todos=event.todos)

    if isinstance(event, QuestionAsked):
        request = event.request
        if request is None or active_id is None or request.session_id != active_id:
            return state
        return replace(state, active_question=request)

    if isinstance(event, (QuestionReplied, QuestionRejected)):
        if active_id is None or event.session_id != active_id or state.active_question is None:
            return state
        return replace(state, active_question=None)

    if isinstance(event, PermissionAsked):
        request = event.request
        if request is None or active_id is None or request.session_id != active_id:
            return state
        return replace(state, active_permission=request)

    if isinstance(event, PermissionReplied):
        if active_id is None or event.session_id != active_id or state.active_permission is None:
            return state
        return replace(state, active_permission=None)

    return state


def _with_session_status(state: StoreState, session_id: str, status: SessionStatus) -> StoreState:
    prev = state.session_statuses.get(session_id)
    busy = status.is_busy if session_id == state.active_session_id else state.is_busy
    if prev is not None and prev.type is status.type and busy == state.is_busy:
        return state
    statuses = dict(state.session_statuses)
    statuses[session_id] = status
    return replace(state, session_statuses=statuses, is_busy=busy)


# --- Selectors ---


def visible_sessions(state: StoreState) -> tuple[Session, ...]:
    """Own sessions, or every session when show-all is on."""
    if state.show_all_sessions:
        return state.all_sessions
    return tuple(s for s in state.all_sessions if s.id in state.own_session_ids)


def available_variants(state: StoreState) -> list[str]:
    """Variant names of the currently selected model."""
    if not state.selected_model:
        return []
    split = split_model_key(state.selected_model)
    if split is None:
        return []
    provider_id, model_id = split
    for model in state.models:
        if model.id == model_id and model.provider_id == provider_id:
            return list(model.variants)
    return []


def message_list(state: StoreState) -> list[MessageWithParts]:
    """Messages of the active session in arrival order."""
    return [state.messages_by_id[i] for i in state.message_ids if i in state.messages_by_id]


def visible_models(state: StoreState) -> list[ModelInfo]:
    """Models of connected providers that are not hidden."""
    connected = set(state.connected_providers)
    return [
        m for m in state.models
        if m.provider_id in connected and m.key not in state.hidden_models
    ]
