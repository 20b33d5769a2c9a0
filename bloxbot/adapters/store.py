"""Session/event state store.

One ``SessionStore`` is constructed per client run and handed to the
connection supervisor, the bridge poller and the UI. It owns the current
``StoreState`` snapshot and three kinds of writers:

- ``handle_event`` applies stream events through the pure reducer;
- the init path (``begin_init`` / ``init_attempt`` / ``fail_init``),
  guarded by a generation counter so that at most one initialization's
  results are committed;
- user actions, which call the engine, reconcile locally, and on failure
  log and revert any optimistic flags.

Optimistic busy protocol: ``send_message`` sets ``is_busy`` before the
engine confirms anything and arms a watchdog. A ``session.status`` or
``session.idle`` event for the active session disarms it; if the
watchdog fires first, busy is cleared so the UI never stays stuck.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

from bloxbot.adapters.event_bus import ChangeBus
from bloxbot.adapters.events import (
    EngineEvent,
    McpToolsChanged,
    SessionIdle,
    SessionStatusChanged,
)
from bloxbot.adapters.host import Host
from bloxbot.adapters.reducer import StoreState, apply_event, cleared_session_view
from bloxbot.client.engine_client import EngineClient
from bloxbot.core.status import EngineStatus
from bloxbot.shared.models.catalog import (
    BridgeStatus,
    OAuthAuthorization,
    ProviderCatalog,
    split_model_key,
)
from bloxbot.shared.models.requests import PERMISSION_REPLIES
from bloxbot.shared.services.preferences import PreferencesRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")
StateListener = Callable[[StoreState], None]


async def _optional(label: str, coro: Awaitable[T]) -> T | None:
    """Await an optional fetch; failure means "no data"."""
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.debug("Optional fetch %s failed: %s", label, exc)
        return None


def pick_initial_model(
    last_model: str | None,
    connected: tuple[str, ...],
    defaults: dict[str, str],
) -> str | None:
    """Model priority: last-used if its provider is connected, else the
    first engine default belonging to a connected provider, else none."""
    if last_model:
        split = split_model_key(last_model)
        if split is not None and split[0] in connected:
            return last_model
    for provider_id, model_id in defaults.items():
        if provider_id in connected:
            return f"{provider_id}/{model_id}"
    return None


class SessionStore:
    """Normalized, subscribable snapshot of the engine's state."""

    def __init__(
        self,
        host: Host,
        preferences: PreferencesRepository,
        *,
        busy_timeout_seconds: float = 30.0,
        bus: ChangeBus[StoreState] | None = None,
    ) -> None:
        self.host = host
        self.preferences = preferences
        self.busy_timeout_seconds = busy_timeout_seconds
        self.bus = bus
        self.client: EngineClient | None = None
        self._state = StoreState()
        self._listeners: list[StateListener] = []
        self._probe_hook: Callable[[], None] | None = None
        self._busy_watchdog: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def state(self) -> StoreState:
        return self._state

    # --- Notification ---

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register an observer called with every committed snapshot."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, next_state: StoreState) -> None:
        if next_state is self._state:
            return
        if self._closed:
            logger.debug("Store closed; dropping state update")
            return
        self._state = next_state
        for listener in list(self._listeners):
            try:
                listener(next_state)
            except Exception:
                logger.exception("Store listener failed")
        if self.bus is not None:
            self.bus.publish(next_state)

    def _update(self, **changes: Any) -> None:
        self._commit(replace(self._state, **changes))

    def close(self) -> None:
        """Stop accepting updates. Idempotent."""
        self._disarm_busy_watchdog()
        self._closed = True
        if self.bus is not None:
            self.bus.close()

    # --- Connection ---

    def set_server_status(self, status: EngineStatus, port: int) -> None:
        self._update(status=status, port=port, server_error=status.message)

    def set_client(self, client: EngineClient | None) -> None:
        """Install or discard the engine client.

        Discarding bumps the init generation so in-flight init attempts
        for the old client can never commit. Either way the previous
        init error is cleared so the next client gets a fresh init.
        """
        self.client = client
        if client is None:
            self._disarm_busy_watchdog()
            self._update(
                ready=False,
                is_busy=False,
                active_question=None,
                active_permission=None,
                init_error=None,
                init_generation=self._state.init_generation + 1,
            )
        elif self._state.init_error is not None:
            self._update(init_error=None)

    def set_probe_hook(self, hook: Callable[[], None] | None) -> None:
        """Called once per ``mcp.tools.changed`` event (the bridge poller)."""
        self._probe_hook = hook

    def update_bridge_status(self, status: BridgeStatus, error: str | None = None) -> None:
        """Write bridge status. Only the bridge health poller calls this."""
        if status is self._state.bridge_status and error == self._state.bridge_error:
            return
        if status is BridgeStatus.CONNECTED and self._state.bridge_status is not BridgeStatus.CONNECTED:
            logger.info("Studio bridge connected")
        self._update(bridge_status=status, bridge_error=error)

    # --- Init ---

    def begin_init(self) -> int:
        """Start a new initialization; returns its generation."""
        generation = self._state.init_generation + 1
        self._update(init_generation=generation, init_error=None)
        return generation

    def is_current(self, generation: int) -> bool:
        return self._state.init_generation == generation and not self._closed

    async def init_attempt(self, generation: int) -> bool:
        """Run one initialization attempt.

        Returns True when results were committed, False when the attempt
        went stale (a newer init started or the client was discarded).
        Raises when a required fetch fails so the caller can retry.
        """
        client = self.client
        if client is None or not self.is_current(generation):
            return False

        sessions, catalog, statuses, agents, auth_methods = await asyncio.gather(
            client.list_sessions(),
            client.list_providers(),
            client.session_statuses(),
            _optional("agents", client.list_agents()),
            _optional("auth methods", client.provider_auth_methods()),
        )
        if not self.is_current(generation):
            logger.debug("Init generation %d stale after fetch; discarding", generation)
            return False

        plugin_installed, bridge_url = await asyncio.gather(
            self._safe_plugin_check(),
            _optional("bridge url", self.host.get_bridge_url()),
        )
        persisted = self.preferences.load_all()
        if not self.is_current(generation):
            logger.debug("Init generation %d stale after local load; discarding", generation)
            return False

        state = self._state
        changes: dict[str, Any] = {
            "ready": True,
            "init_error": None,
            "all_sessions": tuple(sorted(sessions, key=lambda s: s.created, reverse=True)),
            "session_statuses": statuses,
            "own_session_ids": frozenset(persisted.own_session_ids),
            "hidden_models": frozenset(persisted.hidden_models),
            "has_launched": persisted.has_launched,
            "session_models": dict(persisted.session_models),
            "plugin_installed": plugin_installed,
            "bridge_url": bridge_url,
        }
        changes.update(self._catalog_changes(catalog))
        if auth_methods is not None:
            changes["auth_methods"] = auth_methods
        if agents is not None:
            changes["agents"] = tuple(agents)
            if not state.selected_agent:
                primary = next((a for a in agents if a.is_primary and not a.hidden), None)
                if primary is not None:
                    changes["selected_agent"] = primary.name
        changes["selected_model"] = pick_initial_model(
            persisted.last_model, catalog.connected, catalog.defaults,
        )

        self._commit(replace(state, **changes))
        logger.info(
            "Init generation %d committed: %d sessions, %d models, %d connected providers",
            generation, len(sessions), len(catalog.models), len(catalog.connected),
        )
        return True

    def fail_init(self, generation: int, error: BaseException) -> None:
        """Record an exhausted init. Ignored when the generation is stale."""
        if not self.is_current(generation):
            return
        logger.error("Failed to initialize: %s", error)
        self._update(init_error=str(error) or type(error).__name__)

    async def _safe_plugin_check(self) -> bool:
        try:
            return await self.host.check_plugin_installed()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Plugin check failed: %s", exc)
            return False

    @staticmethod
    def _catalog_changes(catalog: ProviderCatalog) -> dict[str, Any]:
        return {
            "providers": catalog.providers,
            "models": catalog.models,
            "connected_providers": catalog.connected,
        }

    # --- Events ---

    def handle_event(self, event: EngineEvent) -> None:
        active_id = self._state.active_session_id
        if isinstance(event, (SessionStatusChanged, SessionIdle)) and event.session_id == active_id:
            self._disarm_busy_watchdog()
        if isinstance(event, McpToolsChanged):
            if self._probe_hook is not None:
                self._probe_hook()
            return
        self._commit(apply_event(self._state, event))

    # --- Busy watchdog ---

    def _arm_busy_watchdog(self) -> None:
        self._disarm_busy_watchdog()
        if self.busy_timeout_seconds <= 0:
            return
        session_id = self._state.active_session_id
        self._busy_watchdog = asyncio.get_running_loop().create_task(
            self._busy_watchdog_loop(session_id, self.busy_timeout_seconds)
        )

    def _disarm_busy_watchdog(self) -> None:
        task = self._busy_watchdog
        self._busy_watchdog = None
        if task is not None and not task.done():
            task.cancel()

    async def _busy_watchdog_loop(self, session_id: str | None, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self._busy_watchdog = None
        state = self._state
        if state.is_busy and state.active_session_id == session_id:
            logger.warning(
                "No status event for session %s within %.0fs of sending; clearing busy",
                session_id, timeout,
            )
            self._update(is_busy=False)

    # --- Sessions ---

    async def create_session(self) -> None:
        client = self.client
        if client is None:
            return
        try:
            session = await client.create_session()
        except Exception:
            logger.error("Failed to create session", exc_info=True)
            return
        own_ids = self._state.own_session_ids | {session.id}
        self.preferences.save_field("own_session_ids", own_ids)
        session_models = self._state.session_models
        if self._state.selected_model:
            session_models = {**session_models, session.id: self._state.selected_model}
            self.preferences.save_field("session_models", session_models)

        state = self._state
        sessions = state.all_sessions
        if not any(s.id == session.id for s in sessions):
            sessions = (session,) + sessions
        self._commit(replace(
            cleared_session_view(state),
            own_session_ids=own_ids,
            session_models=session_models,
            all_sessions=sessions,
            active_session=session,
        ))
        logger.info("Created session %s", session.id)

    async def select_session(self, session_id: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            session, messages = await asyncio.gather(
                client.get_session(session_id),
                client.session_messages(session_id),
            )
        except Exception:
            logger.error("Failed to select session %s", session_id, exc_info=True)
            return

        todos = await _optional("todos", client.session_todos(session_id))
        questions = await _optional("questions", client.list_questions())
        permissions = await _optional("permissions", client.list_permissions())
        if self.client is not client:
            return

        state = self._state
        status = state.session_statuses.get(session_id)
        changes: dict[str, Any] = {
            "active_session": session,
            "message_ids": tuple(m.info.id for m in messages),
            "messages_by_id": {m.info.id: m for m in messages},
            "todos": tuple(todos or ()),
            "active_question": next(
                (q for q in questions or () if q.session_id == session_id), None
            ),
            "active_permission": next(
                (p for p in permissions or () if p.session_id == session_id), None
            ),
            "is_busy": bool(status and status.is_busy),
        }
        saved_model = state.session_models.get(session_id)
        if saved_model:
            changes["selected_model"] = saved_model
        self._disarm_busy_watchdog()
        self._commit(replace(state, **changes))

    async def delete_session(self, session_id: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            await client.delete_session(session_id)
        except Exception:
            logger.error("Failed to delete session %s", session_id, exc_info=True)
            return
        state = self._state
        own_ids = state.own_session_ids - {session_id}
        self.preferences.save_field("own_session_ids", own_ids)
        session_models = {k: v for k, v in state.session_models.items() if k != session_id}
        self.preferences.save_field("session_models", session_models)

        next_state = replace(
            state,
            own_session_ids=own_ids,
            session_models=session_models,
            all_sessions=tuple(s for s in state.all_sessions if s.id != session_id),
        )
        if state.active_session_id == session_id:
            self._disarm_busy_watchdog()
            next_state = cleared_session_view(next_state)
        self._commit(next_state)

    async def rename_session(self, session_id: str, title: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            updated = await client.update_session(session_id, title=title)
        except Exception:
            logger.error("Failed to rename session %s", session_id, exc_info=True)
            return
        state = self._state
        self._commit(replace(
            state,
            all_sessions=tuple(updated if s.id == session_id else s for s in state.all_sessions),
            active_session=updated if state.active_session_id == session_id else state.active_session,
        ))

    def set_show_all_sessions(self, show: bool) -> None:
        self._update(show_all_sessions=show)

    # --- Messages ---

    async def send_message(self, text: str) -> None:
        client = self.client
        state = self._state
        if client is None or state.active_session is None:
            return
        session_id = state.active_session.id
        self._update(is_busy=True, todos=())
        self._arm_busy_watchdog()
        try:
            await client.prompt_async(
                session_id,
                [{"type": "text", "text": text}],
                model=state.selected_model,
                agent=state.selected_agent,
                variant=state.selected_variant,
            )
        except Exception:
            logger.error("Failed to send message to %s", session_id, exc_info=True)
            self._disarm_busy_watchdog()
            self._update(is_busy=False)

    async def abort(self) -> None:
        client = self.client
        state = self._state
        if client is None or state.active_session is None:
            return
        try:
            await client.abort_session(state.active_session.id)
        except Exception:
            logger.error("Failed to abort", exc_info=True)
        finally:
            self._disarm_busy_watchdog()
            self._update(is_busy=False)

    # --- Questions / permissions ---

    async def answer_question(self, request_id: str, answers: list[list[str]]) -> None:
        client = self.client
        if client is None:
            return
        try:
            await client.reply_question(request_id, answers)
        except Exception:
            logger.error("Failed to answer question %s", request_id, exc_info=True)
            return
        self._update(active_question=None)

    async def reject_question(self, request_id: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            await client.reject_question(request_id)
        except Exception:
            logger.error("Failed to reject question %s", request_id, exc_info=True)
            return
        self._update(active_question=None)

    async def reply_permission(self, request_id: str, reply: str) -> None:
        if reply not in PERMISSION_REPLIES:
            raise ValueError(f"reply must be one of {PERMISSION_REPLIES}, got {reply!r}")
        client = self.client
        if client is None:
            return
        try:
            await client.reply_permission(request_id, reply)
        except Exception:
            logger.error("Failed to reply to permission %s", request_id, exc_info=True)
            return
        self._update(active_permission=None)

    # --- Auth / providers ---

    async def _after_auth_change(self, client: EngineClient) -> None:
        # The engine caches provider state per directory.
        await client.dispose_instance()
        await self.refresh_providers()

    async def set_api_key(self, provider_id: str, key: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            await client.set_auth(provider_id, {"type": "api", "key": key})
            await self._after_auth_change(client)
        except Exception:
            logger.error("Failed to set API key for %s", provider_id, exc_info=True)
            raise
        logger.info("Connected provider %s with an API key", provider_id)

    async def disconnect_provider(self, provider_id: str) -> None:
        client = self.client
        if client is None:
            return
        try:
            await client.remove_auth(provider_id)
            await self._after_auth_change(client)
        except Exception:
            logger.error("Failed to disconnect provider %s", provider_id, exc_info=True)
            raise
        logger.info("Disconnected provider %s", provider_id)

    async def start_oauth(self, provider_id: str, method_index: int) -> OAuthAuthorization | None:
        """Begin an OAuth flow. The caller opens ``authorization.url``."""
        client = self.client
        if client is None:
            return None
        try:
            return await client.oauth_authorize(provider_id, method_index)
        except Exception:
            logger.error("Failed to start OAuth for %s", provider_id, exc_info=True)
            raise

    async def complete_oauth(
        self, provider_id: str, method_index: int, code: str | None = None,
    ) -> bool:
        """Finish an OAuth flow. For "auto" flows this blocks until the
        user authorizes on the provider's site."""
        client = self.client
        if client is None:
            return False
        try:
            ok = await client.oauth_callback(provider_id, method_index, code)
            await self._after_auth_change(client)
        except Exception:
            logger.error("OAuth callback failed for %s", provider_id, exc_info=True)
            raise
        if ok:
            logger.info("Connected provider %s with OAuth", provider_id)
        return ok

    async def refresh_providers(self) -> None:
        client = self.client
        if client is None:
            return
        try:
            catalog, auth_methods = await asyncio.gather(
                client.list_providers(),
                _optional("auth methods", client.provider_auth_methods()),
            )
        except Exception as exc:
            logger.warning("Provider refresh failed: %s", exc)
            return
        changes = self._catalog_changes(catalog)
        if auth_methods is not None:
            changes["auth_methods"] = auth_methods
        self._update(**changes)

    # --- Preferences ---

    def set_selected_model(self, model: str) -> None:
        state = self._state
        changes: dict[str, Any] = {"selected_model": model}
        self.preferences.save_field("last_model", model)
        if state.active_session is not None:
            session_models = {**state.session_models, state.active_session.id: model}
            self.preferences.save_field("session_models", session_models)
            changes["session_models"] = session_models
        self._update(**changes)

    def set_selected_agent(self, name: str) -> None:
        self._update(selected_agent=name)

    def set_selected_variant(self, variant: str | None) -> None:
        self._update(selected_variant=variant)

    def toggle_model_visibility(self, model_key: str) -> None:
        hidden = self._state.hidden_models
        hidden = hidden - {model_key} if model_key in hidden else hidden | {model_key}
        self.preferences.save_field("hidden_models", hidden)
        self._update(hidden_models=hidden)

    def dismiss_welcome(self) -> None:
        self.preferences.save_field("has_launched", True)
        self._update(has_launched=True)

    # --- Studio plugin ---

    async def check_plugin_installed(self) -> None:
        try:
            installed = await self.host.check_plugin_installed()
        except Exception:
            logger.error("Failed to check plugin status", exc_info=True)
            installed = False
        self._update(plugin_installed=installed)

    async def install_plugin(self) -> None:
        try:
            path = await self.host.install_plugin()
        except Exception:
            logger.error("Failed to install plugin", exc_info=True)
            raise
        logger.info("Installed Studio plugin at %s", path)
        self._update(plugin_installed=True)
