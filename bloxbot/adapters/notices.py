"""User-visible notices (connection banners and toasts).

Notices are keyed: showing a notice with an existing key replaces it, so
repeated "disconnected" transitions never stack up. Persistent notices
stay until dismissed; the rest are transient toasts the UI may expire.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# Well-known keys used by the connection supervisor.
DISCONNECTED = "connection.disconnected"
RECONNECTED = "connection.reconnected"
DEGRADED = "connection.degraded"


class NoticeLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    key: str
    level: NoticeLevel
    title: str
    description: str = ""
    persistent: bool = False
    action_label: str | None = None


NoticeListener = Callable[[Notice, bool], None]


class NoticeBoard:
    """Holds active notices and tells listeners about shows and dismissals.

    Listeners receive ``(notice, shown)``; ``shown`` is False on dismiss.
    """

    def __init__(self) -> None:
        self._active: dict[str, Notice] = {}
        self._listeners: list[NoticeListener] = []
        self._actions: dict[str, Callable[[], None]] = {}

    def show(self, notice: Notice, action: Callable[[], None] | None = None) -> None:
        self._active[notice.key] = notice
        if action is not None:
            self._actions[notice.key] = action
        else:
            self._actions.pop(notice.key, None)
        log = logger.warning if notice.level in (NoticeLevel.WARNING, NoticeLevel.ERROR) else logger.info
        log("Notice [%s] %s: %s", notice.key, notice.title, notice.description)
        self._notify(notice, True)

    def dismiss(self, key: str) -> bool:
        notice = self._active.pop(key, None)
        self._actions.pop(key, None)
        if notice is None:
            return False
        self._notify(notice, False)
        return True

    def is_active(self, key: str) -> bool:
        return key in self._active

    def get(self, key: str) -> Notice | None:
        return self._active.get(key)

    def active(self) -> list[Notice]:
        return list(self._active.values())

    def trigger_action(self, key: str) -> bool:
        """Run the action attached to a notice (e.g. "Reconnect")."""
        action = self._actions.get(key)
        if action is None:
            return False
        action()
        return True

    def add_listener(self, listener: NoticeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, notice: Notice, shown: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(notice, shown)
            except Exception:
                logger.exception("Notice listener failed for %s", notice.key)
