"""Persisted client state stored in ~/.bloxbot/bloxbot-store.json.

Holds the small set of fields that must survive a restart: which sessions
this client created, hidden models, the first-run flag, per-session model
overrides and the last-used model. Writes are atomic (temp file + rename).
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class PersistedState:
    """Persisted fields.

    Attributes:
        own_session_ids: Ids of sessions created by this client.
        hidden_models: Model keys ("provider/model") hidden from pickers.
        has_launched: Whether the welcome screen has been dismissed.
        session_models: Session id -> model key override.
        last_model: Globally last-used model key.
    """

    own_session_ids: list[str] = field(default_factory=list)
    hidden_models: list[str] = field(default_factory=list)
    has_launched: bool = False
    session_models: dict[str, str] = field(default_factory=dict)
    last_model: str | None = None

    def validate(self) -> None:
        """Drop malformed values so a hand-edited file cannot break init."""
        if not isinstance(self.own_session_ids, list):
            self.own_session_ids = []
        self.own_session_ids = [s for s in self.own_session_ids if isinstance(s, str)]
        if not isinstance(self.hidden_models, list):
            self.hidden_models = []
        self.hidden_models = [m for m in self.hidden_models if isinstance(m, str)]
        if not isinstance(self.has_launched, bool):
            self.has_launched = False
        if not isinstance(self.session_models, dict):
            self.session_models = {}
        self.session_models = {
            k: v for k, v in self.session_models.items()
            if isinstance(k, str) and isinstance(v, str)
        }
        if self.last_model is not None and not isinstance(self.last_model, str):
            self.last_model = None


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class PreferencesRepository:
    """Key-value repository over a single JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load_all(self) -> PersistedState:
        """Load state from disk, returning defaults if missing/corrupt."""
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("top-level value is not an object")
                state = PersistedState(**{
                    k: v for k, v in data.items()
                    if k in PersistedState.__dataclass_fields__
                })
                state.validate()
                logger.debug("Loaded persisted state from %s", self.path)
                return state
            logger.debug("State file not found at %s; using defaults", self.path)
        except (OSError, ValueError, TypeError):
            logger.warning(
                "Failed to load persisted state from %s; using defaults",
                self.path, exc_info=True,
            )
        return PersistedState()

    def save_field(self, name: str, value: Any) -> None:
        """Update one field and rewrite the file.

        Raises KeyError for unknown field names. I/O failures are logged,
        never raised: losing a preference must not break the caller.
        """
        if name not in PersistedState.__dataclass_fields__:
            raise KeyError(name)
        state = self.load_all()
        if isinstance(value, (set, frozenset, tuple)):
            value = sorted(value)
        setattr(state, name, value)
        try:
            _atomic_write_text(self.path, json.dumps(asdict(state), indent=2))
        except OSError:
            logger.warning("Failed to save '%s' to %s", name, self.path, exc_info=True)
