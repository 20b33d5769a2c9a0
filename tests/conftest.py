from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from bloxbot.adapters.host import Host
from bloxbot.adapters.store import SessionStore
from bloxbot.client.engine_client import EngineClient
from bloxbot.core.status import EngineStatus
from bloxbot.shared.models.catalog import AgentInfo, ProviderCatalog
from bloxbot.shared.services.preferences import PreferencesRepository


class FakeHost(Host):
    """In-memory host that records calls."""

    def __init__(self, status: EngineStatus | None = None, port: int = 4096) -> None:
        self.status = status or EngineStatus.stopped()
        self.port = port
        self.callbacks: list = []
        self.workspace = "/tmp/bloxbot-workspace"
        self.plugin_installed = True
        self.kill_calls = 0
        self.shutdown_calls = 0
        self.workspace_failures = 0

    def push(self, status: EngineStatus, port: int | None = None) -> None:
        self.status = status
        if port is not None:
            self.port = port
        for cb in list(self.callbacks):
            cb(self.status, self.port)

    def subscribe_status(self, callback):
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    async def get_status(self):
        return self.status, self.port

    async def get_workspace_dir(self) -> str:
        if self.workspace_failures:
            self.workspace_failures -= 1
            raise OSError("workspace unavailable")
        return self.workspace

    async def check_plugin_installed(self) -> bool:
        return self.plugin_installed

    async def install_plugin(self) -> str:
        self.plugin_installed = True
        return "/plugins/MCPPlugin.rbxmx"

    async def kill_stale_bridge(self) -> None:
        self.kill_calls += 1

    async def shutdown_bridge(self) -> None:
        self.shutdown_calls += 1

    async def get_bridge_url(self):
        return "http://127.0.0.1:3002"


CATALOG = ProviderCatalog.from_dict({
    "all": [
        {"id": "anthropic", "name": "Anthropic", "models": {
            "claude": {"id": "claude", "name": "Claude"},
        }},
        {"id": "openai", "name": "OpenAI", "models": {
            "gpt": {"id": "gpt", "name": "GPT", "variants": {"high": {}}},
        }},
    ],
    "connected": ["openai"],
    "default": {"anthropic": "claude", "openai": "gpt"},
})


def make_client() -> MagicMock:
    """EngineClient mock whose async methods return empty-but-valid data."""
    client = MagicMock(spec=EngineClient)
    client.list_sessions.return_value = []
    client.list_providers.return_value = CATALOG
    client.session_statuses.return_value = {}
    client.list_agents.return_value = [AgentInfo(name="studio"), AgentInfo(name="sub", mode="subagent")]
    client.provider_auth_methods.return_value = {}
    client.session_messages.return_value = []
    client.session_todos.return_value = []
    client.list_questions.return_value = []
    client.list_permissions.return_value = []
    client.mcp_status.return_value = {}
    client.oauth_callback.return_value = True
    return client


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def preferences(tmp_path) -> PreferencesRepository:
    return PreferencesRepository(tmp_path / "bloxbot-store.json")


@pytest.fixture
def store(host, preferences) -> SessionStore:
    return SessionStore(host, preferences, busy_timeout_seconds=30)
