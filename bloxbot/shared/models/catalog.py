"""Provider, model, agent and auth catalog data.

Refreshed on init and after every auth change. Model keys are
``"providerID/modelID"``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def model_key(provider_id: str, model_id: str) -> str:
    return f"{provider_id}/{model_id}"


def split_model_key(key: str) -> tuple[str, str] | None:
    provider_id, sep, model_id = key.partition("/")
    if not sep or not provider_id or not model_id:
        return None
    return provider_id, model_id


@dataclass(frozen=True)
class ProviderInfo:
    id: str
    name: str
    env: tuple[str, ...] = ()


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider_id: str
    provider_name: str
    status: str | None = None
    variants: dict[str, dict[str, Any]] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return model_key(self.provider_id, self.id)


@dataclass(frozen=True)
class ProviderCatalog:
    providers: tuple[ProviderInfo, ...] = ()
    models: tuple[ModelInfo, ...] = ()
    connected: tuple[str, ...] = ()
    # provider id -> default model id
    defaults: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderCatalog:
        providers = []
        models = []
        for p in data.get("all") or ():
            pid = str(p.get("id", ""))
            pname = p.get("name", pid)
            providers.append(ProviderInfo(id=pid, name=pname, env=tuple(p.get("env") or ())))
            for m in (p.get("models") or {}).values():
                models.append(ModelInfo(
                    id=str(m.get("id", "")),
                    name=m.get("name", ""),
                    provider_id=pid,
                    provider_name=pname,
                    status=m.get("status"),
                    variants=m.get("variants") or {},
                ))
        return cls(
            providers=tuple(providers),
            models=tuple(models),
            connected=tuple(data.get("connected") or ()),
            defaults=dict(data.get("default") or {}),
        )


@dataclass(frozen=True)
class AgentInfo:
    name: str
    mode: str = "primary"
    hidden: bool = False
    description: str = ""

    @property
    def is_primary(self) -> bool:
        return self.mode == "primary"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentInfo:
        return cls(
            name=data.get("name", ""),
            mode=data.get("mode", "primary"),
            hidden=bool(data.get("hidden", False)),
            description=data.get("description") or "",
        )


@dataclass(frozen=True)
class AuthMethod:
    type: str
    label: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthMethod:
        return cls(type=data.get("type", ""), label=data.get("label", ""))


def auth_methods_from_dict(data: dict[str, Any]) -> dict[str, tuple[AuthMethod, ...]]:
    return {
        pid: tuple(AuthMethod.from_dict(m) for m in methods or ())
        for pid, methods in data.items()
    }


@dataclass(frozen=True)
class OAuthAuthorization:
    url: str
    method: str
    instructions: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthAuthorization:
        return cls(
            url=data.get("url", ""),
            method=data.get("method", "auto"),
            instructions=data.get("instructions", ""),
        )


class BridgeStatus(Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(frozen=True)
class McpServerStatus:
    """One entry of the engine's MCP status map."""
    name: str
    status: str
    error: str | None = None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> McpServerStatus:
        return cls(name=name, status=data.get("status", ""), error=data.get("error"))
