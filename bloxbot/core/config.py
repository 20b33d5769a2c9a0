"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BLOXBOT_* env vars or
a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_PORT = 4096
DEFAULT_BRIDGE_PORT = 3002
# The launcher's control endpoint sits at a fixed offset from the bridge port.
CONTROL_PORT_OFFSET = 100

BASE_DIR = Path.home() / ".bloxbot"


def default_control_port(bridge_port: int) -> int:
    return bridge_port + CONTROL_PORT_OFFSET


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    """Client-core configuration."""

    # Engine process
    engine_command: list[str] = field(
        default_factory=lambda: ["opencode", "serve"]
    )
    engine_port: int = DEFAULT_ENGINE_PORT
    # Consecutive ports tried when the preferred one is taken.
    engine_port_range: int = 10
    engine_health_attempts: int = 15
    engine_health_interval_seconds: float = 0.5
    engine_restart_delay_seconds: float = 3.0
    engine_max_restarts: int = 5

    # Bridge (MCP server that talks to Roblox Studio)
    bridge_name: str = "roblox-studio"
    bridge_command: list[str] = field(
        default_factory=lambda: ["npx", "robloxstudio-mcp@latest"]
    )
    bridge_process_pattern: str = "robloxstudio-mcp"
    bridge_host: str = "127.0.0.1"
    bridge_port: int = DEFAULT_BRIDGE_PORT
    control_port: int | None = None
    bridge_poll_interval_seconds: float = 0.5
    bridge_probe_timeout_seconds: float = 1.0

    # Supervisor
    stream_reconnect_delay_seconds: float = 3.0
    degraded_failure_threshold: int = 3
    init_max_attempts: int = 3
    init_base_delay_seconds: float = 1.0
    directory_retry_delay_seconds: float = 1.0
    # 0 disables the optimistic-busy watchdog.
    busy_timeout_seconds: float = 30.0

    # Paths
    workspace_dir: Path = field(default_factory=lambda: Path.home() / "BloxBot")
    data_dir: Path = BASE_DIR
    plugin_dir: Path | None = None
    bundled_plugin: Path | None = None

    # Logging
    log_level: str = "INFO"

    @property
    def resolved_control_port(self) -> int:
        if self.control_port is not None:
            return self.control_port
        return default_control_port(self.bridge_port)

    @property
    def bridge_health_url(self) -> str:
        return f"http://{self.bridge_host}:{self.bridge_port}/health"

    @property
    def preferences_path(self) -> Path:
        return self.data_dir / "bloxbot-store.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from BLOXBOT_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("BLOXBOT_")
        }
        if overrides:
            logger.info(
                "ClientConfig.from_env: BLOXBOT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("ClientConfig.from_env: no BLOXBOT_* env vars set, using defaults")

        config = cls()
        engine_command = os.getenv("BLOXBOT_ENGINE_COMMAND")
        if engine_command:
            config.engine_command = engine_command.split()
        config.engine_port = int(os.getenv(
            "BLOXBOT_ENGINE_PORT", str(cls.engine_port)
        ))
        config.bridge_name = os.getenv("BLOXBOT_BRIDGE_NAME", cls.bridge_name)
        config.bridge_port = int(os.getenv(
            "ROBLOX_STUDIO_PORT", str(cls.bridge_port)
        ))
        config.bridge_host = os.getenv("ROBLOX_STUDIO_HOST", cls.bridge_host)
        control_port = os.getenv("BLOXBOT_CONTROL_PORT")
        if control_port:
            config.control_port = int(control_port)
        config.bridge_poll_interval_seconds = float(os.getenv(
            "BLOXBOT_BRIDGE_POLL_INTERVAL", str(cls.bridge_poll_interval_seconds)
        ))
        config.stream_reconnect_delay_seconds = float(os.getenv(
            "BLOXBOT_STREAM_RECONNECT_DELAY",
            str(cls.stream_reconnect_delay_seconds),
        ))
        config.busy_timeout_seconds = float(os.getenv(
            "BLOXBOT_BUSY_TIMEOUT", str(cls.busy_timeout_seconds)
        ))
        workspace = os.getenv("BLOXBOT_WORKSPACE_DIR")
        if workspace:
            config.workspace_dir = Path(workspace).expanduser()
        data_dir = os.getenv("BLOXBOT_DATA_DIR")
        if data_dir:
            config.data_dir = Path(data_dir).expanduser()
        plugin_dir = os.getenv("BLOXBOT_PLUGIN_DIR")
        if plugin_dir:
            config.plugin_dir = Path(plugin_dir).expanduser()
        bundled = os.getenv("BLOXBOT_BUNDLED_PLUGIN")
        if bundled:
            config.bundled_plugin = Path(bundled).expanduser()
        config.log_level = os.getenv("BLOXBOT_LOG_LEVEL", cls.log_level).upper()
        if _env_flag("BLOXBOT_DEBUG", False):
            config.log_level = "DEBUG"

        logger.info(
            "ClientConfig.from_env: engine_port=%s bridge=%s:%s control_port=%s log_level=%s",
            config.engine_port, config.bridge_host, config.bridge_port,
            config.resolved_control_port, config.log_level,
        )
        return config
