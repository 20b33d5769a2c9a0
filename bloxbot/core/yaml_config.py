"""YAML configuration loader.

Overlays a YAML file on top of the environment-derived ClientConfig.
When no file is present, env vars and defaults work exactly as before.

Example YAML:
    engine:
      command: [opencode, serve]
      port: 4096
      max_restarts: 5

    bridge:
      name: roblox-studio
      port: 3002
      control_port: 3102
      poll_interval_seconds: 0.5
      probe_timeout_seconds: 1.0

    supervisor:
      stream_reconnect_delay_seconds: 3
      degraded_failure_threshold: 3
      init_max_attempts: 3
      init_base_delay_seconds: 1
      busy_timeout_seconds: 30

    paths:
      workspace_dir: ~/BloxBot
      plugin_dir: ~/Documents/Roblox/Plugins

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import BASE_DIR, ClientConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

# section -> {yaml key: (ClientConfig attribute, converter)}
_SECTIONS: dict[str, dict[str, tuple[str, Any]]] = {
    "engine": {
        "command": ("engine_command", lambda v: [str(p) for p in v]),
        "port": ("engine_port", int),
        "port_range": ("engine_port_range", int),
        "health_attempts": ("engine_health_attempts", int),
        "health_interval_seconds": ("engine_health_interval_seconds", float),
        "restart_delay_seconds": ("engine_restart_delay_seconds", float),
        "max_restarts": ("engine_max_restarts", int),
    },
    "bridge": {
        "name": ("bridge_name", str),
        "command": ("bridge_command", lambda v: [str(p) for p in v]),
        "process_pattern": ("bridge_process_pattern", str),
        "host": ("bridge_host", str),
        "port": ("bridge_port", int),
        "control_port": ("control_port", int),
        "poll_interval_seconds": ("bridge_poll_interval_seconds", float),
        "probe_timeout_seconds": ("bridge_probe_timeout_seconds", float),
    },
    "supervisor": {
        "stream_reconnect_delay_seconds": ("stream_reconnect_delay_seconds", float),
        "degraded_failure_threshold": ("degraded_failure_threshold", int),
        "init_max_attempts": ("init_max_attempts", int),
        "init_base_delay_seconds": ("init_base_delay_seconds", float),
        "directory_retry_delay_seconds": ("directory_retry_delay_seconds", float),
        "busy_timeout_seconds": ("busy_timeout_seconds", float),
    },
    "paths": {
        "workspace_dir": ("workspace_dir", lambda v: Path(v).expanduser()),
        "data_dir": ("data_dir", lambda v: Path(v).expanduser()),
        "plugin_dir": ("plugin_dir", lambda v: Path(v).expanduser()),
        "bundled_plugin": ("bundled_plugin", lambda v: Path(v).expanduser()),
    },
    "logging": {
        "level": ("log_level", lambda v: str(v).upper()),
    },
}


def apply_yaml_overrides(config: ClientConfig, data: dict[str, Any]) -> ClientConfig:
    """Apply parsed YAML sections onto an existing config in place."""
    for section, values in data.items():
        known = _SECTIONS.get(section)
        if known is None:
            logger.warning("Ignoring unknown config section '%s'", section)
            continue
        if not isinstance(values, dict):
            logger.warning("Config section '%s' is not a mapping; ignoring", section)
            continue
        for key, raw in values.items():
            spec = known.get(key)
            if spec is None:
                logger.warning("Ignoring unknown config key '%s.%s'", section, key)
                continue
            attr, convert = spec
            if raw is None:
                continue
            try:
                setattr(config, attr, convert(raw))
            except (TypeError, ValueError):
                logger.warning(
                    "Invalid value for '%s.%s': %r; keeping %r",
                    section, key, raw, getattr(config, attr),
                )
    return config


def load_yaml_config(path: Path, base: ClientConfig | None = None) -> ClientConfig:
    """Load a YAML config file over ``base`` (or a fresh env config)."""
    config = base if base is not None else ClientConfig.from_env()
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at top level")
    apply_yaml_overrides(config, data)
    logger.info("Loaded YAML config from %s", path)
    return config


def load_config(path: Path | None = None) -> ClientConfig:
    """Resolve the effective config: env first, then YAML if present.

    An explicit ``path`` must exist; the default path is optional.
    """
    config = ClientConfig.from_env()
    if path is not None:
        return load_yaml_config(path, base=config)
    if DEFAULT_CONFIG_PATH.exists():
        return load_yaml_config(DEFAULT_CONFIG_PATH, base=config)
    logger.debug("No config file at %s; using env/defaults", DEFAULT_CONFIG_PATH)
    return config
