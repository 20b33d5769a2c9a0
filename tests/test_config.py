from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bloxbot.core.config import ClientConfig, default_control_port
from bloxbot.core.yaml_config import apply_yaml_overrides, load_config, load_yaml_config


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for name in list(os.environ):
        if name.startswith("BLOXBOT_") or name.startswith("ROBLOX_STUDIO_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    config = ClientConfig.from_env()
    assert config.engine_port == 4096
    assert config.bridge_port == 3002
    assert config.resolved_control_port == 3102
    assert config.bridge_health_url == "http://127.0.0.1:3002/health"
    assert config.degraded_failure_threshold == 3
    assert config.busy_timeout_seconds == 30.0
    assert default_control_port(4000) == 4100


def test_env_overrides(clean_env, tmp_path) -> None:
    clean_env.setenv("BLOXBOT_ENGINE_COMMAND", "/opt/opencode serve")
    clean_env.setenv("ROBLOX_STUDIO_PORT", "4500")
    clean_env.setenv("BLOXBOT_BUSY_TIMEOUT", "0")
    clean_env.setenv("BLOXBOT_DATA_DIR", str(tmp_path))
    clean_env.setenv("BLOXBOT_DEBUG", "yes")

    config = ClientConfig.from_env()
    assert config.engine_command == ["/opt/opencode", "serve"]
    assert config.bridge_port == 4500
    assert config.resolved_control_port == 4600
    assert config.busy_timeout_seconds == 0
    assert config.preferences_path == tmp_path / "bloxbot-store.json"
    assert config.log_dir == tmp_path / "logs"
    assert config.log_level == "DEBUG"


def test_explicit_control_port_wins(clean_env) -> None:
    clean_env.setenv("BLOXBOT_CONTROL_PORT", "9000")
    assert ClientConfig.from_env().resolved_control_port == 9000


def test_yaml_overrides_env(clean_env, tmp_path) -> None:
    clean_env.setenv("BLOXBOT_ENGINE_PORT", "5000")
    path = tmp_path / "config.yaml"
    path.write_text(
        "engine:\n"
        "  port: 6000\n"
        "  command: [opencode, serve, --print-logs]\n"
        "bridge:\n"
        "  port: 3010\n"
        "supervisor:\n"
        "  degraded_failure_threshold: 5\n"
        "paths:\n"
        "  workspace_dir: ~/StudioWork\n"
        "logging:\n"
        "  level: debug\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.engine_port == 6000
    assert config.engine_command == ["opencode", "serve", "--print-logs"]
    assert config.resolved_control_port == 3110
    assert config.degraded_failure_threshold == 5
    assert config.workspace_dir == Path("~/StudioWork").expanduser()
    assert config.log_level == "DEBUG"


def test_unknown_and_invalid_values_are_skipped(caplog) -> None:
    config = ClientConfig()
    with caplog.at_level(logging.WARNING):
        apply_yaml_overrides(config, {
            "engine": {"port": "not-a-number", "colour": "blue"},
            "extras": {"x": 1},
            "bridge": "oops",
        })
    assert config.engine_port == 4096
    messages = " ".join(r.getMessage() for r in caplog.records)
    assert "engine.colour" in messages
    assert "extras" in messages
    assert "engine.port" in messages


def test_yaml_must_be_a_mapping(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path, base=ClientConfig())


def test_empty_yaml_keeps_base(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    base = ClientConfig(engine_port=7000)
    assert load_yaml_config(path, base=base).engine_port == 7000
