"""BloxBot client core: command-line entry point.

    bloxbot run [--config PATH] [--verbose]
        Start the engine, connect to it and keep the session store in sync
        until interrupted. Store and notice changes are logged.

    bloxbot launcher [--port N] -- COMMAND [ARGS...]
        Run COMMAND (the Studio bridge) under the process control server.
        The engine spawns this form itself; stdout belongs to COMMAND.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from bloxbot.core.config import ClientConfig, default_control_port, DEFAULT_BRIDGE_PORT
from bloxbot.shared.services.log_buffer import RingBufferHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(
    log_dir: Path | None,
    level: str = "INFO",
    *,
    ring_buffer: RingBufferHandler | None = None,
) -> Path | None:
    """Route root logging to stderr, a rotating file and the ring buffer.

    ``log_dir=None`` skips the file handler. Returns the log file path.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "bloxbot.log"
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if ring_buffer is not None:
        ring_buffer.setFormatter(formatter)
        root.addHandler(ring_buffer)
    return log_file


# --- run ---


async def run_client(config: ClientConfig) -> None:
    """Host + store + supervisor until SIGINT/SIGTERM."""
    from bloxbot.adapters.notices import NoticeBoard
    from bloxbot.adapters.store import SessionStore
    from bloxbot.adapters.supervisor import ConnectionSupervisor
    from bloxbot.host.local import LocalHost
    from bloxbot.shared.services.preferences import PreferencesRepository

    host = LocalHost(config)
    store = SessionStore(
        host,
        PreferencesRepository(config.preferences_path),
        busy_timeout_seconds=config.busy_timeout_seconds,
    )
    notices = NoticeBoard()
    last: dict[str, object] = {}

    def _log_changes(state) -> None:
        summary = {
            "ready": state.ready,
            "bridge": state.bridge_status.value,
            "busy": state.is_busy,
            "session": state.active_session_id,
            "model": state.selected_model,
        }
        changed = {k: v for k, v in summary.items() if last.get(k) != v}
        if changed:
            last.update(summary)
            logger.info("State: %s", ", ".join(f"{k}={v}" for k, v in changed.items()))

    store.subscribe(_log_changes)
    supervisor = ConnectionSupervisor(host, store, config, notices)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await supervisor.start()
        await host.start()
        await stop.wait()
        logger.info("Shutting down")
    finally:
        await supervisor.close()
        store.close()
        await host.stop()


def _cmd_run(args: argparse.Namespace) -> int:
    from bloxbot.core.yaml_config import load_config

    config = load_config(Path(args.config) if args.config else None)
    if args.verbose:
        config.log_level = "DEBUG"
    log_file = configure_logging(config.log_dir, config.log_level, ring_buffer=RingBufferHandler())
    logger.info(
        "Starting BloxBot client workspace=%s config=%s log=%s",
        config.workspace_dir, args.config or "<default>", log_file,
    )
    asyncio.run(run_client(config))
    return 0


# --- launcher ---


def _launcher_port(explicit: int | None) -> int:
    if explicit is not None:
        return explicit
    raw = os.getenv("BLOXBOT_CONTROL_PORT")
    if raw:
        return int(raw)
    return default_control_port(int(os.getenv("ROBLOX_STUDIO_PORT", str(DEFAULT_BRIDGE_PORT))))


def _cmd_launcher(args: argparse.Namespace) -> int:
    from bloxbot.launcher.server import ControlServer, exit_like_child

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("bloxbot launcher: missing command after --", file=sys.stderr)
        return 2
    # stdout is the child's protocol channel: stderr only, no file.
    configure_logging(None, os.getenv("BLOXBOT_LOG_LEVEL", "INFO"))
    server = ControlServer(command, port=_launcher_port(args.port))
    try:
        code = asyncio.run(server.run())
    except OSError as exc:
        logger.error("Failed to start %s: %s", command[0], exc)
        return 1
    return exit_like_child(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bloxbot",
        description="BloxBot client core for the OpenCode engine and Roblox Studio",
    )
    sub = parser.add_subparsers(dest="command_name", required=True)

    run = sub.add_parser("run", help="Start the engine and keep the client in sync")
    run.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.bloxbot/config.yaml if present)",
    )
    run.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    run.set_defaults(handler=_cmd_run)

    launcher = sub.add_parser(
        "launcher",
        help="Run a command under the process control server",
    )
    launcher.add_argument(
        "--port", type=int, default=None,
        help="Control port (default: BLOXBOT_CONTROL_PORT, else bridge port + 100)",
    )
    launcher.add_argument("command", nargs=argparse.REMAINDER)
    launcher.set_defaults(handler=_cmd_launcher)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.handler(args))


if __name__ == "__main__":
    main()
