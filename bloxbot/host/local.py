"""Local host: spawns and supervises the engine process on this machine.

Status flow pushed to subscribers:

    Stopped -> Starting -> Running            (health check passed)
               Starting -> Error(msg)          (spawn failed / health timeout)
    Running -> Error(exit code) -> Starting   (auto-restart, up to N times)
    Running -> Stopped                        (clean exit or stop())

The engine runs with isolated XDG directories under the workspace so it
never touches the user's global engine configuration, and receives its
MCP configuration (the Studio bridge, wrapped in the process control
launcher) through OPENCODE_CONFIG_CONTENT.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiohttp

from bloxbot.adapters.host import Host, StatusCallback
from bloxbot.client.engine_client import EngineClient
from bloxbot.core.config import ClientConfig
from bloxbot.core.errors import EngineApiError, EngineUnavailableError, HostError, PluginInstallError
from bloxbot.core.status import EngineStatus
from bloxbot.host.paths import PLUGIN_FILE_NAME, default_plugin_dir, engine_home, ensure_workspace
from bloxbot.shared.services.process_cleanup import (
    kill_matching_processes,
    port_in_use,
    wait_for_port_free,
)

logger = logging.getLogger(__name__)
engine_out_logger = logging.getLogger("bloxbot.engine.out")
engine_err_logger = logging.getLogger("bloxbot.engine.err")

STUDIO_AGENT_PROMPT = (
    "You are BloxBot, a specialized AI assistant for Roblox game development "
    "inside Roblox Studio. Use the Roblox Studio MCP tools to read and modify the "
    "explorer hierarchy, scripts, parts and properties directly instead of only "
    "showing code. Write scripts in Luau and follow Roblox conventions. Validate "
    "client input on the server. Be concise and practical."
)


def build_engine_config(config: ClientConfig) -> dict[str, Any]:
    """Engine configuration passed via OPENCODE_CONFIG_CONTENT."""
    bridge_command = [
        sys.executable, "-m", "bloxbot.app", "launcher",
        "--port", str(config.resolved_control_port),
        "--", *config.bridge_command,
    ]
    return {
        "mcp": {
            config.bridge_name: {
                "type": "local",
                "command": bridge_command,
                "enabled": True,
                "environment": {"ROBLOX_STUDIO_PORT": str(config.bridge_port)},
            },
        },
        "default_agent": "studio",
        "agent": {
            "studio": {
                "mode": "primary",
                "description": "Roblox Studio development assistant",
                "prompt": STUDIO_AGENT_PROMPT,
            },
        },
    }


class LocalHost(Host):
    """Spawns ``opencode serve`` and pushes its status to subscribers."""

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self._status = EngineStatus.stopped()
        self._port = config.engine_port
        self._callbacks: list[StatusCallback] = []
        self._process: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._pump_tasks: list[asyncio.Task[None]] = []
        self._restart_attempts = 0
        self._stopping = False

    # --- Status ---

    def subscribe_status(self, callback: StatusCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    async def get_status(self) -> tuple[EngineStatus, int]:
        return self._status, self._port

    def _set_status(self, status: EngineStatus) -> None:
        self._status = status
        logger.info("Engine status: %s (port %d)", status, self._port)
        for callback in list(self._callbacks):
            try:
                callback(status, self._port)
            except Exception:
                logger.exception("Status callback failed")

    # --- Engine process ---

    def _find_port(self) -> int:
        start = self.config.engine_port
        for port in range(start, start + self.config.engine_port_range):
            if not port_in_use("127.0.0.1", port):
                return port
        logger.warning(
            "No free port in %d-%d; falling back to %d",
            start, start + self.config.engine_port_range - 1, start,
        )
        return start

    def _engine_env(self, workspace: str) -> dict[str, str]:
        env = dict(os.environ)
        home = engine_home(Path(workspace))
        for name in ("data", "config", "cache", "state"):
            path = home / name
            path.mkdir(parents=True, exist_ok=True)
            env[f"XDG_{name.upper()}_HOME"] = str(path)
        env["OPENCODE_CONFIG_CONTENT"] = json.dumps(build_engine_config(self.config))
        return env

    async def start(self) -> None:
        """Spawn the engine and wait for it to report healthy."""
        self._stopping = False
        self._port = self._find_port()
        self._set_status(EngineStatus.starting())
        workspace = await self.get_workspace_dir()
        cmd = [
            *self.config.engine_command,
            "--port", str(self._port),
            "--hostname", "127.0.0.1",
        ]
        logger.info("Starting engine: %s (cwd=%s)", " ".join(cmd), workspace)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._engine_env(workspace),
                cwd=workspace,
            )
        except OSError as exc:
            msg = f"Failed to start OpenCode server: {exc}"
            logger.error(msg)
            self._set_status(EngineStatus.error(msg))
            return
        self._process = proc
        self._pump_tasks = [
            asyncio.create_task(self._pump(proc.stdout, engine_out_logger)),
            asyncio.create_task(self._pump(proc.stderr, engine_err_logger)),
        ]

        if await self._wait_healthy():
            self._restart_attempts = 0
            logger.info("Engine healthy on port %d", self._port)
            self._set_status(EngineStatus.running())
            self._monitor_task = asyncio.create_task(self._monitor(proc))
        else:
            msg = "OpenCode server started but health check timed out"
            logger.error(msg)
            await self._terminate(proc)
            if self._process is proc:
                self._process = None
            self._set_status(EngineStatus.error(msg))

    async def _pump(self, stream: asyncio.StreamReader | None, sink: logging.Logger) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            sink.info("%s", line.decode("utf-8", errors="replace").rstrip())

    async def _wait_healthy(self) -> bool:
        async with EngineClient(f"http://127.0.0.1:{self._port}", timeout=2) as client:
            for _ in range(self.config.engine_health_attempts):
                await asyncio.sleep(self.config.engine_health_interval_seconds)
                if self._process is None or self._process.returncode is not None:
                    return False
                try:
                    await client.health()
                except (EngineApiError, EngineUnavailableError):
                    continue
                return True
        return False

    async def _monitor(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        await asyncio.gather(*self._pump_tasks, return_exceptions=True)
        if self._process is proc:
            self._process = None
        if self._stopping:
            return
        if code == 0:
            logger.info("Engine exited cleanly")
            self._set_status(EngineStatus.stopped())
            return
        msg = f"Exited with code {code}"
        logger.warning("Engine process exited: %s", msg)
        self._set_status(EngineStatus.error(msg))
        if self._restart_attempts >= self.config.engine_max_restarts:
            logger.error("Engine restart limit (%d) reached", self.config.engine_max_restarts)
            return
        self._restart_attempts += 1
        logger.info(
            "Auto-restart attempt %d/%d in %.0fs",
            self._restart_attempts, self.config.engine_max_restarts,
            self.config.engine_restart_delay_seconds,
        )
        await asyncio.sleep(self.config.engine_restart_delay_seconds)
        if not self._stopping:
            await self.start()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Engine did not exit after SIGTERM; killing pid %d", proc.pid)
            proc.kill()
            await proc.wait()

    async def stop(self) -> None:
        """Stop the engine (no auto-restart) and push Stopped."""
        self._stopping = True
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None
        proc = self._process
        self._process = None
        if proc is not None:
            await self._terminate(proc)
        await asyncio.gather(*self._pump_tasks, return_exceptions=True)
        self._pump_tasks = []
        self._set_status(EngineStatus.stopped())

    # --- Host operations ---

    async def get_workspace_dir(self) -> str:
        try:
            return str(ensure_workspace(self.config.workspace_dir))
        except OSError as exc:
            raise HostError("get_workspace_dir", str(exc)) from exc

    def _plugin_target(self) -> Path:
        plugin_dir = self.config.plugin_dir or default_plugin_dir()
        name = self.config.bundled_plugin.name if self.config.bundled_plugin else PLUGIN_FILE_NAME
        return plugin_dir / name

    async def check_plugin_installed(self) -> bool:
        return self._plugin_target().exists()

    async def install_plugin(self) -> str:
        source = self.config.bundled_plugin
        if source is None or not source.exists():
            raise PluginInstallError(f"bundled plugin not found: {source}")
        target = self._plugin_target()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as exc:
            raise PluginInstallError(str(exc)) from exc
        return str(target)

    async def kill_stale_bridge(self) -> None:
        pattern = self.config.bridge_process_pattern
        logger.info("Killing stale %s processes", pattern)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, kill_matching_processes, pattern)
        if await wait_for_port_free(self.config.bridge_host, self.config.bridge_port):
            logger.info("Port %d released", self.config.bridge_port)

    async def shutdown_bridge(self) -> None:
        url = f"http://127.0.0.1:{self.config.resolved_control_port}/shutdown"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=3)) as session:
                async with session.post(url) as resp:
                    if resp.status >= 400:
                        raise HostError("shutdown_bridge", f"HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise HostError("shutdown_bridge", str(exc) or type(exc).__name__) from exc

    async def get_bridge_url(self) -> str | None:
        return f"http://{self.config.bridge_host}:{self.config.bridge_port}"
