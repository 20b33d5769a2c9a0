"""Process control server wrapped around the Studio bridge.

The launcher spawns the bridge with this process's stdin/stdout handed
straight to it, so the MCP stdio protocol flows through untouched, and
exposes a loopback HTTP control endpoint:

    POST /shutdown  -> 200 {"ok": true}, then SIGTERM the child; SIGKILL
                       after the grace window if it is still alive; the
                       launcher then exits 0
    GET  /health    -> 200 {"ok": true, "pid": N, "childAlive": bool}
    anything else   -> 404

SIGTERM/SIGINT/SIGHUP received by the launcher are forwarded to the child.
When the child exits on its own, the launcher exits with the child's code
(or dies from the same signal). A control port that is already bound is
logged and the launcher keeps running without the endpoint.

Nothing here writes to stdout: it belongs to the child's protocol.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid

from aiohttp import web

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
DEFAULT_GRACE_SECONDS = 2.0


class ControlServer:
    """Owns one child process and the HTTP endpoint that controls it."""

    def __init__(
        self,
        command: list[str],
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        forward_signals: bool = True,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = command
        self.host = host
        self.port = port
        self.grace_seconds = grace_seconds
        self.forward_signals = forward_signals
        self.child: asyncio.subprocess.Process | None = None
        self.endpoint_available = False
        self.started = asyncio.Event()
        self._signaled = False
        self._shutdown_requested = False
        self._kill_task: asyncio.Task[None] | None = None
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        try:
            response = await handler(request)
        except Exception:
            logger.exception("Control %s %s req=%s failed", request.method, request.path, req_id)
            raise
        logger.debug(
            "Control %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path, req_id,
            getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_post("/shutdown", self._handle_shutdown)
        r.add_get("/health", self._handle_health)
        r.add_route("*", "/{tail:.*}", self._handle_not_found)

    # ── Handlers ──

    @property
    def child_alive(self) -> bool:
        return self.child is not None and not self._signaled and self.child.returncode is None

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "pid": self.child.pid if self.child else None,
            "childAlive": self.child_alive,
        })

    async def _handle_shutdown(self, request: web.Request) -> web.StreamResponse:
        # The reply must be on the wire before the child is signalled.
        response = web.json_response({"ok": True})
        await response.prepare(request)
        await response.write_eof()
        self.request_shutdown()
        return response

    async def _handle_not_found(self, request: web.Request) -> web.Response:
        return web.Response(status=404)

    # ── Child control ──

    def _send(self, sig: int) -> None:
        child = self.child
        if child is None or child.returncode is not None:
            return
        try:
            child.send_signal(sig)
            self._signaled = True
        except ProcessLookupError:
            pass

    def _forward_signal(self, sig: int) -> None:
        logger.info("Forwarding %s to child pid=%s", signal.Signals(sig).name, self.child and self.child.pid)
        self._send(sig)

    def request_shutdown(self) -> None:
        """SIGTERM the child now and SIGKILL it after the grace window."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Shutdown requested; terminating child pid=%s", self.child and self.child.pid)
        self._send(signal.SIGTERM)
        self._kill_task = asyncio.get_running_loop().create_task(self._force_kill_after_grace())

    async def _force_kill_after_grace(self) -> None:
        await asyncio.sleep(self.grace_seconds)
        if self.child is not None and self.child.returncode is None:
            logger.warning(
                "Child pid=%d still alive after %.1fs; sending SIGKILL",
                self.child.pid, self.grace_seconds,
            )
            self._send(signal.SIGKILL)

    # ── Lifecycle ──

    async def _start_http(self) -> None:
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            logger.error(
                "Control port %d unavailable (%s); control endpoint disabled, "
                "shutdown will rely on signals",
                self.port, exc,
            )
            await runner.cleanup()
            return
        self._runner = runner
        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self.port = actual_port
        self.endpoint_available = True
        logger.info("Control endpoint on %s:%d", self.host, self.port)

    async def _stop_http(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    async def run(self) -> int:
        """Spawn the child, serve until it exits, return the exit status.

        Returns 0 after a requested shutdown. Otherwise returns the
        child's return code, which is negative (``-signum``) when the
        child died from a signal.
        """
        loop = asyncio.get_running_loop()
        # stdin/stdout are inherited so protocol bytes flow straight through;
        # stderr is inherited for diagnostics.
        self.child = await asyncio.create_subprocess_exec(*self.command, env=os.environ.copy())
        logger.info("Spawned child pid=%d: %s", self.child.pid, " ".join(self.command))

        installed: list[int] = []
        if self.forward_signals:
            for sig in FORWARDED_SIGNALS:
                loop.add_signal_handler(sig, self._forward_signal, sig)
                installed.append(sig)
        try:
            await self._start_http()
            self.started.set()
            code = await self.child.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            if self._kill_task is not None and not self._kill_task.done():
                self._kill_task.cancel()
            await self._stop_http()

        if self._shutdown_requested:
            logger.info("Child exited (%s) after shutdown request", code)
            return 0
        logger.info("Child exited on its own with status %s", code)
        return code


def exit_like_child(code: int) -> int:
    """Turn ``run()``'s result into this process's exit.

    A negative code re-raises the child's signal on this process; the
    returned value is only used if that signal does not terminate us.
    """
    if code < 0:
        sig = -code
        signal.signal(sig, signal.SIG_DFL)
        os.kill(os.getpid(), sig)
        return 128 + sig
    return code
