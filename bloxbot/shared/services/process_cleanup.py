"""Best-effort cleanup for stale bridge processes.

A bridge left over from a previous run keeps its port bound, so the
engine's freshly spawned bridge fails to start. These helpers find such
processes by command-line pattern and terminate them, then wait for the
port to free up.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            table[int(parts[0])] = ProcessInfo(
                pid=int(parts[0]), ppid=int(parts[1]), args=parts[2],
            )
        except ValueError:
            continue
    return table


def kill_matching_processes(pattern: str, *, current_pid: int | None = None) -> int:
    """SIGTERM every process whose command line contains ``pattern``.

    The calling process is never signalled. Returns the number of
    processes signalled.
    """
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Could not list processes: %s", exc)
        return 0

    killed = 0
    for proc in table.values():
        if proc.pid == pid or pattern not in proc.args:
            continue
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger.info(
                "Reaped stale bridge process pid=%d ppid=%d cmd=%s",
                proc.pid, proc.ppid, proc.args[:180],
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Failed to reap pid=%d: %s", proc.pid, exc)
    return killed


def port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        return sock.connect_ex((host, port)) == 0


async def wait_for_port_free(
    host: str,
    port: int,
    *,
    attempts: int = 10,
    interval: float = 0.2,
) -> bool:
    """Poll until nothing accepts on ``host:port``. Returns False on timeout."""
    for _ in range(attempts):
        if not port_in_use(host, port):
            return True
        await asyncio.sleep(interval)
    free = not port_in_use(host, port)
    if not free:
        logger.warning("Port %s:%d still in use after cleanup", host, port)
    return free
