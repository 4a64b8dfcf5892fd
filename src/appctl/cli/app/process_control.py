"""Process-group tracking and cleanup helpers for the supervised app.

Design goals:
- Only signal processes we started (tracked by pid + create_time + pgid).
- The app runs in its own session, so its whole tree shares one process group.
- Never reap the direct child here; asyncio owns its exit status.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from pathlib import Path
from typing import ClassVar

import psutil
from pydantic import BaseModel, ConfigDict

from appctl.cli.app.client import poll_until_true
from appctl.cli.app.logging import LogComponent, get_logger
from appctl.constants import EXIT_POLL_INTERVAL


logger = get_logger(LogComponent.SUPERVISOR)


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage."""

    pid: int
    create_time: float | None = None
    pgid: int | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


def get_pgid(pid: int) -> int | None:
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def track_process(pid: int) -> TrackedProcess:
    """Record create_time and pgid of a freshly spawned PID."""
    create_time: float | None
    try:
        create_time = float(psutil.Process(pid).create_time())
    except psutil.Error:
        create_time = None
    return TrackedProcess(pid=pid, create_time=create_time, pgid=get_pgid(pid))


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - tp.create_time) > 0.001:
            return None
        return proc
    except psutil.Error:
        return None


def signal_process_group(tp: TrackedProcess, sig: signal.Signals) -> bool:
    """Send ``sig`` to the tracked group, or to the pid when there is no group.

    Returns False when nothing was left to signal.
    """
    if tp.pgid is not None:
        try:
            os.killpg(tp.pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.debug(f"Not allowed to signal process group {tp.pgid}")
            return False

    proc = validate_tracked(tp)
    if proc is None:
        return False
    try:
        proc.send_signal(sig)
        return True
    except psutil.Error:
        return False


def list_group_members(pgid: int) -> list[int]:
    """Return PIDs in a process group (POSIX only)."""
    if os.name == "nt":
        return []
    pids: list[int] = []
    for proc in psutil.process_iter(["pid"]):
        try:
            pid = int(proc.pid)
        except psutil.Error:
            continue
        if get_pgid(pid) != pgid:
            continue
        try:
            if proc.status() == psutil.STATUS_ZOMBIE:
                continue
        except psutil.Error:
            continue
        pids.append(pid)
    return pids


def wait_for_group_empty(pgid: int, timeout: float, poll: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not list_group_members(pgid):
            return True
        time.sleep(poll)
    return not list_group_members(pgid)


def sweep_process_group(tp: TrackedProcess, timeout: float = 1.0) -> int:
    """Kill whatever is left of the tracked group after the leader is gone.

    Blocking; call through ``asyncio.to_thread``. Returns the number of
    processes that were still around.
    """
    if tp.pgid is None:
        return 0
    leftovers = list_group_members(tp.pgid)
    if not leftovers:
        return 0

    logger.debug(f"Sweeping {len(leftovers)} leftover process(es) in group {tp.pgid}")
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(tp.pgid, sig)
        except (ProcessLookupError, PermissionError):
            break
        if wait_for_group_empty(tp.pgid, timeout):
            break
    return len(leftovers)


def remove_stale_socket(path: Path) -> bool:
    """Remove a leftover companion socket file. Returns True if one was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not remove stale socket {path}: {e}")
        return False
    logger.debug(f"Removed stale socket {path}")
    return True


async def wait_for_exit(
    process: asyncio.subprocess.Process,
    timeout: float | None = None,
    interval: float = EXIT_POLL_INTERVAL,
) -> int | None:
    """Wait until ``process`` itself has exited and return its exit status.

    ``Process.wait()`` also waits for the stdout/stderr pipes to close, which a
    descendant can hold open long after the leader is gone. This only looks at
    the leader. Returns None if it is still alive after ``timeout`` seconds.
    """

    async def exited() -> bool:
        return process.returncode is not None

    try:
        await asyncio.wait_for(poll_until_true(exited, interval=interval), timeout)
    except asyncio.TimeoutError:
        return None
    return process.returncode
