"""One-shot command execution with a bounded wall time."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from appctl.cli.app.logging import LogComponent, get_logger
from appctl.cli.app.process_control import wait_for_exit, wait_for_group_empty
from appctl.constants import DEFAULT_COMMAND_TIMEOUT, RUNNER_KILL_GRACE
from appctl.errors import SpawnError
from appctl.models import CommandResult


logger = get_logger(LogComponent.RUNNER)

# How long to wait for pipes to drain once the process itself has exited.
_DRAIN_TIMEOUT = 0.5


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    """Signal the command's process group. Returns False when it is empty."""
    try:
        os.killpg(proc.pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Group already reassigned; fall back to the direct child.
        if proc.returncode is not None:
            return False
        try:
            proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False


class CommandRunner:
    """Run short-lived commands and collect their output.

    Each command gets its own session so a timeout can take down the whole
    tree it spawned, not just the direct child.
    """

    def __init__(
        self,
        *,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        kill_grace: float = RUNNER_KILL_GRACE,
        default_cwd: Path | None = None,
    ) -> None:
        self.default_timeout: float = default_timeout
        self.kill_grace: float = kill_grace
        self.default_cwd: Path | None = default_cwd

    async def _wait_gone(self, proc: asyncio.subprocess.Process) -> bool:
        if await wait_for_exit(proc, timeout=self.kill_grace) is None:
            return False
        return await asyncio.to_thread(wait_for_group_empty, proc.pid, self.kill_grace)

    async def _kill_tree(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the whole group, then SIGKILL whatever outlives the grace period.

        Runs even when the leader has exited, since background children it
        left behind still hold the output pipes.
        """
        if not _signal_group(proc, signal.SIGTERM):
            return
        if await self._wait_gone(proc):
            return
        logger.debug(f"Group {proc.pid} ignored SIGTERM, sending SIGKILL")
        if not _signal_group(proc, signal.SIGKILL):
            return
        if not await self._wait_gone(proc):
            logger.warning(f"Group {proc.pid} still alive after SIGKILL")

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run ``command`` with ``args`` to completion or timeout.

        Raises SpawnError if the process could not be started at all. A nonzero
        exit status is reported in the result, not raised.
        """
        argv = [command, *args]
        run_cwd = Path(cwd) if cwd is not None else (self.default_cwd or Path.cwd())
        run_timeout = timeout if timeout is not None else self.default_timeout
        start = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(run_cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else os.environ.copy(),
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {command!r}: {e}") from e

        logger.debug(f"Running {' '.join(argv)} (pid={proc.pid}, cwd={run_cwd})")

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = [
            asyncio.create_task(_drain(proc.stdout, stdout_chunks)),
            asyncio.create_task(_drain(proc.stderr, stderr_chunks)),
        ]

        try:
            returncode = await wait_for_exit(proc, timeout=run_timeout)
        except asyncio.CancelledError:
            await self._kill_tree(proc)
            for task in readers:
                task.cancel()
            raise

        timed_out = returncode is None
        if timed_out:
            logger.info(f"Command timed out after {run_timeout}s: {' '.join(argv)}")
        await self._kill_tree(proc)

        _, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        duration_ms = int((time.perf_counter() - start) * 1000)
        return CommandResult(
            command=argv,
            cwd=str(run_cwd),
            returncode=proc.returncode,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            timed_out=timed_out,
        )
