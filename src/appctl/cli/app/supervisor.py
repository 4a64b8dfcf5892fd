"""Lifecycle supervision of the app process.

The supervisor owns at most one child process and moves it through
``stopped -> starting -> running -> stopping -> stopped``. Any state may fall
into ``error``; from there the app can be started again or cleaned up.

Start setup and stop run under one asyncio lock. The readiness wait of a start
runs outside the lock in its own task, so ``stop()`` can cancel it.
"""

from __future__ import annotations

import asyncio
import re
import signal
from collections import deque
from datetime import datetime

from appctl.cli.app.client import ReadinessProbe
from appctl.cli.app.logging import (
    LogBuffer,
    LogComponent,
    get_logger,
    iter_log_entries,
)
from appctl.cli.app.process_control import (
    TrackedProcess,
    remove_stale_socket,
    signal_process_group,
    sweep_process_group,
    track_process,
    wait_for_exit,
)
from appctl.config import AppControlConfig
from appctl.errors import (
    InvalidTransition,
    NotRunning,
    ProcessCrashed,
    ReadinessTimeout,
    SpawnError,
    StartCancelled,
    StopFailed,
)
from appctl.models import (
    ExitInfo,
    LogEntry,
    LogQuery,
    LogSource,
    ProcessHandle,
    ProcessState,
    StartOptions,
    StateTransition,
    StatusResponse,
)


logger = get_logger(LogComponent.SUPERVISOR)

_ALLOWED_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.STOPPED: frozenset({ProcessState.STARTING, ProcessState.ERROR}),
    ProcessState.STARTING: frozenset(
        {
            ProcessState.RUNNING,
            ProcessState.STOPPING,
            ProcessState.STOPPED,
            ProcessState.ERROR,
        }
    ),
    ProcessState.RUNNING: frozenset(
        {ProcessState.STOPPING, ProcessState.STOPPED, ProcessState.ERROR}
    ),
    ProcessState.STOPPING: frozenset({ProcessState.STOPPED, ProcessState.ERROR}),
    ProcessState.ERROR: frozenset(
        {ProcessState.STARTING, ProcessState.STOPPING, ProcessState.STOPPED}
    ),
}

_TRANSITION_HISTORY_SIZE = 100

# Vite prints e.g. "  ➜  Local:   http://localhost:1420/"
_DEV_URL_PATTERN = re.compile(r"Local:\s+(https?://\S+)")
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

# How long output readers may keep draining after the process is gone.
_READER_DRAIN_TIMEOUT = 0.5


def is_transition_allowed(from_state: ProcessState, to_state: ProcessState) -> bool:
    return to_state in _ALLOWED_TRANSITIONS[from_state]


def detect_dev_server_url(line: str) -> str | None:
    """Extract the dev server URL from a "Local: <url>" output line."""
    match = _DEV_URL_PATTERN.search(_ANSI_ESCAPE.sub("", line))
    if match is None:
        return None
    return match.group(1).rstrip("/")


def _describe_exit(returncode: int) -> tuple[str, int | None]:
    if returncode < 0:
        signum = -returncode
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        return f"Process was killed by signal {name}", signum
    if returncode == 0:
        return "Process exited cleanly", None
    return f"Process exited with code {returncode}", None


class ProcessSupervisor:
    """Owns the app process and its lifecycle state."""

    def __init__(
        self,
        config: AppControlConfig,
        log_buffer: LogBuffer,
        probe: ReadinessProbe | None = None,
    ) -> None:
        self.config: AppControlConfig = config
        self.log_buffer: LogBuffer = log_buffer
        self.probe: ReadinessProbe = probe or ReadinessProbe(
            config.ready_url, timeout=config.probe_timeout
        )

        self._state: ProcessState = ProcessState.STOPPED
        self._error: str | None = None
        self._handle: ProcessHandle | None = None
        self._last_exit: ExitInfo | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._tracked: TrackedProcess | None = None

        self._lock: asyncio.Lock = asyncio.Lock()
        self._start_task: asyncio.Task[ProcessHandle] | None = None
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._exit_task: asyncio.Task[None] | None = None

        self.transition_history: deque[StateTransition] = deque(
            maxlen=_TRANSITION_HISTORY_SIZE
        )

    # === State ===

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    def _transition(self, new_state: ProcessState, reason: str | None = None) -> None:
        old_state = self._state
        if not is_transition_allowed(old_state, new_state):
            raise InvalidTransition(
                f"Invalid transition {old_state.value} -> {new_state.value}"
            )
        self._state = new_state
        self.transition_history.append(
            StateTransition(
                from_state=old_state,
                to_state=new_state,
                at=datetime.now(),
                reason=reason,
            )
        )
        logger.debug(f"State {old_state.value} -> {new_state.value}")

    def get_status(self) -> StatusResponse:
        """Snapshot of the current state. Never blocks."""
        handle = self._handle
        uptime_ms: int | None = None
        if handle is not None and self._state in (
            ProcessState.STARTING,
            ProcessState.RUNNING,
        ):
            uptime_ms = int((datetime.now() - handle.started_at).total_seconds() * 1000)
        return StatusResponse(
            state=self._state,
            pid=handle.pid if handle else None,
            started_at=handle.started_at if handle else None,
            uptime_ms=uptime_ms,
            dev_server_url=handle.dev_server_url if handle else None,
            error=self._error,
            last_exit=self._last_exit,
        )

    def get_logs(self, query: LogQuery | None = None) -> list[LogEntry]:
        query = query or LogQuery()
        return self.log_buffer.get_entries(min_level=query.level, limit=query.limit)

    # === Start ===

    async def start(self, options: StartOptions | None = None) -> ProcessHandle:
        """Start the app, or return the existing handle if it is already running.

        A start issued while another one is in flight waits for that one and
        returns its result.
        """
        options = options or StartOptions()
        if self._state == ProcessState.RUNNING and self._handle is not None:
            return self._handle

        task = self._start_task
        if task is None or task.done():
            task = asyncio.create_task(self._run_start(options))
            self._start_task = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise StartCancelled("Start was cancelled by a stop request") from None

    async def _run_start(self, options: StartOptions) -> ProcessHandle:
        async with self._lock:
            if self._state == ProcessState.RUNNING and self._handle is not None:
                return self._handle

            self._transition(ProcessState.STARTING)
            self._error = None
            self.probe.url = self.config.ready_url
            remove_stale_socket(self.config.socket_path)
            self.log_buffer.clear()

            process = await self._spawn(options)
            tracked = track_process(process.pid)
            self._process = process
            self._tracked = tracked
            self._handle = ProcessHandle(pid=process.pid, started_at=datetime.now())
            self._reader_tasks = [
                asyncio.create_task(self._read_output(process.stdout, "stdout")),
                asyncio.create_task(self._read_output(process.stderr, "stderr")),
            ]
            self._exit_task = asyncio.create_task(
                self._watch_exit(process, self._reader_tasks)
            )
            logger.info(
                f"Started {' '.join(self.config.command)} (pid={process.pid})"
            )

        try:
            if options.wait_for_ready:
                ready = await self.probe.wait_until_ready(
                    timeout=options.timeout,
                    interval=self.config.ready_poll_interval,
                    guard=lambda: self._ensure_alive(process),
                )
            else:
                ready = True
            self._ensure_alive(process)
        except ProcessCrashed as e:
            await asyncio.shield(
                self._abort_start(process, tracked, str(e), crashed=True)
            )
            raise
        if not ready:
            message = (
                f"App did not become ready at {self.probe.url} "
                f"within {options.timeout}s"
            )
            await asyncio.shield(self._abort_start(process, tracked, message))
            raise ReadinessTimeout(message)

        self._transition(ProcessState.RUNNING)
        if not options.wait_for_ready:
            return self._handle
        self._handle = self._handle.model_copy(
            update={"dev_server_url": self.probe.url}
        )
        logger.info(f"App is ready at {self.probe.url}")
        return self._handle

    async def _spawn(self, options: StartOptions) -> asyncio.subprocess.Process:
        command = self.config.command
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.config.project_dir),
                env=self.config.child_env(options.extra_env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            message = f"Failed to start {' '.join(command)}: {e}"
            self._error = message
            self._transition(ProcessState.ERROR, message)
            logger.error(message)
            raise SpawnError(message) from e

    def _ensure_alive(self, process: asyncio.subprocess.Process) -> None:
        """Raise ProcessCrashed if ``process`` is no longer the live, starting app."""
        if self._process is process and process.returncode is None:
            if self._state in (ProcessState.STARTING, ProcessState.RUNNING):
                return
        if self._error:
            raise ProcessCrashed(self._error)
        if process.returncode is not None:
            reason, _ = _describe_exit(process.returncode)
            raise ProcessCrashed(f"{reason} during startup")
        raise ProcessCrashed("Process is no longer running")

    async def _abort_start(
        self,
        process: asyncio.subprocess.Process,
        tracked: TrackedProcess,
        message: str,
        *,
        crashed: bool = False,
    ) -> None:
        """Move a failed start to ``error`` and release everything it spawned."""
        async with self._lock:
            if self._process is not process:
                return
            logger.warning(message)
            readers = self._reader_tasks
            if crashed and process.returncode is not None:
                self._record_exit(process.returncode)
            self._error = message
            self._transition(ProcessState.ERROR, message)
            self._detach()
            try:
                await self._terminate(process, tracked)
            except StopFailed as e:
                logger.error(str(e))
            await self._cleanup_resources(tracked)
            await self._drain_readers(readers)

    # === Output and exit watching ===

    async def _read_output(
        self, stream: asyncio.StreamReader | None, source: LogSource
    ) -> None:
        if stream is None:
            return
        async for entry in iter_log_entries(stream, source):
            self.log_buffer.push(entry)
            url = detect_dev_server_url(entry.message)
            if url is not None and url != self.probe.url:
                self.probe.url = url
                logger.info(f"Detected dev server URL {url}")

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        returncode = await wait_for_exit(process)
        # Bounded: descendants may hold the pipes open until the group is swept.
        await self._drain_readers(readers)
        if returncode is None or self._process is not process:
            return
        if self._state in (ProcessState.STOPPING, ProcessState.STOPPED):
            return

        tracked = self._tracked
        reason = self._record_exit(returncode)
        if returncode == 0:
            logger.info(reason)
            self._error = None
            self._transition(ProcessState.STOPPED, reason)
        else:
            logger.warning(reason)
            self._error = reason
            self._transition(ProcessState.ERROR, reason)
        self._detach()
        await self._cleanup_resources(tracked)

    def _record_exit(self, returncode: int) -> str:
        reason, signum = _describe_exit(returncode)
        self._last_exit = ExitInfo(
            returncode=returncode if returncode >= 0 else None,
            signal=signum,
            reason=reason,
            exited_at=datetime.now(),
        )
        return reason

    async def _drain_readers(
        self, tasks: list[asyncio.Task[None]] | None = None
    ) -> None:
        if tasks is None:
            tasks = self._reader_tasks
        pending_readers = [t for t in tasks if not t.done()]
        if not pending_readers:
            return
        _, pending = await asyncio.wait(pending_readers, timeout=_READER_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()

    def _detach(self) -> None:
        self._process = None
        self._tracked = None
        self._handle = None

    async def _cleanup_resources(self, tracked: TrackedProcess | None) -> None:
        remove_stale_socket(self.config.socket_path)
        if tracked is not None:
            swept = await asyncio.to_thread(
                sweep_process_group, tracked, self.config.force_kill_timeout
            )
            if swept:
                logger.info(f"Cleaned up {swept} leftover process(es)")

    # === Stop ===

    async def _terminate(
        self, process: asyncio.subprocess.Process, tracked: TrackedProcess | None
    ) -> None:
        """SIGTERM the group, then SIGKILL it after the grace period."""
        if process.returncode is not None:
            return

        if tracked is None or not signal_process_group(tracked, signal.SIGTERM):
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        if (
            await wait_for_exit(process, timeout=self.config.graceful_shutdown_timeout)
            is not None
        ):
            return
        logger.warning("Graceful shutdown timed out, forcing kill")

        if tracked is None or not signal_process_group(tracked, signal.SIGKILL):
            try:
                process.kill()
            except ProcessLookupError:
                pass
        if await wait_for_exit(process, timeout=self.config.force_kill_timeout) is None:
            raise StopFailed(f"Process {process.pid} did not exit after SIGKILL")

    async def stop(self) -> None:
        """Stop the app. A no-op when it is already stopped."""
        task = self._start_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        async with self._lock:
            if self._state == ProcessState.STOPPED:
                return

            process = self._process
            tracked = self._tracked
            self._transition(ProcessState.STOPPING)

            if process is not None:
                logger.info(f"Stopping app (pid={process.pid})")
                try:
                    await self._terminate(process, tracked)
                except StopFailed as e:
                    self._error = str(e)
                    self._transition(ProcessState.ERROR, str(e))
                    logger.error(str(e))
                    raise

            await self._cleanup_resources(tracked)
            await self._drain_readers()
            if self._exit_task is not None and not self._exit_task.done():
                self._exit_task.cancel()
            self._exit_task = None
            self._reader_tasks = []

            self._detach()
            self._error = None
            self._transition(ProcessState.STOPPED)
            logger.info("App stopped")

    async def restart(self, options: StartOptions | None = None) -> ProcessHandle:
        """Stop (unless already stopped), then start. A failed stop aborts the restart."""
        if self._state != ProcessState.STOPPED:
            await self.stop()
        return await self.start(options)

    # === Readiness ===

    async def wait_for_ready(self, timeout: float) -> StatusResponse:
        """Wait until the running app answers its readiness probe.

        Fails right away when nothing is running; never starts or stops the app.
        """
        if self._state == ProcessState.STOPPED:
            raise NotRunning("App is not running. Start it with app_start first.")
        if self._state == ProcessState.ERROR:
            raise NotRunning(f"App is in error state: {self._error}")
        if self._state == ProcessState.STOPPING:
            raise NotRunning("App is stopping")

        def guard() -> None:
            if self._state not in (ProcessState.STARTING, ProcessState.RUNNING):
                raise NotRunning(
                    self._error or f"App is no longer running ({self._state.value})"
                )

        ready = await self.probe.wait_until_ready(
            timeout=timeout,
            interval=self.config.ready_poll_interval,
            guard=guard,
        )
        if not ready:
            raise ReadinessTimeout(
                f"App did not become ready at {self.probe.url} within {timeout}s"
            )
        return self.get_status()
