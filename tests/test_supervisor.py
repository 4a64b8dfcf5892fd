"""Tests for the process supervisor lifecycle.

These run real ``python -c`` children; readiness is decided by FakeProbe so no
HTTP server is needed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import psutil
import pytest

from appctl.cli.app.supervisor import (
    ProcessSupervisor,
    detect_dev_server_url,
    is_transition_allowed,
)
from appctl.config import AppControlConfig
from appctl.errors import (
    InvalidTransition,
    NotRunning,
    ProcessCrashed,
    ReadinessTimeout,
    SpawnError,
    StartCancelled,
)
from appctl.models import LogLevel, LogQuery, ProcessState, StartOptions


ConfigFactory = Callable[[str], AppControlConfig]
Eventually = Callable[..., Awaitable[None]]
MakeSupervisor = Callable[..., tuple[ProcessSupervisor, Any]]

SLEEPER = "import time\nprint('app up', flush=True)\ntime.sleep(60)\n"

# Exits while a child it spawned keeps the output pipes open.
ORPHANING_CRASH = (
    "import os, subprocess, sys\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print(f'child {child.pid}', flush=True)\n"
    "os._exit(3)\n"
)


def _pid_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class TestDetectDevServerUrl:
    """Tests for picking the dev server URL out of app output."""

    @pytest.mark.parametrize(
        ("line", "expected"),
        [
            ("  > Local:   http://localhost:5173/", "http://localhost:5173"),
            ("\x1b[32mLocal:\x1b[0m   http://127.0.0.1:1420/", "http://127.0.0.1:1420"),
            ("Network: use --host to expose", None),
            ("ready in 300ms", None),
        ],
    )
    def test_detect(self, line: str, expected: str | None) -> None:
        assert detect_dev_server_url(line) == expected


class TestTransitionTable:
    """Tests for the lifecycle transition table."""

    def test_allowed_and_forbidden(self) -> None:
        assert is_transition_allowed(ProcessState.STOPPED, ProcessState.STARTING)
        assert is_transition_allowed(ProcessState.ERROR, ProcessState.STARTING)
        assert is_transition_allowed(ProcessState.RUNNING, ProcessState.ERROR)
        assert not is_transition_allowed(ProcessState.STOPPED, ProcessState.RUNNING)
        assert not is_transition_allowed(ProcessState.STOPPING, ProcessState.RUNNING)
        assert not is_transition_allowed(ProcessState.STOPPED, ProcessState.STOPPING)

    def test_invalid_transition_raises(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        with pytest.raises(InvalidTransition):
            supervisor._transition(ProcessState.RUNNING)
        assert supervisor.state == ProcessState.STOPPED
        assert len(supervisor.transition_history) == 0


class TestStartStop:
    """Tests for starting and stopping the app."""

    @pytest.mark.asyncio
    async def test_start_then_stop(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, probe = make_supervisor(python_app_config(SLEEPER))

        handle = await supervisor.start(StartOptions(timeout=5))
        assert supervisor.state == ProcessState.RUNNING
        assert psutil.pid_exists(handle.pid)
        assert handle.dev_server_url == probe.url
        assert probe.checks >= 1

        status = supervisor.get_status()
        assert status.pid == handle.pid
        assert status.uptime_ms is not None

        await supervisor.stop()
        assert supervisor.state == ProcessState.STOPPED
        assert supervisor.handle is None
        assert _pid_gone(handle.pid)
        assert supervisor.get_status().pid is None

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        try:
            first = await supervisor.start(StartOptions(timeout=5))
            second = await supervisor.start(StartOptions(timeout=5))
            assert first.pid == second.pid
            starts = [
                t for t in supervisor.transition_history
                if t.to_state == ProcessState.STARTING
            ]
            assert len(starts) == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_share_one_process(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        try:
            first, second = await asyncio.gather(
                supervisor.start(StartOptions(timeout=5)),
                supervisor.start(StartOptions(timeout=5)),
            )
            assert first.pid == second.pid
            starts = [
                t for t in supervisor.transition_history
                if t.to_state == ProcessState.STARTING
            ]
            assert len(starts) == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        await supervisor.stop()
        await supervisor.stop()
        assert supervisor.state == ProcessState.STOPPED
        assert len(supervisor.transition_history) == 0

    @pytest.mark.asyncio
    async def test_start_without_waiting(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, probe = make_supervisor(python_app_config(SLEEPER), ready=False)
        try:
            handle = await supervisor.start(StartOptions(wait_for_ready=False))
            assert supervisor.state == ProcessState.RUNNING
            assert handle.dev_server_url is None
            assert probe.checks == 0
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_gives_new_pid(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        try:
            first = await supervisor.start(StartOptions(timeout=5))
            second = await supervisor.restart(StartOptions(timeout=5))
            assert second.pid != first.pid
            assert supervisor.state == ProcessState.RUNNING
            assert _pid_gone(first.pid)
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_sigterm_ignoring_app_is_force_killed(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('handler installed', flush=True)\n"
            "time.sleep(60)\n"
        )
        supervisor, _ = make_supervisor(python_app_config(script))
        handle = await supervisor.start(StartOptions(wait_for_ready=False))
        await eventually(
            lambda: any(
                e.message == "handler installed" for e in supervisor.get_logs()
            )
        )

        start = time.monotonic()
        await supervisor.stop()
        elapsed = time.monotonic() - start

        assert supervisor.state == ProcessState.STOPPED
        assert _pid_gone(handle.pid)
        assert 0.9 <= elapsed < 5

    @pytest.mark.asyncio
    async def test_removes_stale_socket_and_sets_child_env(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = (
            "import os, time\n"
            "print('bridge=' + os.environ['APPCTL_GUI_BRIDGE'], flush=True)\n"
            "print('socket=' + os.environ['APPCTL_GUI_SOCKET'], flush=True)\n"
            "print('extra=' + os.environ['EXTRA_VALUE'], flush=True)\n"
            "time.sleep(60)\n"
        )
        config = python_app_config(script)
        config.socket_path.write_text("stale")
        supervisor, _ = make_supervisor(config)
        try:
            await supervisor.start(
                StartOptions(wait_for_ready=False, extra_env={"EXTRA_VALUE": "x"})
            )
            assert not config.socket_path.exists()
            await eventually(lambda: len(supervisor.get_logs()) >= 3)
            messages = [e.message for e in supervisor.get_logs()]
            assert messages == [
                "bridge=1",
                f"socket={config.socket_path}",
                "extra=x",
            ]
        finally:
            await supervisor.stop()


class TestStartFailures:
    """Tests for starts that do not end in a running app."""

    @pytest.mark.asyncio
    async def test_spawn_error_then_retry(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        config = python_app_config(SLEEPER)
        supervisor, _ = make_supervisor(
            config.with_overrides(command=["/nonexistent/appctl-dev-binary"])
        )

        with pytest.raises(SpawnError):
            await supervisor.start(StartOptions(timeout=5))
        assert supervisor.state == ProcessState.ERROR
        assert supervisor.get_status().error

        supervisor.config = config
        try:
            handle = await supervisor.start(StartOptions(timeout=5))
            assert supervisor.state == ProcessState.RUNNING
            assert handle.pid
            assert supervisor.get_status().error is None
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_readiness_timeout_kills_the_app(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        supervisor, probe = make_supervisor(python_app_config(SLEEPER), ready=False)
        task = asyncio.create_task(supervisor.start(StartOptions(timeout=0.5)))
        await eventually(lambda: supervisor.handle is not None)
        pid = supervisor.handle.pid

        with pytest.raises(ReadinessTimeout):
            await task

        assert supervisor.state == ProcessState.ERROR
        assert "did not become ready" in (supervisor.get_status().error or "")
        assert supervisor.get_status().pid is None
        assert probe.checks >= 2
        assert _pid_gone(pid)

    @pytest.mark.asyncio
    async def test_crash_during_start(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = "import sys\nprint('Error: missing config', flush=True)\nsys.exit(2)\n"
        supervisor, _ = make_supervisor(python_app_config(script), ready=False)

        with pytest.raises(ProcessCrashed):
            await supervisor.start(StartOptions(timeout=10))

        await eventually(lambda: supervisor.state == ProcessState.ERROR)
        status = supervisor.get_status()
        assert status.last_exit is not None
        assert status.last_exit.returncode == 2
        errors = supervisor.get_logs(LogQuery(level=LogLevel.ERROR))
        assert [e.message for e in errors] == ["Error: missing config"]

    @pytest.mark.asyncio
    async def test_start_again_right_after_crash(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, probe = make_supervisor(
            python_app_config(ORPHANING_CRASH), ready=False
        )

        with pytest.raises(ProcessCrashed):
            await supervisor.start(StartOptions(timeout=10))
        assert supervisor.state == ProcessState.ERROR
        assert supervisor.get_status().last_exit is not None
        assert supervisor.get_status().last_exit.returncode == 3

        supervisor.config = python_app_config(SLEEPER)
        probe.ready = True
        try:
            handle = await supervisor.start(StartOptions(timeout=5))
            assert supervisor.state == ProcessState.RUNNING
            assert psutil.pid_exists(handle.pid)
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_start(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER), ready=False)
        task = asyncio.create_task(supervisor.start(StartOptions(timeout=30)))
        await eventually(lambda: supervisor.handle is not None)
        pid = supervisor.handle.pid

        await supervisor.stop()

        with pytest.raises(StartCancelled):
            await task
        assert supervisor.state == ProcessState.STOPPED
        assert _pid_gone(pid)


class TestUnexpectedExit:
    """Tests for the app exiting on its own after it was running."""

    @pytest.mark.asyncio
    async def test_crash_moves_to_error(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = "import sys, time\ntime.sleep(0.3)\nsys.exit(3)\n"
        supervisor, _ = make_supervisor(python_app_config(script))

        await supervisor.start(StartOptions(wait_for_ready=False))
        await eventually(lambda: supervisor.state == ProcessState.ERROR)

        status = supervisor.get_status()
        assert status.error == "Process exited with code 3"
        assert status.last_exit is not None
        assert status.last_exit.returncode == 3
        assert status.pid is None

        with pytest.raises(NotRunning):
            await supervisor.wait_for_ready(timeout=1)

        # error -> stopped through stop()
        await supervisor.stop()
        assert supervisor.state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_crash_with_surviving_child_is_detected(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(ORPHANING_CRASH))

        await supervisor.start(StartOptions(wait_for_ready=False))
        await eventually(lambda: supervisor.state == ProcessState.ERROR)

        status = supervisor.get_status()
        assert status.error == "Process exited with code 3"
        assert status.pid is None

        child_lines = [
            e.message for e in supervisor.get_logs() if e.message.startswith("child ")
        ]
        assert len(child_lines) == 1
        child_pid = int(child_lines[0].split()[1])
        await eventually(lambda: _pid_gone(child_pid))

    @pytest.mark.asyncio
    async def test_clean_exit_moves_to_stopped(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = "import time\ntime.sleep(0.3)\n"
        supervisor, _ = make_supervisor(python_app_config(script))

        await supervisor.start(StartOptions(wait_for_ready=False))
        await eventually(lambda: supervisor.state == ProcessState.STOPPED)

        status = supervisor.get_status()
        assert status.error is None
        assert status.last_exit is not None
        assert status.last_exit.returncode == 0


class TestWaitForReady:
    """Tests for waiting on an already started app."""

    @pytest.mark.asyncio
    async def test_not_running_fails_fast(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, probe = make_supervisor(python_app_config(SLEEPER))
        start = time.monotonic()
        with pytest.raises(NotRunning):
            await supervisor.wait_for_ready(timeout=10)
        assert time.monotonic() - start < 1
        assert probe.checks == 0

    @pytest.mark.asyncio
    async def test_waits_until_probe_succeeds(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, probe = make_supervisor(python_app_config(SLEEPER), ready=False)
        try:
            await supervisor.start(StartOptions(wait_for_ready=False))

            async def become_ready() -> None:
                await asyncio.sleep(0.3)
                probe.ready = True

            flip = asyncio.create_task(become_ready())
            status = await supervisor.wait_for_ready(timeout=5)
            await flip
            assert status.state == ProcessState.RUNNING
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_times_out(
        self, python_app_config: ConfigFactory, make_supervisor: MakeSupervisor
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER), ready=False)
        try:
            await supervisor.start(StartOptions(wait_for_ready=False))
            with pytest.raises(ReadinessTimeout):
                await supervisor.wait_for_ready(timeout=0.3)
            # Waiting never changes the lifecycle state.
            assert supervisor.state == ProcessState.RUNNING
        finally:
            await supervisor.stop()


class TestLogs:
    """Tests for captured app output."""

    @pytest.mark.asyncio
    async def test_levels_and_detected_url(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        script = (
            "import sys, time\n"
            "print('  > Local:   http://localhost:5173/', flush=True)\n"
            "print('warning: slow dependency scan', flush=True)\n"
            "sys.stderr.write('Error: port in use\\n')\n"
            "sys.stderr.flush()\n"
            "time.sleep(60)\n"
        )
        supervisor, probe = make_supervisor(python_app_config(script))
        try:
            await supervisor.start(StartOptions(wait_for_ready=False))
            await eventually(lambda: len(supervisor.get_logs()) >= 3)

            assert probe.url == "http://localhost:5173"
            warnings = supervisor.get_logs(LogQuery(level=LogLevel.WARN))
            assert sorted(e.message for e in warnings) == [
                "Error: port in use",
                "warning: slow dependency scan",
            ]
            stderr = [e for e in supervisor.get_logs() if e.source == "stderr"]
            assert [e.level for e in stderr] == [LogLevel.ERROR]
            assert len(supervisor.get_logs(LogQuery(limit=1))) == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_logs_cleared_on_next_start(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))
        try:
            await supervisor.start(StartOptions(wait_for_ready=False))
            await eventually(lambda: len(supervisor.get_logs()) == 1)
            await supervisor.restart(StartOptions(wait_for_ready=False))
            await eventually(lambda: len(supervisor.get_logs()) >= 1)
            assert [e.message for e in supervisor.get_logs()] == ["app up"]
        finally:
            await supervisor.stop()


class TestLifecycleEndToEnd:
    """A full start, restart and stop cycle."""

    @pytest.mark.asyncio
    async def test_full_cycle(
        self,
        python_app_config: ConfigFactory,
        make_supervisor: MakeSupervisor,
        eventually: Eventually,
    ) -> None:
        supervisor, _ = make_supervisor(python_app_config(SLEEPER))

        first = await supervisor.start(StartOptions(timeout=5))
        assert supervisor.get_status().state == ProcessState.RUNNING
        await eventually(lambda: len(supervisor.get_logs()) >= 1)

        second = await supervisor.restart(StartOptions(timeout=5))
        assert second.pid != first.pid

        await supervisor.stop()
        assert supervisor.get_status().state == ProcessState.STOPPED

        history = list(supervisor.transition_history)
        assert history[0].from_state == ProcessState.STOPPED
        assert history[-1].to_state == ProcessState.STOPPED
        for transition in history:
            assert is_transition_allowed(transition.from_state, transition.to_state)
        for previous, current in zip(history, history[1:]):
            assert previous.to_state == current.from_state
