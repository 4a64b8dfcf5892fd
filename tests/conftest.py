"""Shared fixtures for appctl tests."""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
import time
from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path

import httpx
import pytest

from appctl.cli.app.client import ReadinessProbe
from appctl.cli.app.logging import LogBuffer
from appctl.cli.app.supervisor import ProcessSupervisor
from appctl.config import AppControlConfig


class FakeProbe(ReadinessProbe):
    """Readiness probe whose answer is set by the test."""

    def __init__(self, ready: bool = True):
        super().__init__("http://127.0.0.1:1", timeout=0.1)
        self.ready: bool = ready
        self.checks: int = 0

    async def check(self, http: httpx.AsyncClient | None = None) -> bool:
        self.checks += 1
        return self.ready


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """A temp dir with a short path (unix socket paths are limited to ~100 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="appctl-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def python_app_config(short_tmp: Path) -> Callable[[str], AppControlConfig]:
    """Build a config whose app is ``python -u -c <script>``."""

    def make(script: str) -> AppControlConfig:
        return AppControlConfig(
            project_dir=short_tmp,
            command=[sys.executable, "-u", "-c", script],
            socket_path=short_tmp / "gui.sock",
            ready_poll_interval=0.05,
            graceful_shutdown_timeout=1.0,
            force_kill_timeout=1.0,
        )

    return make


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Await until a condition holds, failing the test after ``timeout`` seconds."""

    async def wait(
        condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02
    ) -> None:
        deadline = time.monotonic() + timeout
        while not condition():
            if time.monotonic() > deadline:
                pytest.fail(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return wait


@pytest.fixture
def make_supervisor() -> Callable[..., tuple[ProcessSupervisor, FakeProbe]]:
    """Build a supervisor for ``config`` whose readiness is a FakeProbe."""

    def make(
        config: AppControlConfig, ready: bool = True
    ) -> tuple[ProcessSupervisor, FakeProbe]:
        probe = FakeProbe(ready=ready)
        buffer = LogBuffer(config.log_capacity)
        return ProcessSupervisor(config, buffer, probe=probe), probe

    return make
