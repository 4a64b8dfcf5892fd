"""Runtime configuration for appctl.

`AppControlConfig` is the single source of truth for defaults. Values come from
(lowest to highest precedence) the model defaults, the environment (optionally
populated from ``<project_dir>/.env``), and CLI options.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from appctl.constants import (
    CONNECT_TIMEOUT,
    DEFAULT_APP_COMMAND,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_DEV_SERVER_URL,
    DEFAULT_SOCKET_PATH,
    FORCE_KILL_TIMEOUT,
    GRACEFUL_SHUTDOWN_TIMEOUT,
    GUI_BRIDGE_ENV_VAR,
    GUI_SOCKET_ENV_VAR,
    LOG_BUFFER_CAPACITY,
    READY_POLL_INTERVAL,
    READY_PROBE_TIMEOUT,
    RUNNER_KILL_GRACE,
)

ENV_PREFIX = "APPCTL_"


class AppControlConfig(BaseModel):
    """Complete configuration for one supervised app."""

    project_dir: Path = Field(default_factory=Path.cwd)
    command: list[str] = Field(default_factory=lambda: list(DEFAULT_APP_COMMAND))
    env: dict[str, str] = Field(default_factory=dict)
    ready_url: str = DEFAULT_DEV_SERVER_URL
    socket_path: Path = Path(DEFAULT_SOCKET_PATH)
    enable_gui_bridge: bool = True

    log_capacity: int = Field(default=LOG_BUFFER_CAPACITY, ge=1)

    ready_poll_interval: float = Field(default=READY_POLL_INTERVAL, gt=0)
    probe_timeout: float = Field(default=READY_PROBE_TIMEOUT, gt=0)
    graceful_shutdown_timeout: float = Field(default=GRACEFUL_SHUTDOWN_TIMEOUT, gt=0)
    force_kill_timeout: float = Field(default=FORCE_KILL_TIMEOUT, gt=0)

    command_timeout: float = Field(default=DEFAULT_COMMAND_TIMEOUT, gt=0)
    connect_timeout: float = Field(default=CONNECT_TIMEOUT, gt=0)
    runner_kill_grace: float = Field(default=RUNNER_KILL_GRACE, gt=0)

    def child_env(self, extra_env: dict[str, str] | None = None) -> dict[str, str]:
        """Environment for the supervised process."""
        env = {**os.environ, **self.env}
        if self.enable_gui_bridge:
            env[GUI_BRIDGE_ENV_VAR] = "1"
            env[GUI_SOCKET_ENV_VAR] = str(self.socket_path)
        if extra_env:
            env.update(extra_env)
        return env

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> AppControlConfig:
        """Build a config from ``APPCTL_*`` variables (after loading ``.env``)."""
        project_dir = (project_dir or Path.cwd()).resolve()
        dotenv_path = project_dir / ".env"
        if dotenv_path.exists():
            load_dotenv(dotenv_path)

        values: dict[str, object] = {"project_dir": project_dir}

        command = os.environ.get(f"{ENV_PREFIX}COMMAND")
        if command:
            values["command"] = shlex.split(command)

        ready_url = os.environ.get(f"{ENV_PREFIX}READY_URL")
        if ready_url:
            values["ready_url"] = ready_url

        socket_path = os.environ.get(f"{ENV_PREFIX}SOCKET_PATH")
        if socket_path:
            values["socket_path"] = Path(socket_path)

        capacity = os.environ.get(f"{ENV_PREFIX}LOG_CAPACITY")
        if capacity:
            values["log_capacity"] = int(capacity)

        grace = os.environ.get(f"{ENV_PREFIX}GRACEFUL_SHUTDOWN_TIMEOUT")
        if grace:
            values["graceful_shutdown_timeout"] = float(grace)

        return cls.model_validate(values)

    def with_overrides(self, **overrides: object) -> AppControlConfig:
        """Return a copy with every non-None override applied."""
        update = {k: v for k, v in overrides.items() if v is not None}
        if not update:
            return self
        return self.model_validate({**self.model_dump(), **update})
