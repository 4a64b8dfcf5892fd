"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from appctl.config import AppControlConfig
from appctl.constants import DEFAULT_DEV_SERVER_URL, GUI_BRIDGE_ENV_VAR, GUI_SOCKET_ENV_VAR

_ENV_KEYS = (
    "APPCTL_COMMAND",
    "APPCTL_READY_URL",
    "APPCTL_SOCKET_PATH",
    "APPCTL_LOG_CAPACITY",
    "APPCTL_GRACEFUL_SHUTDOWN_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Register every key with monkeypatch so values loaded from .env are undone too.
    for key in _ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


class TestAppControlConfig:
    """Tests for AppControlConfig."""

    def test_defaults(self, tmp_path: Path) -> None:
        config = AppControlConfig.from_env(tmp_path)
        assert config.project_dir == tmp_path.resolve()
        assert config.command == ["pnpm", "dev"]
        assert config.ready_url == DEFAULT_DEV_SERVER_URL
        assert config.log_capacity == 1000

    def test_environment_overrides(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("APPCTL_COMMAND", "npm run tauri dev")
        monkeypatch.setenv("APPCTL_READY_URL", "http://localhost:5173/")
        monkeypatch.setenv("APPCTL_GRACEFUL_SHUTDOWN_TIMEOUT", "2.5")
        config = AppControlConfig.from_env(tmp_path)
        assert config.command == ["npm", "run", "tauri", "dev"]
        assert config.ready_url == "http://localhost:5173/"
        assert config.graceful_shutdown_timeout == 2.5

    def test_dotenv_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text(
            "APPCTL_SOCKET_PATH=/tmp/my-app.sock\nAPPCTL_LOG_CAPACITY=20\n"
        )
        config = AppControlConfig.from_env(tmp_path)
        assert config.socket_path == Path("/tmp/my-app.sock")
        assert config.log_capacity == 20

    def test_with_overrides(self, tmp_path: Path) -> None:
        config = AppControlConfig(project_dir=tmp_path)
        assert config.with_overrides(command=None) is config

        updated = config.with_overrides(command=["yarn", "dev"], ready_url=None)
        assert updated.command == ["yarn", "dev"]
        assert updated.ready_url == config.ready_url
        assert config.command == ["pnpm", "dev"]

    def test_child_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(GUI_BRIDGE_ENV_VAR, raising=False)
        config = AppControlConfig(
            project_dir=tmp_path,
            socket_path=tmp_path / "gui.sock",
            env={"NODE_ENV": "development"},
        )
        env = config.child_env({"EXTRA": "1", "NODE_ENV": "test"})
        assert env[GUI_BRIDGE_ENV_VAR] == "1"
        assert env[GUI_SOCKET_ENV_VAR] == str(tmp_path / "gui.sock")
        assert env["EXTRA"] == "1"
        assert env["NODE_ENV"] == "test"

        disabled = config.with_overrides(enable_gui_bridge=False).child_env()
        assert GUI_BRIDGE_ENV_VAR not in disabled
        assert disabled["NODE_ENV"] == "development"
