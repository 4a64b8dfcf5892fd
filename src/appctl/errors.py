"""Error kinds raised by the supervisor, bridge and runner.

Every error carries a stable ``kind`` string so the dispatcher can report it
without inspecting exception classes.
"""

from __future__ import annotations

from typing import ClassVar


class AppControlError(Exception):
    """Base class for all appctl errors."""

    kind: ClassVar[str] = "error"


# === Process lifecycle ===


class SpawnError(AppControlError):
    """The OS refused to start a process (missing binary, bad cwd, ...)."""

    kind: ClassVar[str] = "spawn_error"


class ReadinessTimeout(AppControlError):
    """The readiness probe did not succeed within the allotted time."""

    kind: ClassVar[str] = "readiness_timeout"


class NotRunning(AppControlError):
    """An operation needs a live app but none is running."""

    kind: ClassVar[str] = "not_running"


class ProcessCrashed(AppControlError):
    """The supervised process exited on its own while it was expected to live."""

    kind: ClassVar[str] = "process_crashed"


class StartCancelled(AppControlError):
    """An in-flight start was cancelled by ``stop()``."""

    kind: ClassVar[str] = "start_cancelled"


class StopFailed(AppControlError):
    """The supervised process could not be terminated."""

    kind: ClassVar[str] = "stop_failed"


class InvalidTransition(AppControlError):
    """A state change outside the lifecycle table was attempted."""

    kind: ClassVar[str] = "invalid_transition"


# === Control bridge ===


class BridgeDisconnected(AppControlError):
    """The companion socket connection is closed or was lost."""

    kind: ClassVar[str] = "bridge_disconnected"


class BridgeUnavailable(BridgeDisconnected):
    """The companion socket does not exist (yet)."""

    kind: ClassVar[str] = "bridge_unavailable"


class RequestTimeout(AppControlError):
    """No response arrived for a bridge request in time."""

    kind: ClassVar[str] = "request_timeout"


class RemoteError(AppControlError):
    """The companion answered with a well-formed error response."""

    kind: ClassVar[str] = "remote_error"

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message)
        self.command: str = command
