"""Centralized Pydantic models, enums, and type aliases for appctl."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Literal, TypeAlias

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    field_validator,
    model_validator,
)

from appctl.constants import (
    DEFAULT_LOG_QUERY_LIMIT,
    DEFAULT_READY_TIMEOUT,
    DEFAULT_START_TIMEOUT,
    LOG_QUERY_MAX_LIMIT,
)


# === Type Aliases ===

JsonObject: TypeAlias = dict[str, JsonValue]

LogSource = Literal["stdout", "stderr", "supervisor"]

MouseButton = Literal["left", "right", "middle"]


# === Enums ===


class ProcessState(str, Enum):
    """Lifecycle state of the supervised process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ConnectionState(str, Enum):
    """Connection state of the control bridge."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LogLevel(str, Enum):
    """Log level, totally ordered debug < info < warn < error."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _LEVEL_SEVERITY[self]

    def at_least(self, other: LogLevel) -> bool:
        return self.severity >= other.severity

    @classmethod
    def from_string(cls, value: str) -> LogLevel:
        normalized = value.strip().lower()
        if normalized == "warning":
            normalized = "warn"
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Invalid log level: {value}")


_LEVEL_SEVERITY: dict[LogLevel, int] = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


# === Log Models ===


class LogEntry(BaseModel):
    """A single captured output line of the supervised process."""

    timestamp: datetime
    level: LogLevel
    message: str
    source: LogSource = "stdout"

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class LogQuery(BaseModel):
    """Filter for log retrieval."""

    level: LogLevel | None = None
    limit: int | None = Field(default=None, ge=1, le=LOG_QUERY_MAX_LIMIT)


# === Process Models ===


class ExitInfo(BaseModel):
    """How the supervised process ended."""

    returncode: int | None = None
    signal: int | None = None
    reason: str
    exited_at: datetime


class ProcessHandle(BaseModel):
    """The live process owned by the supervisor."""

    pid: int
    started_at: datetime
    dev_server_url: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class StateTransition(BaseModel):
    """One recorded lifecycle state change."""

    from_state: ProcessState
    to_state: ProcessState
    at: datetime
    reason: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class StartOptions(BaseModel):
    """Options for starting the supervised process."""

    timeout: float = Field(default=DEFAULT_READY_TIMEOUT, gt=0)
    wait_for_ready: bool = True
    extra_env: dict[str, str] = Field(default_factory=dict)


class StatusResponse(BaseModel):
    """Snapshot of the supervisor state."""

    state: ProcessState
    pid: int | None = None
    started_at: datetime | None = None
    uptime_ms: int | None = None
    dev_server_url: str | None = None
    error: str | None = None
    last_exit: ExitInfo | None = None


class CommandResult(BaseModel):
    """Result of running a one-shot command."""

    command: list[str]
    cwd: str
    returncode: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


# === Bridge Wire Models ===


class BridgeRequest(BaseModel):
    """Request frame sent to the companion socket."""

    id: int
    command: str
    params: JsonObject = Field(default_factory=dict)


class BridgeResponse(BaseModel):
    """Response frame received from the companion socket."""

    id: int
    success: bool
    data: JsonValue | None = None
    error: str | None = None


class BridgeStatus(BaseModel):
    """Connection status of the control bridge."""

    state: ConnectionState
    socket_path: str
    error: str | None = None
    last_connected_at: datetime | None = None
    pending_requests: int = 0


class ScreenshotResult(BaseModel):
    """Screenshot payload returned by the companion."""

    data: str
    width: int | None = None
    height: int | None = None


class ElementPosition(BaseModel):
    """Bounding box of a DOM element in window coordinates."""

    x: float
    y: float
    width: float
    height: float


# === Dispatcher Envelope ===


class ToolResult(BaseModel):
    """Uniform envelope returned for every dispatched operation."""

    success: bool
    data: JsonObject | None = None
    error: str | None = None

    @classmethod
    def ok(cls, data: JsonObject | None = None) -> ToolResult:
        """Create a success envelope."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: JsonObject | None = None) -> ToolResult:
        """Create an error envelope."""
        return cls(success=False, error=error, data=data)


# === Tool Argument Models ===


class NoArgs(BaseModel):
    """Arguments of operations that take none."""


class StartArgs(BaseModel):
    timeout_seconds: float = Field(default=DEFAULT_START_TIMEOUT, gt=0)
    wait_for_ready: bool = True
    extra_env: dict[str, str] = Field(default_factory=dict)

    def to_options(self) -> StartOptions:
        return StartOptions(
            timeout=self.timeout_seconds,
            wait_for_ready=self.wait_for_ready,
            extra_env=self.extra_env,
        )


class RestartArgs(StartArgs):
    pass


class WaitReadyArgs(BaseModel):
    timeout_seconds: float = Field(default=DEFAULT_READY_TIMEOUT, gt=0)


class LogsArgs(BaseModel):
    lines: int = Field(default=DEFAULT_LOG_QUERY_LIMIT, ge=1)
    level: LogLevel = LogLevel.INFO

    @field_validator("lines")
    @classmethod
    def _clamp_lines(cls, value: int) -> int:
        return min(value, LOG_QUERY_MAX_LIMIT)

    @field_validator("level", mode="before")
    @classmethod
    def _parse_level(cls, value: object) -> object:
        if isinstance(value, str):
            return LogLevel.from_string(value)
        return value

    def to_query(self) -> LogQuery:
        return LogQuery(level=self.level, limit=self.lines)


class RunCommandArgs(BaseModel):
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_output_chars: int = Field(default=20000, ge=0)


class ScreenshotArgs(BaseModel):
    save_path: str | None = None
    quality: int = Field(default=85, ge=1, le=100)
    max_width: int | None = Field(default=None, gt=0)


class InspectArgs(BaseModel):
    selector: str | None = None
    include_styles: bool = False


class ClickArgs(BaseModel):
    selector: str | None = None
    x: float | None = None
    y: float | None = None
    button: MouseButton = "left"
    double_click: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> ClickArgs:
        if self.selector is None and (self.x is None or self.y is None):
            raise ValueError("Either selector or (x, y) coordinates must be provided")
        return self


class TypeArgs(BaseModel):
    text: str
    selector: str | None = None
    delay_ms: int = Field(default=20, ge=0)
    clear_first: bool = False


class KeyArgs(BaseModel):
    key: str = Field(min_length=1)


class EvaluateArgs(BaseModel):
    code: str = Field(min_length=1)
    timeout_ms: int = Field(default=5000, gt=0)


class ConsoleArgs(BaseModel):
    level: Literal["all", "error", "warn", "info", "log", "debug"] = "all"
    limit: int = Field(default=50, ge=1, le=LOG_QUERY_MAX_LIMIT)


class WaitForElementArgs(BaseModel):
    selector: str = Field(min_length=1)
    timeout_ms: int = Field(default=10000, gt=0)
    visible: bool = True


class WindowArgs(BaseModel):
    action: str = Field(min_length=1)
    params: JsonObject = Field(default_factory=dict)


class LocalStorageArgs(BaseModel):
    action: Literal["get", "set", "remove", "clear", "keys"]
    key: str | None = None
    value: str | None = None

    @model_validator(mode="after")
    def _require_key(self) -> LocalStorageArgs:
        if self.action in ("get", "set", "remove") and not self.key:
            raise ValueError(f"'key' is required for action '{self.action}'")
        if self.action == "set" and self.value is None:
            raise ValueError("'value' is required for action 'set'")
        return self
