"""Centralized logging for appctl (log buffer, level heuristic, routing, CLI formatting)."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator
from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict
from rich.logging import RichHandler
from rich.text import Text
from typing_extensions import override

from appctl.constants import LOG_BUFFER_CAPACITY
from appctl.models import LogEntry, LogLevel, LogSource
from appctl.utils import console, err_console


class LogComponent(str, Enum):
    """Where a log originated (one stdlib logger per component)."""

    SUPERVISOR = "supervisor"
    BRIDGE = "bridge"
    RUNNER = "runner"
    DISPATCHER = "dispatcher"
    MCP = "mcp"


# Components whose records also belong in the app log buffer.
_BUFFERED_COMPONENTS: frozenset[LogComponent] = frozenset({LogComponent.SUPERVISOR})


def classify_log_level(line: str) -> LogLevel:
    """Guess the level of an unstructured output line.

    Best-effort substring heuristic, not a structured-log parser.
    """
    lowered = line.lower()
    if "error" in lowered or "failed" in lowered:
        return LogLevel.ERROR
    if "warn" in lowered:
        return LogLevel.WARN
    if "debug" in lowered:
        return LogLevel.DEBUG
    return LogLevel.INFO


def _level_from_record(record: logging.LogRecord) -> LogLevel:
    if record.levelno >= logging.ERROR:
        return LogLevel.ERROR
    if record.levelno >= logging.WARNING:
        return LogLevel.WARN
    if record.levelno >= logging.INFO:
        return LogLevel.INFO
    return LogLevel.DEBUG


# === Log Buffer ===


class LogSubscription:
    """Async iterator over entries pushed after subscribing.

    Entries are dropped (and counted) when the consumer falls ``maxsize`` behind.
    """

    def __init__(self, buffer: LogBuffer, maxsize: int) -> None:
        self._buffer: LogBuffer = buffer
        self._loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[LogEntry | None] = asyncio.Queue(maxsize=maxsize)
        self._closed: bool = False
        self.dropped: int = 0

    def _put(self, entry: LogEntry | None) -> None:
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            if entry is None:
                # Make room for the close sentinel.
                self._queue.get_nowait()
                self._queue.put_nowait(None)
            else:
                self.dropped += 1

    def offer(self, entry: LogEntry | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(entry)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._put, entry)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.unsubscribe(self)
        self.offer(None)

    def __aiter__(self) -> AsyncIterator[LogEntry]:
        return self

    async def __anext__(self) -> LogEntry:
        entry = await self._queue.get()
        if entry is None:
            raise StopAsyncIteration
        return entry


class LogBuffer:
    """Bounded, ordered store of log entries (oldest evicted first)."""

    def __init__(self, capacity: int = LOG_BUFFER_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock: threading.Lock = threading.Lock()
        self._subscribers: list[LogSubscription] = []

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def push(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.offer(entry)

    def get_entries(
        self, min_level: LogLevel | None = None, limit: int | None = None
    ) -> list[LogEntry]:
        """Return the most recent matching entries in chronological order."""
        if limit is not None and limit <= 0:
            return []
        with self._lock:
            snapshot = list(self._entries)

        selected: list[LogEntry] = []
        for entry in reversed(snapshot):
            if min_level is not None and not entry.level.at_least(min_level):
                continue
            selected.append(entry)
            if limit is not None and len(selected) >= limit:
                break
        selected.reverse()
        return selected

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def subscribe(self, maxsize: int = 1000) -> LogSubscription:
        """Follow entries pushed from now on. Must be called inside a running loop."""
        sub = LogSubscription(self, maxsize=maxsize)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: LogSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)


async def iter_log_entries(
    stream: asyncio.StreamReader, source: LogSource
) -> AsyncIterator[LogEntry]:
    """Turn a subprocess output stream into leveled log entries."""
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; take what is buffered.
            raw = await stream.read(65536)
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        yield LogEntry(
            timestamp=datetime.now(),
            level=classify_log_level(line),
            message=line,
            source=source,
        )


# === Logger Routing ===


class _LogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    configured: bool = False


_STATE = _LogState()


class _BufferedLogHandler(logging.Handler):
    """Copy records of a component logger into the app log buffer."""

    def __init__(self, buffer: LogBuffer) -> None:
        super().__init__()
        self.buffer: LogBuffer = buffer

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.push(
                LogEntry(
                    timestamp=datetime.fromtimestamp(record.created),
                    level=_level_from_record(record),
                    message=self.format(record),
                    source="supervisor",
                )
            )
        except Exception:
            self.handleError(record)


def configure_logging(
    *, buffer: LogBuffer | None = None, level: int = logging.INFO
) -> None:
    """Configure all component loggers.

    Records go to stderr through rich; supervisor records are also copied into
    ``buffer`` so they show up next to the app's own output.
    """
    _STATE.buffer = buffer

    for component in LogComponent:
        logger = logging.getLogger(f"appctl.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        stderr_handler = RichHandler(
            console=err_console, show_path=False, markup=False, rich_tracebacks=False
        )
        stderr_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(stderr_handler)
        if buffer is not None and component in _BUFFERED_COMPONENTS:
            buffered = _BufferedLogHandler(buffer)
            buffered.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(buffered)
        logger.propagate = False

    _STATE.configured = True


def get_logger(component: LogComponent) -> logging.Logger:
    """Get the logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"appctl.{component.value}")
    if not _STATE.configured:
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger


_LEVEL_STYLE: dict[LogLevel, str] = {
    LogLevel.DEBUG: "dim",
    LogLevel.INFO: "cyan",
    LogLevel.WARN: "yellow",
    LogLevel.ERROR: "red",
}


def print_log_entry(entry: LogEntry, *, raw_output: bool = False) -> None:
    """Print a single log entry with a timestamp and level prefix."""
    if raw_output:
        print(entry.message)
        return

    ts = Text(entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"), style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.level.value:<5}]", style=_LEVEL_STYLE[entry.level])
    source = Text(entry.source, style="bright_blue")
    content = Text(entry.message)
    console.print(ts + sep + prefix + sep + source + sep + content)
