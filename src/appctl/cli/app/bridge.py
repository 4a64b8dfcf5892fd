"""Client for the app's companion control socket.

Frames are newline-delimited JSON. Every request carries an integer ``id`` and
the companion echoes it in the response, so many requests can be in flight on
one connection and answered in any order.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import JsonValue, ValidationError

from appctl.cli.app.logging import LogComponent, get_logger
from appctl.constants import (
    CONNECT_TIMEOUT,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_SOCKET_PATH,
    MAX_FRAME_BYTES,
)
from appctl.errors import (
    BridgeDisconnected,
    BridgeUnavailable,
    RemoteError,
    RequestTimeout,
)
from appctl.models import (
    BridgeRequest,
    BridgeResponse,
    BridgeStatus,
    ConnectionState,
    ElementPosition,
    JsonObject,
    MouseButton,
    ScreenshotResult,
)


logger = get_logger(LogComponent.BRIDGE)

DEFAULT_WINDOW_LABEL = "main"


# === Command names understood by the companion ===


class BridgeCommand:
    PING = "PING"
    GET_DOM = "GET_DOM"
    EXECUTE_JS = "EXECUTE_JS"
    TAKE_SCREENSHOT = "TAKE_SCREENSHOT"
    SIMULATE_MOUSE_MOVEMENT = "SIMULATE_MOUSE_MOVEMENT"
    SIMULATE_TEXT_INPUT = "SIMULATE_TEXT_INPUT"
    GET_ELEMENT_POSITION = "GET_ELEMENT_POSITION"
    SEND_TEXT_TO_ELEMENT = "SEND_TEXT_TO_ELEMENT"
    MANAGE_LOCAL_STORAGE = "MANAGE_LOCAL_STORAGE"
    MANAGE_WINDOW = "MANAGE_WINDOW"


@dataclass
class PendingRequest:
    """An in-flight request waiting for its response."""

    id: int
    command: str
    timeout: float
    future: asyncio.Future[BridgeResponse]
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None


class ControlBridge:
    """Persistent connection to the companion socket.

    The bridge never reconnects by itself: after a disconnect the caller
    decides whether to ``connect()`` again.
    """

    def __init__(
        self,
        socket_path: Path | str = DEFAULT_SOCKET_PATH,
        *,
        connect_timeout: float = CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.socket_path: Path = Path(socket_path)
        self.connect_timeout: float = connect_timeout
        self.command_timeout: float = command_timeout

        self._state: ConnectionState = ConnectionState.DISCONNECTED
        self._error: str | None = None
        self._last_connected_at: datetime | None = None

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._write_lock: asyncio.Lock = asyncio.Lock()

        self._pending: dict[int, PendingRequest] = {}
        self._ids: itertools.count[int] = itertools.count(1)

    # === Connection ===

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._writer is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_status(self) -> BridgeStatus:
        return BridgeStatus(
            state=self._state,
            socket_path=str(self.socket_path),
            error=self._error,
            last_connected_at=self._last_connected_at,
            pending_requests=len(self._pending),
        )

    async def connect(self) -> None:
        """Open the connection. Concurrent callers share one attempt."""
        if self.is_connected:
            return
        task = self._connect_task
        if task is None or task.done():
            task = asyncio.create_task(self._open())
            self._connect_task = task
        await asyncio.shield(task)

    async def _open(self) -> None:
        path = self.socket_path
        if not path.exists():
            self._error = f"Socket not found at {path}"
            raise BridgeUnavailable(
                f"Companion socket not found at {path}. "
                "The app may still be starting or was launched without the GUI bridge."
            )

        self._state = ConnectionState.CONNECTING
        self._error = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(path), limit=MAX_FRAME_BYTES),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            self._state = ConnectionState.DISCONNECTED
            self._error = "Connection timeout"
            raise BridgeDisconnected(
                f"Connection to {path} timed out after {self.connect_timeout}s"
            ) from None
        except OSError as e:
            self._state = ConnectionState.DISCONNECTED
            self._error = str(e)
            raise BridgeDisconnected(f"Failed to connect to socket {path}: {e}") from e
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._reader = reader
        self._writer = writer
        self._state = ConnectionState.CONNECTED
        self._last_connected_at = datetime.now()
        self._read_task = asyncio.create_task(self._read_loop(reader))
        logger.info(f"Connected to companion socket {path}")

    async def disconnect(self) -> None:
        """Close the connection and reject everything in flight. Idempotent."""
        connect_task = self._connect_task
        self._connect_task = None
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            await asyncio.gather(connect_task, return_exceptions=True)

        read_task = self._read_task
        self._read_task = None
        if read_task is not None and not read_task.done():
            read_task.cancel()
            await asyncio.gather(read_task, return_exceptions=True)

        writer = self._writer
        rejected = self._teardown(BridgeDisconnected("Disconnected"))
        if writer is not None:
            try:
                await writer.wait_closed()
            except OSError:
                pass
            logger.info(f"Disconnected from companion socket ({rejected} pending rejected)")

    def _teardown(self, error: BridgeDisconnected) -> int:
        """Drop the connection and reject all pending requests with ``error``."""
        writer = self._writer
        self._reader = None
        self._writer = None
        self._state = ConnectionState.DISCONNECTED

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)

        if writer is not None:
            writer.close()
        return len(pending)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        reason = "Connection closed by the app"
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self._handle_frame(line)
        except (OSError, ValueError) as e:
            reason = f"Connection lost: {e}"

        if self._reader is reader:
            self._error = reason
            rejected = self._teardown(BridgeDisconnected(reason))
            logger.warning(f"{reason} ({rejected} pending rejected)")

    def _handle_frame(self, line: bytes) -> None:
        text = line.strip()
        if not text:
            return
        try:
            response = BridgeResponse.model_validate_json(text)
        except ValidationError as e:
            logger.warning(f"Dropping malformed frame ({e.error_count()} error(s))")
            return

        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug(f"Dropping response for unknown or expired id {response.id}")
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(response)

    # === Requests ===

    def _expire(self, request_id: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        entry.future.set_exception(
            RequestTimeout(
                f"Command '{entry.command}' timed out after {entry.timeout}s"
            )
        )

    def _discard(self, request_id: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if not entry.future.done():
            entry.future.cancel()

    async def send(
        self,
        command: str,
        params: JsonObject | None = None,
        timeout: float | None = None,
    ) -> JsonValue:
        """Send ``command`` and return the ``data`` of its response.

        Raises RequestTimeout, BridgeDisconnected, or RemoteError when the
        companion rejects the command.
        """
        if not self.is_connected:
            raise BridgeDisconnected("Not connected to the companion socket")

        request_timeout = timeout if timeout is not None else self.command_timeout
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        entry = PendingRequest(
            id=request_id,
            command=command,
            timeout=request_timeout,
            future=loop.create_future(),
        )
        entry.timer = loop.call_later(request_timeout, self._expire, request_id)
        self._pending[request_id] = entry

        try:
            frame = BridgeRequest(id=request_id, command=command, params=params or {})
            await self._write_frame(frame, request_timeout)
            response = await entry.future
        finally:
            self._discard(request_id)

        if not response.success:
            raise RemoteError(
                response.error or f"Command '{command}' failed", command=command
            )
        return response.data

    async def _write_frame(self, frame: BridgeRequest, timeout: float) -> None:
        payload = (frame.model_dump_json() + "\n").encode("utf-8")
        async with self._write_lock:
            writer = self._writer
            if writer is None:
                raise BridgeDisconnected("Connection closed before the request was sent")
            try:
                writer.write(payload)
                await asyncio.wait_for(writer.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                raise RequestTimeout(
                    f"Command '{frame.command}' could not be sent within {timeout}s"
                ) from None
            except OSError as e:
                raise BridgeDisconnected(
                    f"Failed to send command '{frame.command}': {e}"
                ) from e

    # === Typed commands ===

    async def ping(self) -> str:
        data = await self.send(BridgeCommand.PING)
        if isinstance(data, dict) and data.get("value"):
            return str(data["value"])
        return "pong"

    async def get_dom(self, window_label: str = DEFAULT_WINDOW_LABEL) -> str:
        data = await self.send(BridgeCommand.GET_DOM, {"window_label": window_label})
        if isinstance(data, dict):
            return str(data.get("html") or "")
        return "" if data is None else str(data)

    async def execute_js(
        self,
        code: str,
        *,
        window_label: str = DEFAULT_WINDOW_LABEL,
        timeout_ms: int = 5000,
    ) -> JsonValue:
        # The companion enforces timeout_ms itself; leave room for its answer.
        return await self.send(
            BridgeCommand.EXECUTE_JS,
            {"code": code, "window_label": window_label, "timeout_ms": timeout_ms},
            timeout=max(self.command_timeout, timeout_ms / 1000 + 1.0),
        )

    async def evaluate(
        self,
        code: str,
        *,
        window_label: str = DEFAULT_WINDOW_LABEL,
        timeout_ms: int = 5000,
    ) -> JsonValue:
        """Run ``code`` in the webview and return its result value."""
        data = await self.execute_js(
            code, window_label=window_label, timeout_ms=timeout_ms
        )
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def screenshot(
        self, *, quality: int = 85, max_width: int | None = None
    ) -> ScreenshotResult:
        params: JsonObject = {"quality": quality}
        if max_width is not None:
            params["max_width"] = max_width
        data = await self.send(BridgeCommand.TAKE_SCREENSHOT, params)
        return ScreenshotResult.model_validate(data)

    async def mouse_move(
        self,
        x: float,
        y: float,
        *,
        click: bool = False,
        button: MouseButton = "left",
        relative: bool = False,
    ) -> JsonValue:
        return await self.send(
            BridgeCommand.SIMULATE_MOUSE_MOVEMENT,
            {"x": x, "y": y, "relative": relative, "click": click, "button": button},
        )

    async def click(self, x: float, y: float, button: MouseButton = "left") -> None:
        await self.mouse_move(x, y, click=True, button=button)

    async def type_text(self, text: str, *, delay_ms: int = 20) -> JsonValue:
        return await self.send(
            BridgeCommand.SIMULATE_TEXT_INPUT, {"text": text, "delay_ms": delay_ms}
        )

    async def get_element_position(
        self,
        selector: str,
        *,
        window_label: str = DEFAULT_WINDOW_LABEL,
        should_click: bool = False,
    ) -> ElementPosition:
        data = await self.send(
            BridgeCommand.GET_ELEMENT_POSITION,
            {
                "window_label": window_label,
                "selector_type": "css",
                "selector_value": selector,
                "should_click": should_click,
            },
        )
        return ElementPosition.model_validate(data)

    async def click_element(
        self,
        selector: str,
        *,
        window_label: str = DEFAULT_WINDOW_LABEL,
        button: MouseButton = "left",
    ) -> ElementPosition:
        """Click the center of the element matching ``selector``."""
        position = await self.get_element_position(selector, window_label=window_label)
        await self.click(
            position.x + position.width / 2,
            position.y + position.height / 2,
            button=button,
        )
        return position

    async def type_into_element(
        self,
        selector: str,
        text: str,
        *,
        window_label: str = DEFAULT_WINDOW_LABEL,
        delay_ms: int = 20,
    ) -> None:
        await self.send(
            BridgeCommand.SEND_TEXT_TO_ELEMENT,
            {
                "window_label": window_label,
                "selector_type": "css",
                "selector_value": selector,
                "text": text,
                "delay_ms": delay_ms,
            },
        )

    async def local_storage(
        self,
        action: str,
        *,
        key: str | None = None,
        value: str | None = None,
        window_label: str = DEFAULT_WINDOW_LABEL,
    ) -> JsonValue:
        params: JsonObject = {"action": action, "window_label": window_label}
        if key is not None:
            params["key"] = key
        if value is not None:
            params["value"] = value
        return await self.send(BridgeCommand.MANAGE_LOCAL_STORAGE, params)

    async def manage_window(
        self, action: str, params: JsonObject | None = None
    ) -> JsonValue:
        return await self.send(
            BridgeCommand.MANAGE_WINDOW, {"operation": action, **(params or {})}
        )

    async def get_url(self, window_label: str = DEFAULT_WINDOW_LABEL) -> str:
        return str(await self.evaluate("window.location.href", window_label=window_label))

    async def get_title(self, window_label: str = DEFAULT_WINDOW_LABEL) -> str:
        return str(await self.evaluate("document.title", window_label=window_label))
