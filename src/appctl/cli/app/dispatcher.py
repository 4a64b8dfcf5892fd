"""Operation dispatch: validated arguments in, uniform ``ToolResult`` envelopes out.

Lifecycle operations go to the supervisor. UI operations need a running app
and go through the control bridge.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, JsonValue, ValidationError

from appctl.cli.app.bridge import ControlBridge
from appctl.cli.app.client import poll_until_true
from appctl.cli.app.logging import LogBuffer, LogComponent, get_logger
from appctl.cli.app.runner import CommandRunner
from appctl.cli.app.supervisor import ProcessSupervisor
from appctl.config import AppControlConfig
from appctl.errors import AppControlError, BridgeDisconnected, RequestTimeout
from appctl.models import (
    ClickArgs,
    ConsoleArgs,
    EvaluateArgs,
    InspectArgs,
    JsonObject,
    KeyArgs,
    LocalStorageArgs,
    LogsArgs,
    NoArgs,
    ProcessState,
    RestartArgs,
    RunCommandArgs,
    ScreenshotArgs,
    StartArgs,
    ToolResult,
    TypeArgs,
    WaitForElementArgs,
    WaitReadyArgs,
    WindowArgs,
)
from appctl.utils import truncate_text


logger = get_logger(LogComponent.DISPATCHER)

MAX_DOM_CHARS = 50_000
DOUBLE_CLICK_GAP = 0.05
ELEMENT_POLL_INTERVAL = 0.1

NOT_RUNNING_HINT = "Use app_start to launch the app before using UI tools."
CONNECTION_HINT = (
    "The companion socket may not be available. "
    "Ensure the app was started with the GUI bridge enabled."
)
_CONNECTION_ERROR_MARKERS = (
    "econnrefused",
    "enoent",
    "socket",
    "connect",
    "timeout",
    "timed out",
)


def is_connection_error(error: Exception) -> bool:
    if isinstance(error, (BridgeDisconnected, RequestTimeout)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _CONNECTION_ERROR_MARKERS)


class AppContext:
    """Everything one controller instance owns.

    Built once at startup and passed to the dispatcher and the MCP server.
    """

    def __init__(
        self,
        config: AppControlConfig,
        log_buffer: LogBuffer,
        supervisor: ProcessSupervisor,
        bridge: ControlBridge,
        runner: CommandRunner,
    ):
        self.config: AppControlConfig = config
        self.log_buffer: LogBuffer = log_buffer
        self.supervisor: ProcessSupervisor = supervisor
        self.bridge: ControlBridge = bridge
        self.runner: CommandRunner = runner

    @classmethod
    def from_config(cls, config: AppControlConfig) -> AppContext:
        log_buffer = LogBuffer(config.log_capacity)
        return cls(
            config=config,
            log_buffer=log_buffer,
            supervisor=ProcessSupervisor(config, log_buffer),
            bridge=ControlBridge(
                config.socket_path,
                connect_timeout=config.connect_timeout,
                command_timeout=config.command_timeout,
            ),
            runner=CommandRunner(
                default_timeout=config.command_timeout,
                kill_grace=config.runner_kill_grace,
                default_cwd=config.project_dir,
            ),
        )

    async def aclose(self) -> None:
        """Disconnect the bridge and stop the app."""
        await self.bridge.disconnect()
        try:
            await self.supervisor.stop()
        except AppControlError as e:
            logger.error(f"Failed to stop app during shutdown: {e}")


# === JavaScript snippets run inside the webview ===


def inspect_element_script(selector: str, include_styles: bool) -> str:
    sel = json.dumps(selector)
    styles = ""
    if include_styles:
        styles = """
    const s = window.getComputedStyle(el);
    info.computedStyles = {
      display: s.display, visibility: s.visibility, position: s.position,
      width: s.width, height: s.height, margin: s.margin, padding: s.padding,
      color: s.color, backgroundColor: s.backgroundColor,
    };"""
    return f"""(function() {{
  const el = document.querySelector({sel});
  if (!el) return {{ found: false, selector: {sel} }};
  const info = {{
    found: true,
    selector: {sel},
    tagName: el.tagName.toLowerCase(),
    id: el.id || null,
    className: el.className || null,
    innerText: el.innerText?.slice(0, 500),
    innerHTML: el.innerHTML?.slice(0, 2000),
    attributes: Array.from(el.attributes).map(a => ({{ name: a.name, value: a.value }})),
    boundingRect: el.getBoundingClientRect().toJSON(),
  }};{styles}
  return info;
}})()"""


def clear_input_script(selector: str) -> str:
    return (
        "(function() { "
        f"const el = document.querySelector({json.dumps(selector)}); "
        "if (el) { el.value = ''; el.dispatchEvent(new Event('input', { bubbles: true })); } "
        "return !!el; })()"
    )


_MODIFIER_FLAGS: dict[str, str] = {
    "ctrl": "ctrlKey",
    "control": "ctrlKey",
    "shift": "shiftKey",
    "alt": "altKey",
    "option": "altKey",
    "cmd": "metaKey",
    "command": "metaKey",
    "meta": "metaKey",
}


def key_event_options(key: str) -> dict[str, JsonValue]:
    """Parse "Ctrl+Shift+A" style input into KeyboardEvent init options."""
    parts = key.split("+")
    main_key = parts[-1] or "+"
    options: dict[str, JsonValue] = {"key": main_key, "bubbles": True, "cancelable": True}
    for modifier in parts[:-1]:
        flag = _MODIFIER_FLAGS.get(modifier.strip().lower())
        if flag is not None:
            options[flag] = True
    return options


def key_press_script(key: str) -> str:
    options = json.dumps(key_event_options(key))
    return f"""(function() {{
  const target = document.activeElement || document.body;
  const opts = {options};
  for (const type of ['keydown', 'keypress', 'keyup']) {{
    target.dispatchEvent(new KeyboardEvent(type, opts));
  }}
  return {{ dispatched: true, target: target.tagName }};
}})()"""


CONSOLE_CAPTURE_SCRIPT = """(function() {
  if (window.__appctlConsoleCapture) return;
  window.__appctlConsoleCapture = true;
  window.__appctlConsoleLogs = window.__appctlConsoleLogs || [];
  const maxLogs = 200;
  for (const level of ['log', 'info', 'warn', 'error', 'debug']) {
    const original = console[level];
    console[level] = function(...args) {
      const message = args.map(a => {
        try { return typeof a === 'object' ? JSON.stringify(a) : String(a); }
        catch (e) { return String(a); }
      }).join(' ');
      window.__appctlConsoleLogs.push({ level, message, timestamp: new Date().toISOString() });
      if (window.__appctlConsoleLogs.length > maxLogs) window.__appctlConsoleLogs.shift();
      original.apply(console, args);
    };
  }
})()"""


def console_query_script(level: str, limit: int) -> str:
    return f"""(function() {{
  const logs = window.__appctlConsoleLogs || [];
  const level = {json.dumps(level)};
  const filtered = level === 'all' ? logs : logs.filter(l => l.level === level);
  return filtered.slice(-{int(limit)});
}})()"""


def element_probe_script(selector: str, check_visible: bool) -> str:
    sel = json.dumps(selector)
    visible = "true"
    if check_visible:
        visible = (
            "rect.width > 0 && rect.height > 0 && s.display !== 'none' "
            "&& s.visibility !== 'hidden' && s.opacity !== '0'"
        )
    return f"""(function() {{
  const el = document.querySelector({sel});
  if (!el) return {{ found: false }};
  const rect = el.getBoundingClientRect();
  const s = window.getComputedStyle(el);
  return {{
    found: true,
    visible: {visible},
    rect: {{ x: rect.x, y: rect.y, width: rect.width, height: rect.height }},
  }};
}})()"""


def js_type_name(value: JsonValue) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


# === Dispatcher ===


@dataclass(frozen=True)
class Operation:
    """A named operation with its argument model and handler."""

    name: str
    args_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[ToolResult]]
    requires_app: bool = False


def _format_validation_error(error: ValidationError) -> str:
    parts: list[str] = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "arguments"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


class Dispatcher:
    """Routes operations to the supervisor, bridge and runner."""

    def __init__(self, context: AppContext):
        self.context: AppContext = context
        lifecycle = [
            Operation("app_start", StartArgs, self._app_start),
            Operation("app_stop", NoArgs, self._app_stop),
            Operation("app_status", NoArgs, self._app_status),
            Operation("app_restart", RestartArgs, self._app_restart),
            Operation("app_wait_ready", WaitReadyArgs, self._app_wait_ready),
            Operation("app_logs", LogsArgs, self._app_logs),
            Operation("app_run_command", RunCommandArgs, self._app_run_command),
        ]
        ui = [
            Operation("ui_ping", NoArgs, self._ui_ping, True),
            Operation("ui_screenshot", ScreenshotArgs, self._ui_screenshot, True),
            Operation("ui_inspect", InspectArgs, self._ui_inspect, True),
            Operation("ui_click", ClickArgs, self._ui_click, True),
            Operation("ui_type", TypeArgs, self._ui_type, True),
            Operation("ui_key", KeyArgs, self._ui_key, True),
            Operation("ui_evaluate", EvaluateArgs, self._ui_evaluate, True),
            Operation("ui_console", ConsoleArgs, self._ui_console, True),
            Operation(
                "ui_wait_for_element", WaitForElementArgs, self._ui_wait_for_element, True
            ),
            Operation("ui_window", WindowArgs, self._ui_window, True),
            Operation("ui_local_storage", LocalStorageArgs, self._ui_local_storage, True),
        ]
        self._operations: dict[str, Operation] = {op.name: op for op in lifecycle + ui}

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self.context.supervisor

    @property
    def bridge(self) -> ControlBridge:
        return self.context.bridge

    @property
    def operation_names(self) -> list[str]:
        return list(self._operations)

    async def dispatch(
        self, operation: str, args: Mapping[str, object] | None = None
    ) -> ToolResult:
        """Run one operation. Never raises for tool failures."""
        op = self._operations.get(operation)
        if op is None:
            return ToolResult.fail(
                f"Unknown operation: {operation}",
                data={"available": list(self._operations)},
            )

        try:
            parsed = op.args_model.model_validate(dict(args or {}))
        except ValidationError as e:
            return ToolResult.fail(
                f"Invalid arguments for {operation}: {_format_validation_error(e)}"
            )

        if op.requires_app:
            gate = await self._ensure_bridge()
            if gate is not None:
                return gate

        try:
            return await op.handler(parsed)
        except AppControlError as e:
            logger.info(f"{operation} failed: {e}")
            data: JsonObject = {"kind": e.kind}
            if op.requires_app and is_connection_error(e):
                data["hint"] = CONNECTION_HINT
            return ToolResult.fail(str(e), data=data)
        except Exception as e:
            logger.exception(f"Unexpected error in {operation}")
            return ToolResult.fail(
                f"Unexpected error in {operation}: {e}", data={"kind": "internal_error"}
            )

    async def _ensure_bridge(self) -> ToolResult | None:
        """Gate UI operations on a running app and a connected bridge."""
        state = self.supervisor.get_status().state
        if state != ProcessState.RUNNING:
            return ToolResult.fail(
                f"App is not running (current state: {state.value}). "
                "Start the app first with app_start.",
                data={"state": state.value, "hint": NOT_RUNNING_HINT},
            )
        if self.bridge.is_connected:
            return None
        try:
            await self.bridge.connect()
        except BridgeDisconnected as e:
            return ToolResult.fail(
                str(e), data={"kind": e.kind, "hint": CONNECTION_HINT}
            )
        return None

    def _socket_path(self) -> str | None:
        config = self.context.config
        return str(config.socket_path) if config.enable_gui_bridge else None

    # === Lifecycle ===

    async def _app_start(self, args: StartArgs) -> ToolResult:
        already_running = self.supervisor.state == ProcessState.RUNNING
        handle = await self.supervisor.start(args.to_options())
        message = (
            f"App is already running with PID {handle.pid}"
            if already_running
            else f"App started successfully with PID {handle.pid}"
        )
        return ToolResult.ok(
            {
                "pid": handle.pid,
                "dev_server_url": handle.dev_server_url,
                "socket_path": self._socket_path(),
                "already_running": already_running,
                "message": message,
            }
        )

    async def _app_stop(self, args: NoArgs) -> ToolResult:
        if self.supervisor.state == ProcessState.STOPPED:
            return ToolResult.ok({"message": "App is not running", "was_running": False})
        await self.bridge.disconnect()
        await self.supervisor.stop()
        return ToolResult.ok(
            {"message": "App stopped successfully", "was_running": True}
        )

    async def _app_status(self, args: NoArgs) -> ToolResult:
        data = self.supervisor.get_status().model_dump(mode="json")
        data["bridge"] = self.bridge.get_status().model_dump(mode="json")
        return ToolResult.ok(data)

    async def _app_restart(self, args: RestartArgs) -> ToolResult:
        previous_pid = self.supervisor.get_status().pid
        await self.bridge.disconnect()
        handle = await self.supervisor.restart(args.to_options())
        return ToolResult.ok(
            {
                "pid": handle.pid,
                "previous_pid": previous_pid,
                "dev_server_url": handle.dev_server_url,
                "socket_path": self._socket_path(),
                "message": f"App restarted successfully with PID {handle.pid}",
            }
        )

    async def _app_wait_ready(self, args: WaitReadyArgs) -> ToolResult:
        status = await self.supervisor.wait_for_ready(args.timeout_seconds)
        return ToolResult.ok(
            {
                "message": "App is ready",
                "dev_server_url": self.supervisor.probe.url,
                "uptime_ms": status.uptime_ms,
            }
        )

    async def _app_logs(self, args: LogsArgs) -> ToolResult:
        entries = self.supervisor.get_logs(args.to_query())
        return ToolResult.ok(
            {
                "app_state": self.supervisor.state.value,
                "log_count": len(entries),
                "filter": {"level": args.level.value, "limit": args.lines},
                "logs": [entry.model_dump(mode="json") for entry in entries],
            }
        )

    async def _app_run_command(self, args: RunCommandArgs) -> ToolResult:
        project_dir = self.context.config.project_dir
        cwd = project_dir
        if args.cwd:
            cwd = Path(args.cwd)
            if not cwd.is_absolute():
                cwd = project_dir / cwd

        result = await self.context.runner.run(
            args.command, args.args, cwd=cwd, timeout=args.timeout_seconds
        )
        data = result.model_dump(mode="json")
        data["stdout"] = truncate_text(result.stdout, args.max_output_chars)
        data["stderr"] = truncate_text(result.stderr, args.max_output_chars)

        if result.timed_out:
            return ToolResult.fail(
                f"Timed out after {args.timeout_seconds}s running: "
                f"{' '.join(result.command)}",
                data=data,
            )
        if result.returncode != 0:
            return ToolResult.fail(
                f"Command exited with code {result.returncode}: "
                f"{' '.join(result.command)}",
                data=data,
            )
        return ToolResult.ok(data)

    # === UI ===

    async def _ui_ping(self, args: NoArgs) -> ToolResult:
        started = time.perf_counter()
        response = await self.bridge.ping()
        return ToolResult.ok(
            {
                "response": response,
                "latency_ms": int((time.perf_counter() - started) * 1000),
                "socket_path": str(self.bridge.socket_path),
            }
        )

    async def _ui_screenshot(self, args: ScreenshotArgs) -> ToolResult:
        shot = await self.bridge.screenshot(quality=args.quality, max_width=args.max_width)
        if not args.save_path:
            return ToolResult.ok(
                {
                    "saved": False,
                    "base64": shot.data,
                    "width": shot.width,
                    "height": shot.height,
                    "size_bytes": len(shot.data),
                }
            )

        try:
            image = base64.b64decode(shot.data, validate=True)
        except binascii.Error as e:
            return ToolResult.fail(f"Screenshot data is not valid base64: {e}")

        path = Path(args.save_path).expanduser()
        if not path.is_absolute():
            path = self.context.config.project_dir / path
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, image)
        return ToolResult.ok(
            {
                "saved": True,
                "path": str(path),
                "width": shot.width,
                "height": shot.height,
                "size_bytes": len(image),
            }
        )

    async def _ui_inspect(self, args: InspectArgs) -> ToolResult:
        if args.selector:
            result = await self.bridge.evaluate(
                inspect_element_script(args.selector, args.include_styles)
            )
            if isinstance(result, dict):
                return ToolResult.ok(result)
            return ToolResult.ok({"result": result})

        html = await self.bridge.get_dom()
        return ToolResult.ok(
            {
                "html": html[:MAX_DOM_CHARS],
                "truncated": len(html) > MAX_DOM_CHARS,
                "full_length": len(html),
            }
        )

    async def _ui_click(self, args: ClickArgs) -> ToolResult:
        clicks = 2 if args.double_click else 1
        data: JsonObject = {
            "clicked": True,
            "button": args.button,
            "double_click": args.double_click,
        }
        if args.selector is not None:
            for i in range(clicks):
                if i:
                    await asyncio.sleep(DOUBLE_CLICK_GAP)
                await self.bridge.click_element(args.selector, button=args.button)
            data["selector"] = args.selector
            return ToolResult.ok(data)

        if args.x is None or args.y is None:
            raise AppControlError(
                "Either selector or (x, y) coordinates must be provided"
            )
        for i in range(clicks):
            if i:
                await asyncio.sleep(DOUBLE_CLICK_GAP)
            await self.bridge.click(args.x, args.y, args.button)
        data["x"] = args.x
        data["y"] = args.y
        return ToolResult.ok(data)

    async def _ui_type(self, args: TypeArgs) -> ToolResult:
        data: JsonObject = {
            "typed": True,
            "text": args.text,
            "char_count": len(args.text),
        }
        if args.selector is None:
            await self.bridge.type_text(args.text, delay_ms=args.delay_ms)
            return ToolResult.ok(data)

        if args.clear_first:
            await self.bridge.evaluate(clear_input_script(args.selector))
        await self.bridge.type_into_element(
            args.selector, args.text, delay_ms=args.delay_ms
        )
        data["selector"] = args.selector
        return ToolResult.ok(data)

    async def _ui_key(self, args: KeyArgs) -> ToolResult:
        result = await self.bridge.evaluate(key_press_script(args.key))
        data: JsonObject = {"pressed": True, "key": args.key}
        if isinstance(result, dict):
            data.update(result)
        return ToolResult.ok(data)

    async def _ui_evaluate(self, args: EvaluateArgs) -> ToolResult:
        result = await self.bridge.evaluate(args.code, timeout_ms=args.timeout_ms)
        return ToolResult.ok({"result": result, "type": js_type_name(result)})

    async def _ui_console(self, args: ConsoleArgs) -> ToolResult:
        await self.bridge.evaluate(CONSOLE_CAPTURE_SCRIPT)
        messages = await self.bridge.evaluate(console_query_script(args.level, args.limit))
        if not isinstance(messages, list):
            messages = []
        return ToolResult.ok(
            {"messages": messages, "count": len(messages), "filter": args.level}
        )

    async def _ui_wait_for_element(self, args: WaitForElementArgs) -> ToolResult:
        script = element_probe_script(args.selector, args.visible)
        started = time.perf_counter()
        last: dict[str, JsonValue] = {}

        async def element_ready() -> bool:
            nonlocal last
            result = await self.bridge.evaluate(script)
            last = result if isinstance(result, dict) else {}
            return bool(last.get("found")) and (
                not args.visible or bool(last.get("visible"))
            )

        try:
            await asyncio.wait_for(
                poll_until_true(element_ready, interval=ELEMENT_POLL_INTERVAL),
                timeout=args.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return ToolResult.fail(
                f"Element not found within {args.timeout_ms}ms: {args.selector}",
                data={
                    "selector": args.selector,
                    "timeout_ms": args.timeout_ms,
                    "visible": args.visible,
                },
            )

        return ToolResult.ok(
            {
                "found": True,
                "selector": args.selector,
                "visible": last.get("visible"),
                "bounding_rect": last.get("rect"),
                "waited_ms": int((time.perf_counter() - started) * 1000),
            }
        )

    async def _ui_window(self, args: WindowArgs) -> ToolResult:
        result = await self.bridge.manage_window(args.action, args.params)
        return ToolResult.ok({"action": args.action, "result": result})

    async def _ui_local_storage(self, args: LocalStorageArgs) -> ToolResult:
        result = await self.bridge.local_storage(
            args.action, key=args.key, value=args.value
        )
        return ToolResult.ok({"action": args.action, "key": args.key, "result": result})
