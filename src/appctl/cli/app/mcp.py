"""MCP server exposing the dispatcher operations as tools."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from mcp.server.fastmcp import FastMCP
from pydantic import JsonValue

from appctl import __version__ as appctl_version
from appctl.cli.app.dispatcher import AppContext, Dispatcher
from appctl.cli.app.logging import LogComponent, configure_logging, get_logger
from appctl.config import AppControlConfig
from appctl.models import JsonObject, MouseButton, ToolResult


logger = get_logger(LogComponent.MCP)


def _args(**kwargs: JsonValue) -> JsonObject:
    """Drop unset arguments so the argument models apply their defaults."""
    return {k: v for k, v in kwargs.items() if v is not None}


def create_mcp_server(context: AppContext) -> FastMCP:
    """Build the MCP server for one app context.

    The server owns the context: on shutdown the bridge is disconnected and
    the app is stopped.
    """
    dispatcher = Dispatcher(context)

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[None]:
        logger.info(f"appctl {appctl_version} serving {context.config.project_dir}")
        try:
            yield
        finally:
            await context.aclose()

    mcp = FastMCP("appctl", lifespan=lifespan)

    # === Lifecycle tools ===

    @mcp.tool(name="app_start")
    async def app_start(
        timeout_seconds: float | None = None,
        wait_for_ready: bool | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> ToolResult:
        """Start the app dev server.

        Returns the existing PID with already_running=true if the app is already up.

        Args:
            timeout_seconds: How long to wait for the dev server to answer (default: 120)
            wait_for_ready: Wait for the dev server before returning (default: True)
            extra_env: Extra environment variables for the app process
        """
        return await dispatcher.dispatch(
            "app_start",
            _args(
                timeout_seconds=timeout_seconds,
                wait_for_ready=wait_for_ready,
                extra_env=extra_env,
            ),
        )

    @mcp.tool(name="app_stop")
    async def app_stop() -> ToolResult:
        """Stop the app and every process it spawned."""
        return await dispatcher.dispatch("app_stop")

    @mcp.tool(name="app_status")
    async def app_status() -> ToolResult:
        """Get the app state, PID, uptime, dev server URL, last error and bridge status."""
        return await dispatcher.dispatch("app_status")

    @mcp.tool(name="app_restart")
    async def app_restart(
        timeout_seconds: float | None = None,
        wait_for_ready: bool | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> ToolResult:
        """Stop the app if it is running, then start it fresh (new PID).

        Args:
            timeout_seconds: How long to wait for the dev server to answer (default: 120)
            wait_for_ready: Wait for the dev server before returning (default: True)
            extra_env: Extra environment variables for the app process
        """
        return await dispatcher.dispatch(
            "app_restart",
            _args(
                timeout_seconds=timeout_seconds,
                wait_for_ready=wait_for_ready,
                extra_env=extra_env,
            ),
        )

    @mcp.tool(name="app_wait_ready")
    async def app_wait_ready(timeout_seconds: float | None = None) -> ToolResult:
        """Wait until the running app's dev server answers. Never starts the app.

        Args:
            timeout_seconds: Maximum time to wait (default: 60)
        """
        return await dispatcher.dispatch(
            "app_wait_ready", _args(timeout_seconds=timeout_seconds)
        )

    @mcp.tool(name="app_logs")
    async def app_logs(
        lines: int | None = None,
        level: Literal["debug", "info", "warn", "error"] | None = None,
    ) -> ToolResult:
        """Get recent output of the app process.

        Args:
            lines: Number of most recent entries (default: 50, max: 500)
            level: Minimum level to include (default: info)
        """
        return await dispatcher.dispatch("app_logs", _args(lines=lines, level=level))

    @mcp.tool(name="app_run_command")
    async def app_run_command(
        command: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
        max_output_chars: int | None = None,
    ) -> ToolResult:
        """Run a one-shot command (tests, linters, builds) in the project directory.

        Args:
            command: Executable to run
            args: Arguments for the executable
            cwd: Working directory, relative to the project directory
            timeout_seconds: Kill the command after this long (default: 60)
            max_output_chars: Truncate stdout/stderr to this many characters (default: 20000)
        """
        return await dispatcher.dispatch(
            "app_run_command",
            _args(
                command=command,
                args=args,
                cwd=cwd,
                timeout_seconds=timeout_seconds,
                max_output_chars=max_output_chars,
            ),
        )

    # === UI tools ===

    @mcp.tool(name="ui_ping")
    async def ui_ping() -> ToolResult:
        """Check that the app's companion socket answers."""
        return await dispatcher.dispatch("ui_ping")

    @mcp.tool(name="ui_screenshot")
    async def ui_screenshot(
        save_path: str | None = None,
        quality: int | None = None,
        max_width: int | None = None,
    ) -> ToolResult:
        """Take a screenshot of the app window.

        Args:
            save_path: File to save the image to. If omitted, returns base64 data.
            quality: JPEG quality 1-100 (default: 85)
            max_width: Scale the image down to this width in pixels
        """
        return await dispatcher.dispatch(
            "ui_screenshot",
            _args(save_path=save_path, quality=quality, max_width=max_width),
        )

    @mcp.tool(name="ui_inspect")
    async def ui_inspect(
        selector: str | None = None, include_styles: bool | None = None
    ) -> ToolResult:
        """Get the page HTML, or details of one element when a selector is given.

        Args:
            selector: CSS selector of the element to inspect
            include_styles: Include computed styles (default: False)
        """
        return await dispatcher.dispatch(
            "ui_inspect", _args(selector=selector, include_styles=include_styles)
        )

    @mcp.tool(name="ui_click")
    async def ui_click(
        selector: str | None = None,
        x: float | None = None,
        y: float | None = None,
        button: MouseButton | None = None,
        double_click: bool | None = None,
    ) -> ToolResult:
        """Click an element by CSS selector, or at window coordinates.

        Args:
            selector: CSS selector of the element to click
            x: X coordinate (use with y instead of selector)
            y: Y coordinate (use with x instead of selector)
            button: Mouse button (default: left)
            double_click: Double-click instead of a single click
        """
        return await dispatcher.dispatch(
            "ui_click",
            _args(selector=selector, x=x, y=y, button=button, double_click=double_click),
        )

    @mcp.tool(name="ui_type")
    async def ui_type(
        text: str,
        selector: str | None = None,
        delay_ms: int | None = None,
        clear_first: bool | None = None,
    ) -> ToolResult:
        """Type text into an element, or at the current focus.

        Args:
            text: Text to type
            selector: CSS selector of the input. If omitted, types at the current focus.
            delay_ms: Delay between keystrokes (default: 20)
            clear_first: Clear the input before typing
        """
        return await dispatcher.dispatch(
            "ui_type",
            _args(text=text, selector=selector, delay_ms=delay_ms, clear_first=clear_first),
        )

    @mcp.tool(name="ui_key")
    async def ui_key(key: str) -> ToolResult:
        """Press a key or shortcut, e.g. "Enter", "Escape", "Ctrl+A", "Shift+Tab".

        Args:
            key: Key name, optionally prefixed by modifiers joined with "+"
        """
        return await dispatcher.dispatch("ui_key", _args(key=key))

    @mcp.tool(name="ui_evaluate")
    async def ui_evaluate(code: str, timeout_ms: int | None = None) -> ToolResult:
        """Execute JavaScript in the app webview and return the result.

        Args:
            code: JavaScript expression or statements
            timeout_ms: Script timeout in milliseconds (default: 5000)
        """
        return await dispatcher.dispatch(
            "ui_evaluate", _args(code=code, timeout_ms=timeout_ms)
        )

    @mcp.tool(name="ui_console")
    async def ui_console(
        level: Literal["all", "error", "warn", "info", "log", "debug"] | None = None,
        limit: int | None = None,
    ) -> ToolResult:
        """Get recent browser console messages from the app webview.

        Capture starts on the first call; earlier messages are not available.

        Args:
            level: Only messages of this console level (default: all)
            limit: Maximum number of messages (default: 50)
        """
        return await dispatcher.dispatch("ui_console", _args(level=level, limit=limit))

    @mcp.tool(name="ui_wait_for_element")
    async def ui_wait_for_element(
        selector: str,
        timeout_ms: int | None = None,
        visible: bool | None = None,
    ) -> ToolResult:
        """Wait for an element to appear in the DOM.

        Args:
            selector: CSS selector of the element
            timeout_ms: Maximum time to wait (default: 10000)
            visible: Also require the element to be visible (default: True)
        """
        return await dispatcher.dispatch(
            "ui_wait_for_element",
            _args(selector=selector, timeout_ms=timeout_ms, visible=visible),
        )

    @mcp.tool(name="ui_window")
    async def ui_window(action: str, params: JsonObject | None = None) -> ToolResult:
        """Manage the app window (focus, minimize, maximize, resize, ...).

        Args:
            action: Window operation name
            params: Extra parameters for the operation
        """
        return await dispatcher.dispatch(
            "ui_window", _args(action=action, params=params)
        )

    @mcp.tool(name="ui_local_storage")
    async def ui_local_storage(
        action: Literal["get", "set", "remove", "clear", "keys"],
        key: str | None = None,
        value: str | None = None,
    ) -> ToolResult:
        """Read or modify the webview's localStorage.

        Args:
            action: get, set, remove, clear or keys
            key: Storage key (required for get, set and remove)
            value: Value to store (required for set)
        """
        return await dispatcher.dispatch(
            "ui_local_storage", _args(action=action, key=key, value=value)
        )

    return mcp


def run_mcp_server(config: AppControlConfig) -> None:
    """Run the MCP server using stdio transport."""
    context = AppContext.from_config(config)
    configure_logging(buffer=context.log_buffer)
    mcp = create_mcp_server(context)
    # FastMCP.run() uses stdio when called without arguments
    mcp.run()
