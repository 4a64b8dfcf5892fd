"""Commands of the appctl CLI."""

import asyncio
import logging
import shlex
import time
from pathlib import Path
from typing import Annotated

from typer import Argument, Exit, Option, Typer

from appctl import __version__ as appctl_version
from appctl.cli.app.logging import LogBuffer, configure_logging, print_log_entry
from appctl.cli.app.runner import CommandRunner
from appctl.cli.app.supervisor import ProcessSupervisor
from appctl.config import AppControlConfig
from appctl.constants import DEFAULT_COMMAND_TIMEOUT, DEFAULT_START_TIMEOUT
from appctl.errors import AppControlError
from appctl.models import ProcessState, StartOptions
from appctl.utils import console, err_console, format_elapsed_ms


# Exit code used by coreutils `timeout` for a timed-out command.
TIMEOUT_EXIT_CODE = 124

app = Typer(
    name="appctl",
    help="Supervise a local dev app and drive its UI for automated agents",
    no_args_is_help=True,
)


ProjectDirArg = Annotated[
    Path | None,
    Argument(
        help="The path to the app. If not provided, current working directory will be used"
    ),
]


def _load_config(
    project_dir: Path | None,
    *,
    command: str | None = None,
    ready_url: str | None = None,
    socket_path: Path | None = None,
) -> AppControlConfig:
    config = AppControlConfig.from_env(project_dir)
    return config.with_overrides(
        command=shlex.split(command) if command else None,
        ready_url=ready_url,
        socket_path=socket_path,
    )


@app.command(name="version", help="Show the appctl version")
def version() -> None:
    console.print(f"appctl {appctl_version}")


@app.command(name="mcp", help="Start the MCP server over stdio")
def mcp(
    project_dir: ProjectDirArg = None,
    command: Annotated[
        str | None, Option("--command", help="Command that starts the app")
    ] = None,
    ready_url: Annotated[
        str | None, Option("--ready-url", help="URL that answers once the app is up")
    ] = None,
    socket_path: Annotated[
        Path | None,
        Option("--socket-path", help="Path of the app's companion control socket"),
    ] = None,
):
    """Start an MCP server that manages the app and drives its UI.

    The server runs over stdio and provides app_* lifecycle tools and ui_* tools.
    The app is stopped when the server shuts down.
    """
    from appctl.cli.app.mcp import run_mcp_server

    config = _load_config(
        project_dir, command=command, ready_url=ready_url, socket_path=socket_path
    )
    run_mcp_server(config)


async def _run_foreground(
    config: AppControlConfig, options: StartOptions, raw_output: bool
) -> None:
    buffer = LogBuffer(config.log_capacity)
    configure_logging(buffer=buffer)
    supervisor = ProcessSupervisor(config, buffer)
    subscription = buffer.subscribe()

    async def tail() -> None:
        async for entry in subscription:
            print_log_entry(entry, raw_output=raw_output)

    tail_task = asyncio.create_task(tail())
    start_time = time.perf_counter()
    try:
        handle = await supervisor.start(options)
        err_console.print(
            f"[green]App running[/green] in {format_elapsed_ms(start_time)} "
            f"pid={handle.pid} "
            f"url={handle.dev_server_url or config.ready_url}"
        )
        while supervisor.state in (ProcessState.STARTING, ProcessState.RUNNING):
            await asyncio.sleep(0.5)
        status = supervisor.get_status()
        if status.error:
            err_console.print(f"[red]App exited:[/red] {status.error}")
    finally:
        await supervisor.stop()
        subscription.close()
        await tail_task


@app.command(name="run", help="Run the app in the foreground and tail its output")
def run(
    project_dir: ProjectDirArg = None,
    timeout: Annotated[
        float, Option(help="Seconds to wait for the app to become ready")
    ] = DEFAULT_START_TIMEOUT,
    wait: Annotated[
        bool, Option("--wait/--no-wait", help="Wait for the dev server to answer")
    ] = True,
    command: Annotated[
        str | None, Option("--command", help="Command that starts the app")
    ] = None,
    raw: Annotated[bool, Option("--raw", help="Print raw output lines")] = False,
):
    """Start the app, print its output until Ctrl+C, then stop it."""
    config = _load_config(project_dir, command=command)
    options = StartOptions(timeout=timeout, wait_for_ready=wait)
    try:
        asyncio.run(_run_foreground(config, options, raw))
    except KeyboardInterrupt:
        err_console.print("[yellow]Stopped[/yellow]")
    except AppControlError as e:
        err_console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)


@app.command(name="exec", help="Run a one-shot command with a timeout")
def exec_command(
    command: Annotated[str, Argument(help="Executable to run")],
    args: Annotated[list[str] | None, Argument(help="Arguments for the command")] = None,
    timeout: Annotated[
        float, Option(help="Kill the command after this many seconds")
    ] = DEFAULT_COMMAND_TIMEOUT,
    cwd: Annotated[Path | None, Option(help="Working directory")] = None,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Log runner activity")] = False,
):
    """Run COMMAND with ARGS, print its output and exit with its exit code."""
    if verbose:
        configure_logging(level=logging.DEBUG)
    runner = CommandRunner(default_timeout=timeout)
    try:
        result = asyncio.run(runner.run(command, args or [], cwd=cwd))
    except AppControlError as e:
        err_console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=127)

    if result.stdout:
        console.print(result.stdout, end="", markup=False, highlight=False)
    if result.stderr:
        err_console.print(result.stderr, end="", markup=False, highlight=False)

    if result.timed_out:
        err_console.print(f"[red]Timed out after {timeout}s[/red]")
        raise Exit(code=TIMEOUT_EXIT_CODE)
    if result.returncode:
        raise Exit(code=result.returncode if result.returncode > 0 else 1)
