"""Command line interface for karma-server."""

import asyncio
import time
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from rich.table import Table
from typer import Argument, Exit, Option, Typer

from karma_server import __version__
from karma_server.constants import DEFAULT_NODE_EXECUTABLE, NODE_PATH_ENV_VAR
from karma_server.errors import ConfigurationError, ProcessFailure
from karma_server.logging import LogComponent, configure_logging, get_logger
from karma_server.models import ServerSettings
from karma_server.supervisor import ServerSupervisor
from karma_server.utils import console, format_elapsed_ms

app = Typer(
    name="karma-server",
    help="Run a Karma server and report the port it binds",
    no_args_is_help=True,
)

ConfigFileArg = Annotated[
    Path, Argument(help="Path to the Karma configuration file (karma.conf.js)")
]
NodeOption = Annotated[
    str, Option("--node", help="Node.js executable used to run the start script")
]
StartScriptOption = Annotated[
    Path | None,
    Option(
        "--start-script",
        help="Start script to launch (defaults to Start.js in the karma-server lib directory)",
    ),
]


def _build_supervisor(
    config_file: Path,
    *,
    node: str,
    start_script: Path | None,
    timeout_ms: int | None = None,
) -> ServerSupervisor:
    dotenv_path = config_file.parent / ".env"
    if dotenv_path.is_file():
        console.print(f"[dim]🔍 Loading .env file from {dotenv_path.resolve()}[/dim]")
        load_dotenv(dotenv_path)

    settings = ServerSettings(
        node_executable=node,
        start_script=start_script,
        start_timeout_ms=timeout_ms,
    )
    try:
        supervisor = ServerSupervisor(config_file, settings=settings)
        # Surface a missing working directory or start script before anything runs.
        supervisor.launch_options()
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)
    return supervisor


async def _serve(supervisor: ServerSupervisor) -> int | None:
    """Run the server until it exits or the command is interrupted."""
    karma_logger = get_logger(LogComponent.KARMA)
    cli_logger = get_logger(LogComponent.CLI)

    supervisor.output_received += karma_logger.info
    supervisor.error_received += karma_logger.error

    exited: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()

    def on_stopped(exit_code: int | None, failure: ProcessFailure | None) -> None:
        if failure is not None:
            cli_logger.error(f"Karma server failed: {failure}")
        else:
            cli_logger.info(f"Karma server exited with code {exit_code}")
        if not exited.done():
            exited.set_result(exit_code)

    supervisor.stopped += on_stopped

    start_time = time.perf_counter()
    port_future = supervisor.start()

    def on_port(future: asyncio.Future[int]) -> None:
        if future.cancelled():
            return
        console.print(
            f"[green]✓[/green] Karma server listening on port [bold]{future.result()}[/bold] "
            f"({format_elapsed_ms(start_time)})"
        )

    port_future.add_done_callback(on_port)

    try:
        return await asyncio.shield(exited)
    except asyncio.CancelledError:
        supervisor.stop("interrupted")
        return await exited


@app.command(name="start", help="Start the Karma server and stream its output")
def start(
    config_file: ConfigFileArg,
    timeout_ms: Annotated[
        int | None,
        Option(
            "--timeout-ms",
            min=1,
            help="Report a timeout if the port is not known within this many milliseconds",
        ),
    ] = None,
    node: NodeOption = DEFAULT_NODE_EXECUTABLE,
    start_script: StartScriptOption = None,
    raw: Annotated[
        bool, Option("--raw", help="Print Karma output without timestamps or prefixes")
    ] = False,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Show debug logs")] = False,
):
    """Start the Karma server and stream its output until it exits."""
    configure_logging(raw_output=raw, verbose=verbose)
    supervisor = _build_supervisor(
        config_file, node=node, start_script=start_script, timeout_ms=timeout_ms
    )

    try:
        exit_code = asyncio.run(_serve(supervisor))
    except KeyboardInterrupt:
        console.print("[yellow]⚠️  Interrupted[/yellow]")
        raise Exit(code=130)

    raise Exit(code=exit_code if exit_code is not None else 1)


@app.command(name="command", help="Print the command used to launch the Karma server")
def command(
    config_file: ConfigFileArg,
    node: NodeOption = DEFAULT_NODE_EXECUTABLE,
    start_script: StartScriptOption = None,
):
    """Resolve the launch command without spawning anything."""
    supervisor = _build_supervisor(config_file, node=node, start_script=start_script)
    options = supervisor.launch_options()

    table = Table(title="Karma server launch", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Command", options.command_line)
    table.add_row("Working directory", str(options.cwd))
    table.add_row(NODE_PATH_ENV_VAR, options.env.get(NODE_PATH_ENV_VAR) or "[dim]-[/dim]")
    table.add_row("Encoding", options.encoding)
    console.print(table)


@app.command(name="version", help="Print the karma-server version")
def version():
    console.print(f"karma-server {__version__}")
