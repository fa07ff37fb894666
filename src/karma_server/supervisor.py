"""Supervisor for a single Karma server process.

The supervisor launches `node Start.js --karma <config>`, watches stdout for the
start line to learn which port Karma bound, and reports the run's milestones:

- `started(port)` once the start line is seen (at most once per run)
- `output_received(line)` / `error_received(line)` for every stdout/stderr line
- `stopped(exit_code, failure)` exactly once when the process is gone

All state changes happen on the event loop, inside the run task or loop callbacks,
so they never interleave.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path

from karma_server.constants import NODE_MODULES_DIR, NODE_PATH_ENV_VAR, START_LINE_PATTERN
from karma_server.errors import (
    ConfigurationError,
    InvalidOperationError,
    ProcessFailure,
    ServerStoppedError,
    StartTimeoutError,
)
from karma_server.events import EventHook
from karma_server.logging import LogComponent, get_logger
from karma_server.models import LaunchOptions, ServerEvent, ServerSettings, ServerState
from karma_server.runner import ProcessHandle, ProcessRunner, SubprocessRunner

START_LINE_RE = re.compile(START_LINE_PATTERN)


def iter_node_modules(directory: Path) -> Iterator[Path]:
    """Yield every `node_modules` directory from `directory` up to the root, nearest first."""
    current: Path | None = directory
    while current is not None and current.is_dir():
        candidate = current / NODE_MODULES_DIR
        if candidate.is_dir():
            yield candidate
        current = current.parent if current.parent != current else None


def parse_start_line(line: str) -> int | None:
    """Return the port announced by a start line, or None for any other line."""
    match = START_LINE_RE.search(line)
    if match is None:
        return None
    port = int(match.group(1))
    return port or None


def _is_running_on(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class ServerSupervisor:
    """Drives one Karma server lifecycle at a time."""

    def __init__(
        self,
        config_file: str | os.PathLike[str] | None,
        *,
        runner: ProcessRunner | None = None,
        logger: logging.Logger | None = None,
        settings: ServerSettings | None = None,
    ) -> None:
        if config_file is None or not str(config_file).strip():
            raise ConfigurationError("A Karma configuration file is required")

        path = Path(config_file)
        if not path.is_file():
            raise ConfigurationError(f"Configuration file does not exist: {path}")

        self.config_file: Path = path.resolve()
        self.settings: ServerSettings = settings or ServerSettings()
        self.runner: ProcessRunner = runner or SubprocessRunner()
        self.logger: logging.Logger = logger or get_logger(LogComponent.SUPERVISOR)

        self.started: EventHook[[int]] = EventHook("started", self.logger)
        self.stopped: EventHook[[int | None, ProcessFailure | None]] = EventHook(
            "stopped", self.logger
        )
        self.output_received: EventHook[[str]] = EventHook(
            "output_received", self.logger
        )
        self.error_received: EventHook[[str]] = EventHook(
            "error_received", self.logger
        )

        self._state: ServerState = ServerState.IDLE
        self._port: int = 0
        self._handle: ProcessHandle | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._finished: asyncio.Future[int | None] | None = None
        self._pending_stop: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # === Properties ===

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def port(self) -> int:
        """Port Karma is listening on, 0 while unknown."""
        return self._port

    @property
    def finished(self) -> asyncio.Future[int | None] | None:
        """Exit future of the current or last run (None before the first start).

        Resolves with the exit code, or None if the process could not be spawned.
        """
        return self._finished

    @property
    def working_directory(self) -> Path:
        return self.config_file.parent

    @property
    def start_script(self) -> Path:
        return self.settings.resolve_start_script()

    @property
    def node_path(self) -> str:
        return os.pathsep.join(str(p) for p in iter_node_modules(self.working_directory))

    # === Launch ===

    def launch_options(self) -> LaunchOptions:
        """Build the node command line. Raises ConfigurationError before anything is spawned."""
        if not self.working_directory.is_dir():
            raise ConfigurationError(
                f"Could not find the working directory ({self.working_directory})"
            )

        start_script = self.start_script
        if not start_script.is_file():
            raise ConfigurationError(
                f"Could not find start script for the Karma server ({start_script})"
            )

        env = {**self.settings.extra_env, NODE_PATH_ENV_VAR: self.node_path}
        return LaunchOptions(
            executable=self.settings.node_executable,
            args=[str(start_script), "--karma", self.config_file.name],
            cwd=self.working_directory,
            env=env,
            encoding=self.settings.encoding,
        )

    # === Lifecycle ===

    def start(self, timeout: float | None = None) -> asyncio.Future[int]:
        """Launch the server and return a future for its port.

        Must be called from a running event loop. The future resolves with the port
        once the start line is seen. It is cancelled if `timeout` seconds pass first
        (the process keeps running) or if the process exits without a start line.
        `timeout=None` uses `settings.start_timeout_ms`.
        """
        if self._state is ServerState.STARTING:
            raise InvalidOperationError("The karma server is already starting", self._state)
        if self._state is ServerState.RUNNING:
            raise InvalidOperationError("The karma server is already running", self._state)

        options = self.launch_options()
        loop = asyncio.get_running_loop()
        self._loop = loop

        self._port = 0
        self._state = ServerState.STARTING
        self._pending_stop = None

        port_future: asyncio.Future[int] = loop.create_future()
        finished: asyncio.Future[int | None] = loop.create_future()
        self._finished = finished

        if timeout is None:
            timeout = self.settings.start_timeout
        if timeout is not None:
            timer = loop.call_later(timeout, self._on_start_timeout, port_future, timeout)
            port_future.add_done_callback(lambda _: timer.cancel())

        self.logger.debug("Starting Karma: %s", options.command_line)
        self._run_task = loop.create_task(self._run(options, port_future, finished))
        return port_future

    async def wait_started(self, timeout: float | None = None) -> int:
        """Start the server and wait for its port.

        Raises StartTimeoutError if the start line does not appear in time (the server
        is left running), or ServerStoppedError if the server exits first.
        """
        port_future = self.start(timeout)
        finished = self._finished
        try:
            return await asyncio.shield(port_future)
        except asyncio.CancelledError:
            if not port_future.cancelled():
                raise
            if finished is not None and finished.done():
                exit_code = finished.result()
                raise ServerStoppedError(
                    f"Karma server exited with code {exit_code} before it started",
                    exit_code,
                ) from None
            raise StartTimeoutError(
                f"Karma server did not report its port within {timeout or self.settings.start_timeout}s"
            ) from None

    def stop(self, reason: str) -> None:
        """Ask the running server to terminate. Does not wait; `stopped` reports the exit.

        Safe to call from any thread. Off the event loop the request is handed to the loop.
        """
        loop = self._loop
        if loop is None:
            return
        if not _is_running_on(loop):
            if not loop.is_closed():
                loop.call_soon_threadsafe(self.stop, reason)
            return

        handle = self._handle
        if handle is None:
            if self._run_task is not None and not self._run_task.done():
                # Still spawning: cancel as soon as the handle exists.
                self._pending_stop = reason
            return

        self.logger.warning("Killing karma server: %s", reason)
        try:
            handle.request_cancel()
        except Exception:
            self.logger.exception("Failed to kill karma server")

    async def events(self) -> AsyncIterator[ServerEvent]:
        """Yield the lifecycle events of the current run, ending with `stopped`."""
        queue: asyncio.Queue[ServerEvent] = asyncio.Queue()

        def on_stopped(exit_code: int | None, failure: ProcessFailure | None) -> None:
            queue.put_nowait(
                ServerEvent(
                    kind="stopped",
                    exit_code=exit_code,
                    failure=str(failure) if failure is not None else None,
                )
            )

        unsubscribes: list[Callable[[], None]] = [
            self.started.subscribe(
                lambda port: queue.put_nowait(ServerEvent(kind="started", port=port))
            ),
            self.output_received.subscribe(
                lambda line: queue.put_nowait(ServerEvent(kind="output", line=line))
            ),
            self.error_received.subscribe(
                lambda line: queue.put_nowait(ServerEvent(kind="error", line=line))
            ),
            self.stopped.subscribe(on_stopped),
        ]
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind == "stopped":
                    return
        finally:
            for unsubscribe in unsubscribes:
                unsubscribe()

    # === Run task ===

    async def _run(
        self,
        options: LaunchOptions,
        port_future: asyncio.Future[int],
        finished: asyncio.Future[int | None],
    ) -> None:
        exit_code: int | None = None
        failure: ProcessFailure | None = None
        try:
            handle = await self.runner.spawn(options)
            self._handle = handle
            if self._pending_stop is not None:
                self.stop(self._pending_stop)

            failure = await self._pump_output(handle, port_future)
            exit_code = await handle.wait()
        except asyncio.CancelledError:
            self.stop("supervisor task cancelled")
            raise
        except Exception as e:
            failure = failure or self._run_failed(e)
            self.stop("karma server run failed")
        finally:
            self._complete(port_future, finished, exit_code, failure)

    async def _pump_output(
        self, handle: ProcessHandle, port_future: asyncio.Future[int]
    ) -> ProcessFailure | None:
        """Forward stdout and stderr until both end.

        If one stream fails, the process is stopped and the other stream is still
        forwarded until it ends, so no line is reported after `stopped`.
        """
        pumps = [
            asyncio.create_task(
                self._pump(handle.stdout, lambda line: self._on_output(line, port_future))
            ),
            asyncio.create_task(self._pump(handle.stderr, self.error_received.fire)),
        ]
        try:
            await asyncio.gather(*pumps)
            return None
        except asyncio.CancelledError:
            for pump in pumps:
                pump.cancel()
            raise
        except Exception as e:
            failure = self._run_failed(e)
            self.stop("karma server output could not be read")
            await asyncio.wait(pumps)
            for pump in pumps:
                if pump.cancelled():
                    continue
                error = pump.exception()
                if error is not None and error is not e:
                    self.logger.warning("Karma server stream failed: %s", error)
            return failure

    def _run_failed(self, error: Exception) -> ProcessFailure:
        self.logger.error("KarmaServer error", exc_info=error)
        failure = ProcessFailure(f"Karma server run failed: {error}")
        failure.__cause__ = error
        return failure

    @staticmethod
    async def _pump(lines: AsyncIterator[str], handler: Callable[[str], None]) -> None:
        async for line in lines:
            handler(line)

    def _on_output(self, line: str, port_future: asyncio.Future[int]) -> None:
        if self._port == 0:
            port = parse_start_line(line)
            if port is not None:
                self._port = port
                self._state = ServerState.RUNNING
                self.logger.debug("Karma server started on port %d", port)
                self.started.fire(port)
                if not port_future.done():
                    port_future.set_result(port)
        self.output_received.fire(line)

    def _on_start_timeout(self, port_future: asyncio.Future[int], timeout: float) -> None:
        if port_future.done():
            return
        self.logger.warning(
            "Karma server did not report its port within %ss; leaving it running", timeout
        )
        port_future.cancel()

    def _complete(
        self,
        port_future: asyncio.Future[int],
        finished: asyncio.Future[int | None],
        exit_code: int | None,
        failure: ProcessFailure | None,
    ) -> None:
        if finished.done():
            return

        self._state = ServerState.IDLE
        self._port = 0
        self._handle = None
        self._pending_stop = None

        if not port_future.done():
            port_future.cancel()
        finished.set_result(exit_code)
        self.logger.debug("Karma server stopped (exit code %s)", exit_code)
        self.stopped.fire(exit_code, failure)
